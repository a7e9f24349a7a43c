"""WebhookProcessor: exactly-once handling of gateway events.

Each delivery goes through the ledger's idempotency check, then runs under a
per-event Redis lock that re-verifies the event has not been processed in the
meantime. Payment-intent handlers also take the billing record lock shared
with PaymentProcessor; a busy record fails the delivery so it is re-driven. Handler failures are counted against the event's retry budget and
re-driven later by the retry sweeper from the stored payload.
"""

import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from payguard.core.config import Settings, get_settings
from payguard.core.exceptions import NotFoundError, RecordBusyError
from payguard.core.locking import RecordLock
from payguard.core.logging import bind_payment_context, unbind_payment_context
from payguard.db.models.billing_record import BillingRecord
from payguard.domain.billing import BillingStatus
from payguard.integrations.gateway import RECORD_ID_KEY, RECORD_VERSION_KEY
from payguard.integrations.notifier import Notifier
from payguard.services.billing_store import UNKNOWN_PAYMENT_ERROR, BillingRecordStore
from payguard.services.subscription_service import SubscriptionService
from payguard.services.webhook_ledger import WebhookEventLedger

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GatewayEvent:
    """A verified gateway event: id, type and the event's data object."""

    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "GatewayEvent":
        return cls(
            id=payload["id"],
            type=payload["type"],
            data=dict((payload.get("data") or {}).get("object") or {}),
        )

    def to_json(self) -> str:
        return json.dumps({"id": self.id, "type": self.type, "data": {"object": self.data}}, default=str)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    status: str  # processed | already_processed | permanently_failed | in_progress | failed
    error: str | None = None


class WebhookProcessor:
    def __init__(
        self,
        ledger: WebhookEventLedger,
        store: BillingRecordStore,
        subscriptions: SubscriptionService,
        notifier: Notifier,
        lock: RecordLock,
        record_lock: RecordLock,
        settings: Settings | None = None,
    ):
        self.ledger = ledger
        self.store = store
        self.subscriptions = subscriptions
        self.notifier = notifier
        self.lock = lock  # per event id
        self.record_lock = record_lock  # per billing record, shared with PaymentProcessor
        self.settings = settings or get_settings()
        self._handlers: dict[str, Callable[[GatewayEvent], Awaitable[None]]] = {
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "charge.refunded": self._handle_charge_refunded,
        }

    async def handle(self, event: GatewayEvent) -> WebhookResult:
        max_retries = self.settings.webhook_max_retries
        check = await self.ledger.check_idempotency(event.id, event.type, event.to_json(), max_retries)
        if not check.should_process:
            return WebhookResult(event_id=event.id, status=check.reason)

        tokens = bind_payment_context(event_id=event.id, event_type=event.type)
        try:
            async with self.lock.hold(event.id, ttl=self.settings.record_lock_ttl_seconds) as acquired:
                if not acquired:
                    logger.info("webhook_event_in_progress")
                    return WebhookResult(event_id=event.id, status="in_progress")

                # A concurrent delivery may have finished while we waited on the check
                if await self.ledger.is_processed(event.id):
                    return WebhookResult(event_id=event.id, status="already_processed")

                handler = self._handlers.get(event.type, self._handle_unrecognized)
                started = time.monotonic()
                try:
                    await handler(event)
                except Exception as exc:
                    error = str(exc) or type(exc).__name__
                    logger.error("webhook_handler_failed", error=error, error_type=type(exc).__name__, exc_info=True)
                    await self.ledger.mark_failed(event.id, error, max_retries)
                    return WebhookResult(event_id=event.id, status="failed", error=error)

                duration_ms = int((time.monotonic() - started) * 1000)
                await self.ledger.mark_processed(event.id, duration_ms=duration_ms)
                return WebhookResult(event_id=event.id, status="processed")
        finally:
            unbind_payment_context(tokens)

    async def redeliver_failed(self) -> dict[str, int]:
        """Re-drive every failed event that still has retries left, oldest first."""
        summary = {"retried": 0, "processed": 0, "failed": 0, "skipped": 0}

        for stored in await self.ledger.get_failed_for_retry():
            if not stored.payload:
                logger.warning("webhook_redelivery_missing_payload", event_id=stored.event_id)
                summary["skipped"] += 1
                continue

            event = GatewayEvent.from_dict(json.loads(stored.payload))
            result = await self.handle(event)
            summary["retried"] += 1
            if result.status == "processed":
                summary["processed"] += 1
            elif result.status == "failed":
                summary["failed"] += 1

        if summary["retried"] or summary["skipped"]:
            logger.info("webhook_redelivery_completed", **summary)
        return summary

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _find_record(self, data: dict[str, Any]) -> BillingRecord | None:
        record_id = (data.get("metadata") or {}).get(RECORD_ID_KEY)
        if record_id:
            try:
                return await self.store.get(record_id)
            except NotFoundError:
                logger.warning("webhook_billing_record_not_found", billing_record_id=record_id)
        correlation_id = data.get("id")
        if correlation_id:
            return await self.store.find_by_correlation_id(correlation_id)
        return None

    async def _under_record_lock(
        self,
        record: BillingRecord,
        apply: Callable[[BillingRecord, GatewayEvent], Awaitable[None]],
        event: GatewayEvent,
    ) -> None:
        """Run ``apply`` on a fresh read of the record while holding its lock."""
        async with self.record_lock.hold(record.id, ttl=self.settings.record_lock_ttl_seconds) as acquired:
            if not acquired:
                logger.info("webhook_billing_record_busy", record_id=str(record.id))
                raise RecordBusyError("BillingRecord", record.id)
            await apply(await self.store.get(record.id), event)

    @staticmethod
    def _is_stale_attempt(record: BillingRecord, data: dict[str, Any]) -> bool:
        """True when the event belongs to a charge the record has already moved past."""
        version = (data.get("metadata") or {}).get(RECORD_VERSION_KEY)
        if version is not None:
            return str(version) != str(record.version)
        # No attempt metadata: this intent's failure is already on the record, which was re-armed since
        return bool(record.gateway_correlation_id) and record.gateway_correlation_id == data.get("id")

    async def _handle_payment_succeeded(self, event: GatewayEvent) -> None:
        record = await self._find_record(event.data)
        if record is None:
            logger.warning("webhook_payment_record_not_found", correlation_id=event.data.get("id"))
            return
        await self._under_record_lock(record, self._settle_paid, event)

    async def _settle_paid(self, record: BillingRecord, event: GatewayEvent) -> None:
        if record.status == BillingStatus.PAID.value:
            return
        if record.status == BillingStatus.FAILED.value:
            record = await self.store.rearm(record.id)
        if record.status != BillingStatus.PENDING.value:
            logger.warning("webhook_payment_succeeded_unexpected_status", record_id=str(record.id), status=record.status)
            return

        record = await self.store.mark_paid(record.id, event.data.get("id"))
        logger.info("webhook_payment_reconciled", record_id=str(record.id))

        try:
            await self.notifier.send_payment_success(record)
        except Exception as exc:
            logger.error("payment_notification_failed", notification="send_payment_success", error=str(exc))

    async def _handle_payment_failed(self, event: GatewayEvent) -> None:
        record = await self._find_record(event.data)
        if record is None:
            logger.warning("webhook_payment_record_not_found", correlation_id=event.data.get("id"))
            return
        await self._under_record_lock(record, self._settle_failed, event)

    async def _settle_failed(self, record: BillingRecord, event: GatewayEvent) -> None:
        if record.status != BillingStatus.PENDING.value:
            return
        if self._is_stale_attempt(record, event.data):
            logger.info("webhook_stale_payment_failure_ignored", record_id=str(record.id), correlation_id=event.data.get("id"))
            return

        last_error = event.data.get("last_payment_error") or {}
        message = last_error.get("message") or UNKNOWN_PAYMENT_ERROR
        record = await self.store.mark_failed(record.id, message, event.data.get("id"))
        logger.info("webhook_payment_failure_recorded", record_id=str(record.id), error=message)

    async def _handle_invoice_payment_failed(self, event: GatewayEvent) -> None:
        subscription_id = (event.data.get("metadata") or {}).get("subscription_id")
        if not subscription_id:
            logger.warning("webhook_invoice_missing_subscription", invoice_id=event.data.get("id"))
            return

        last_error = event.data.get("last_payment_error") or {}
        message = last_error.get("message") or "Invoice payment failed"
        await self.subscriptions.suspend_for_payment_failure(subscription_id, message)

    async def _handle_charge_refunded(self, event: GatewayEvent) -> None:
        logger.info(
            "webhook_charge_refunded",
            charge_id=event.data.get("id"),
            payment_intent=event.data.get("payment_intent"),
            amount_refunded=event.data.get("amount_refunded"),
        )

    async def _handle_unrecognized(self, event: GatewayEvent) -> None:
        logger.info("webhook_event_ignored")
