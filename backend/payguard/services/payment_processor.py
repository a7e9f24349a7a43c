"""PaymentProcessor: drives one billing record through the gateway with bounded retries.

Flow for process_payment:
1. Paid records return immediately (no lock, no gate, no gateway call).
2. Per-record Redis lock; a second caller gets an in_progress outcome.
3. Security gate; a rejection is final for this run.
4. Attempt loop (at most max_retry_attempts + 1 gateway charges):
   - declines persist Failed, notify, and back off on the decline curve
   - exceptions back off on the jittered exception curve
   - the record is re-armed Failed -> Pending before each retry
   - exhausting retries leaves the record Failed and suspends the subscription
   - a run cancelled mid-chain leaves the record Failed, never Pending

Notifications, attempt logging and suspension run after the state change they
describe has committed, and their failures are logged, never raised.
"""

import asyncio
import random
import uuid
from collections.abc import Awaitable, Callable
from decimal import Decimal

import structlog

from payguard.core.config import Settings, get_settings
from payguard.core.exceptions import (
    ConcurrentModificationError,
    PayGuardError,
    PreconditionFailedError,
    ValidationError,
)
from payguard.core.locking import RecordLock
from payguard.core.logging import bind_payment_context, unbind_payment_context
from payguard.db.models.billing_record import BillingRecord
from payguard.domain.billing import BillingStatus
from payguard.domain.retry import RetryState, decline_backoff, exception_backoff
from payguard.integrations.gateway import PaymentGateway, attempt_metadata
from payguard.integrations.notifier import Notifier
from payguard.schemas.payments import (
    PaymentOutcome,
    PaymentOutcomeStatus,
    RefundOutcome,
    RefundOutcomeStatus,
)
from payguard.security.gate import PaymentRequest, PaymentSecurityGate
from payguard.services.billing_store import UNKNOWN_PAYMENT_ERROR, BillingRecordStore
from payguard.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

NO_PAYMENT_METHOD_MESSAGE = "No default payment method found"
INTERRUPTED_MESSAGE = "Payment processing was interrupted before a final outcome"


class PaymentProcessor:
    def __init__(
        self,
        store: BillingRecordStore,
        subscriptions: SubscriptionService,
        gateway: PaymentGateway,
        notifier: Notifier,
        gate: PaymentSecurityGate,
        lock: RecordLock,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.subscriptions = subscriptions
        self.gateway = gateway
        self.notifier = notifier
        self.gate = gate
        self.lock = lock
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def process_payment(self, record_id: uuid.UUID | str, origin_ip: str | None = None) -> PaymentOutcome:
        """Charge a Pending record, retrying declines and gateway errors with backoff.

        Raises:
            NotFoundError: record does not exist
            PreconditionFailedError: record is neither Pending nor Paid
        """
        record = await self.store.get(record_id)
        if record.status == BillingStatus.PAID.value:
            return self._already_paid(record)
        if record.status != BillingStatus.PENDING.value:
            raise PreconditionFailedError(f"Billing record {record.id} is {record.status}, expected Pending")

        tokens = bind_payment_context(record_id=record.id, owner_id=record.owner_id)
        try:
            owner = uuid.uuid4().hex
            async with self.lock.hold(record.id, owner, ttl=self.settings.record_lock_ttl_seconds) as acquired:
                if not acquired:
                    logger.info("payment_already_in_progress")
                    return PaymentOutcome(
                        status=PaymentOutcomeStatus.IN_PROGRESS,
                        record_id=record.id,
                        billing_status=record.status,
                        message="Payment for this billing record is already in progress",
                    )

                # Another worker may have finished between our read and the lock
                record = await self.store.get(record.id)
                if record.status == BillingStatus.PAID.value:
                    return self._already_paid(record)
                if record.status != BillingStatus.PENDING.value:
                    raise PreconditionFailedError(f"Billing record {record.id} is {record.status}, expected Pending")

                decision = await self.gate.evaluate(
                    PaymentRequest(user_id=record.owner_id, amount=record.outstanding, origin_ip=origin_ip)
                )
                if not decision.approved:
                    logger.warning("payment_rejected_by_gate", check=decision.check, reason=decision.reason)
                    return PaymentOutcome(
                        status=PaymentOutcomeStatus.REJECTED,
                        record_id=record.id,
                        billing_status=record.status,
                        message=decision.reason,
                    )

                try:
                    return await self._run_attempts(record, owner, origin_ip)
                except asyncio.CancelledError:
                    await self._record_interruption(record.id)
                    raise
        finally:
            unbind_payment_context(tokens)

    async def retry_failed_payment(self, record_id: uuid.UUID | str, origin_ip: str | None = None) -> PaymentOutcome:
        """Manual retry: re-arm a Failed record and run the full payment flow again."""
        record = await self.store.get(record_id)
        if record.status == BillingStatus.PAID.value:
            return self._already_paid(record)
        if record.status != BillingStatus.FAILED.value:
            raise PreconditionFailedError(f"Only failed payments can be retried (status is {record.status})")

        await self.store.rearm(record.id)
        logger.info("payment_retry_requested", record_id=str(record.id))
        return await self.process_payment(record.id, origin_ip)

    async def process_refund(
        self,
        record_id: uuid.UUID | str,
        amount: Decimal,
        reason: str | None = None,
    ) -> RefundOutcome:
        """Refund a Paid record through the gateway, then record it in one transaction.

        Nothing in the ledger changes unless the gateway confirms the refund.
        """
        record = await self.store.get(record_id)
        self._require_refundable(record)

        amount = Decimal(amount)
        if amount <= 0 or amount > Decimal(record.amount):
            raise ValidationError(f"Refund amount must be greater than 0 and at most {record.amount}")

        tokens = bind_payment_context(record_id=record.id, owner_id=record.owner_id)
        try:
            async with self.lock.hold(record.id, ttl=self.settings.record_lock_ttl_seconds) as acquired:
                if not acquired:
                    return RefundOutcome(
                        status=RefundOutcomeStatus.IN_PROGRESS,
                        record_id=record.id,
                        message="Another operation on this billing record is in progress",
                    )

                # A refund that committed between our read and the lock must not be repeated
                record = await self.store.get(record.id)
                self._require_refundable(record)

                try:
                    refunded = await self.gateway.refund(record.gateway_correlation_id, amount)
                except Exception as exc:
                    logger.error("refund_gateway_error", error=str(exc), error_type=type(exc).__name__)
                    return RefundOutcome(
                        status=RefundOutcomeStatus.FAILED,
                        record_id=record.id,
                        message=f"Refund failed: {exc}",
                    )

                if not refunded:
                    logger.warning("refund_rejected_by_gateway", amount=str(amount))
                    return RefundOutcome(
                        status=RefundOutcomeStatus.FAILED,
                        record_id=record.id,
                        message="Refund was rejected by the payment gateway",
                    )

                try:
                    original, refund_entry = await self.store.append_refund_entry(record.id, amount, reason)
                except Exception:
                    # The gateway moved money the ledger does not show yet
                    logger.critical(
                        "refund_ledger_write_failed",
                        correlation_id=record.gateway_correlation_id,
                        amount=str(amount),
                        exc_info=True,
                    )
                    raise

                await self._notify(self.notifier.send_refund_processed, original, refund_entry)
                return RefundOutcome(
                    status=RefundOutcomeStatus.REFUNDED,
                    record_id=original.id,
                    refund_record_id=refund_entry.id,
                    amount=amount,
                )
        finally:
            unbind_payment_context(tokens)

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    async def _run_attempts(self, record: BillingRecord, owner: str, origin_ip: str | None) -> PaymentOutcome:
        state = RetryState(max_retries=self.settings.max_retry_attempts)

        while True:
            if state.attempt > 0:
                logger.info(
                    "payment_retry_scheduled",
                    attempt=state.attempt,
                    delay_seconds=round(state.next_delay, 3),
                    last_error=state.last_error,
                )
                await self._sleep(state.next_delay)
                await self.lock.extend(record.id, owner, ttl=self.settings.record_lock_ttl_seconds)

                record = await self.store.get(record.id)
                if record.status == BillingStatus.PAID.value:
                    # Reconciled by a webhook while we were backing off
                    return self._already_paid(record, attempts=state.attempt)
                if record.status == BillingStatus.FAILED.value:
                    try:
                        record = await self.store.rearm(record.id)
                    except (ConcurrentModificationError, PreconditionFailedError):
                        return await self._finalized_state(record.id, state.attempt)
                elif record.status != BillingStatus.PENDING.value:
                    return await self._finalized_state(record.id, state.attempt)

            method: str | None = None
            result = None
            try:
                method = await self.gateway.get_default_payment_method(record.owner_id)
                if method is not None:
                    result = await self.gateway.charge(
                        method,
                        record.outstanding,
                        record.currency,
                        idempotency_key=f"{record.id}:{record.version}",
                        metadata=attempt_metadata(record.id, record.version),
                    )
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                logger.warning(
                    "payment_attempt_error",
                    attempt=state.attempt,
                    error=error,
                    error_type=type(exc).__name__,
                )
                await self.gate.log_payment_attempt(record.owner_id, record.amount, False, origin_ip, error)

                if state.can_retry:
                    state.schedule(
                        exception_backoff(
                            state.attempt + 1,
                            unit_seconds=self.settings.backoff_unit_seconds,
                            max_jitter_seconds=self.settings.max_jitter_seconds,
                            rng=self._rng,
                        ),
                        error,
                    )
                    continue
                return await self._fail_terminal(record, state, error, PaymentOutcomeStatus.ERROR)

            if method is None:
                logger.warning("payment_no_default_method")
                return await self._fail_terminal(
                    record, state, NO_PAYMENT_METHOD_MESSAGE, PaymentOutcomeStatus.NO_PAYMENT_METHOD
                )

            if result.succeeded:
                return await self._succeed(record, state, result.correlation_id, origin_ip)

            message = result.error_message or UNKNOWN_PAYMENT_ERROR
            logger.warning(
                "payment_attempt_declined",
                attempt=state.attempt,
                error=message,
                correlation_id=result.correlation_id,
            )
            try:
                record = await self.store.mark_failed(record.id, message, result.correlation_id)
            except (ConcurrentModificationError, PreconditionFailedError):
                return await self._finalized_state(record.id, state.total_attempts)

            await self._notify(self.notifier.send_payment_failed, record, message)
            await self.gate.log_payment_attempt(record.owner_id, record.amount, False, origin_ip, message)

            if state.can_retry:
                state.schedule(
                    decline_backoff(
                        state.attempt,
                        unit_seconds=self.settings.backoff_unit_seconds,
                        floor_seconds=self.settings.decline_retry_floor_seconds,
                    ),
                    message,
                )
                continue

            suspended = await self._suspend(record, message)
            logger.error("payment_failed_retries_exhausted", attempts=state.total_attempts, error=message)
            return PaymentOutcome(
                status=PaymentOutcomeStatus.DECLINED,
                record_id=record.id,
                billing_status=record.status,
                attempts=state.total_attempts,
                correlation_id=record.gateway_correlation_id,
                message=message,
                suspended=suspended,
            )

    async def _succeed(
        self,
        record: BillingRecord,
        state: RetryState,
        correlation_id: str | None,
        origin_ip: str | None,
    ) -> PaymentOutcome:
        try:
            record = await self.store.mark_paid(record.id, correlation_id)
        except (ConcurrentModificationError, PreconditionFailedError):
            reconciled = await self._reconcile_confirmed_charge(record.id, correlation_id)
            if reconciled is None:
                return await self._finalized_state(record.id, state.total_attempts)
            record = reconciled

        logger.info("payment_succeeded", attempts=state.total_attempts, correlation_id=correlation_id)
        await self._notify(self.notifier.send_payment_success, record)
        await self.gate.log_payment_attempt(record.owner_id, record.amount, True, origin_ip)

        return PaymentOutcome(
            status=PaymentOutcomeStatus.SUCCEEDED,
            record_id=record.id,
            billing_status=record.status,
            attempts=state.total_attempts,
            correlation_id=correlation_id,
        )

    async def _fail_terminal(
        self,
        record: BillingRecord,
        state: RetryState,
        message: str,
        status: PaymentOutcomeStatus,
    ) -> PaymentOutcome:
        """Persist Failed, notify, suspend. Used for no-method and exhausted-exception endings."""
        try:
            record = await self.store.mark_failed(record.id, message)
        except (ConcurrentModificationError, PreconditionFailedError):
            return await self._finalized_state(record.id, state.attempt)

        await self._notify(self.notifier.send_payment_failed, record, message)
        suspended = await self._suspend(record, message)

        # The no-method path ends before any charge is attempted
        attempts = state.attempt if status == PaymentOutcomeStatus.NO_PAYMENT_METHOD else state.total_attempts
        logger.error("payment_failed", outcome=status.value, attempts=attempts, error=message)
        return PaymentOutcome(
            status=status,
            record_id=record.id,
            billing_status=record.status,
            attempts=attempts,
            message=message,
            suspended=suspended,
        )

    @staticmethod
    def _require_refundable(record: BillingRecord) -> None:
        if record.status != BillingStatus.PAID.value:
            raise PreconditionFailedError(f"Only paid billing records can be refunded (status is {record.status})")
        if not record.gateway_correlation_id:
            raise PreconditionFailedError(f"Billing record {record.id} has no gateway payment reference")

    async def _reconcile_confirmed_charge(self, record_id: uuid.UUID, correlation_id: str | None) -> BillingRecord | None:
        """The gateway took the money but another writer moved the record first.

        A Failed or Pending record is brought to Paid. Returns None when the
        record is already Paid or in a state a charge cannot settle.
        """
        record = await self.store.get(record_id)
        try:
            if record.status == BillingStatus.FAILED.value:
                record = await self.store.rearm(record_id)
            if record.status != BillingStatus.PENDING.value:
                return None
            record = await self.store.mark_paid(record_id, correlation_id)
        except (ConcurrentModificationError, PreconditionFailedError) as exc:
            logger.error("payment_reconciliation_failed", correlation_id=correlation_id, error=str(exc))
            return None

        logger.warning("payment_reconciled_after_concurrent_update", correlation_id=correlation_id)
        return record

    async def _record_interruption(self, record_id: uuid.UUID) -> None:
        """Leave a terminal Failed status behind when a run is cancelled mid-chain."""
        try:
            record = await self.store.get(record_id)
            if record.status != BillingStatus.PENDING.value:
                return
            await self.store.mark_failed(record_id, INTERRUPTED_MESSAGE)
        except PayGuardError as exc:
            logger.error("payment_interruption_not_recorded", error=str(exc), error_type=type(exc).__name__)
            return
        logger.error("payment_interrupted", billing_status=BillingStatus.FAILED.value)

    async def _suspend(self, record: BillingRecord, message: str) -> bool:
        try:
            return await self.subscriptions.suspend_for_payment_failure(record.subscription_id, message)
        except Exception as exc:
            logger.error("subscription_suspension_failed", subscription_id=str(record.subscription_id), error=str(exc))
            return False

    async def _notify(self, send: Callable[..., Awaitable[None]], *args) -> None:
        try:
            await send(*args)
        except Exception as exc:
            logger.error("payment_notification_failed", notification=send.__name__, error=str(exc))

    async def _finalized_state(self, record_id: uuid.UUID, attempts: int) -> PaymentOutcome:
        """Lost a write race: re-read and report whatever the winner left behind."""
        record = await self.store.get(record_id)
        logger.info("payment_concurrent_update_detected", billing_status=record.status)
        if record.status == BillingStatus.PAID.value:
            return self._already_paid(record, attempts=attempts)
        return PaymentOutcome(
            status=PaymentOutcomeStatus.ERROR,
            record_id=record.id,
            billing_status=record.status,
            attempts=attempts,
            message=f"Billing record was concurrently moved to {record.status}",
        )

    @staticmethod
    def _already_paid(record: BillingRecord, attempts: int = 0) -> PaymentOutcome:
        return PaymentOutcome(
            status=PaymentOutcomeStatus.ALREADY_PAID,
            record_id=record.id,
            billing_status=record.status,
            attempts=attempts,
            correlation_id=record.gateway_correlation_id,
        )
