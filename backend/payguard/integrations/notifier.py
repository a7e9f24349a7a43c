"""Notifier protocol and the structlog-backed default.

Notifications are fire-and-log side effects: callers invoke them after the
authoritative state change has committed and never let a failure propagate.
"""

from typing import Protocol, runtime_checkable

import structlog

from payguard.db.models.billing_record import BillingRecord
from payguard.db.models.subscription import Subscription

logger = structlog.get_logger(__name__)


@runtime_checkable
class Notifier(Protocol):
    async def send_payment_success(self, record: BillingRecord) -> None: ...

    async def send_payment_failed(self, record: BillingRecord, reason: str) -> None: ...

    async def send_subscription_suspended(self, subscription: Subscription, reason: str) -> None: ...

    async def send_refund_processed(self, record: BillingRecord, refund: BillingRecord) -> None: ...


class LogNotifier:
    """Emits one structured log event per notification.

    Stands in for the email/SMS delivery subsystem, which lives outside this service.
    """

    async def send_payment_success(self, record: BillingRecord) -> None:
        logger.info(
            "notify_payment_success",
            owner_id=record.owner_id,
            record_id=str(record.id),
            amount=str(record.amount),
            currency=record.currency,
        )

    async def send_payment_failed(self, record: BillingRecord, reason: str) -> None:
        logger.info(
            "notify_payment_failed",
            owner_id=record.owner_id,
            record_id=str(record.id),
            amount=str(record.amount),
            reason=reason,
        )

    async def send_subscription_suspended(self, subscription: Subscription, reason: str) -> None:
        logger.info(
            "notify_subscription_suspended",
            owner_id=subscription.owner_id,
            subscription_id=str(subscription.id),
            reason=reason,
        )

    async def send_refund_processed(self, record: BillingRecord, refund: BillingRecord) -> None:
        logger.info(
            "notify_refund_processed",
            owner_id=record.owner_id,
            record_id=str(record.id),
            refund_record_id=str(refund.id),
            amount=str(-refund.amount),
        )
