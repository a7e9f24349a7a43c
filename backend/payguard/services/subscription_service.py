"""SubscriptionService: subscription lookup and payment-failure suspension."""

import uuid
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from payguard.core.exceptions import ConcurrentModificationError, NotFoundError, ValidationError
from payguard.db.models.subscription import Subscription
from payguard.domain.billing import SubscriptionStatus
from payguard.integrations.notifier import Notifier

logger = structlog.get_logger(__name__)


class SubscriptionService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], notifier: Notifier):
        self.session_factory = session_factory
        self.notifier = notifier

    async def create_subscription(
        self,
        owner_id: str,
        status: SubscriptionStatus | str = SubscriptionStatus.ACTIVE,
    ) -> Subscription:
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id must not be empty")

        subscription = Subscription(id=uuid.uuid4(), owner_id=owner_id, status=SubscriptionStatus(status).value)
        async with self.session_factory() as session:
            session.add(subscription)
            await session.commit()
            await session.refresh(subscription)
        return subscription

    async def get(self, subscription_id: uuid.UUID | str) -> Subscription:
        async with self.session_factory() as session:
            result = await session.execute(select(Subscription).where(Subscription.id == uuid.UUID(str(subscription_id))))
            subscription = result.scalar_one_or_none()
            if subscription is None:
                raise NotFoundError("Subscription", subscription_id)
            return subscription

    async def suspend_for_payment_failure(
        self,
        subscription_id: uuid.UUID | str | None,
        error_message: str,
        now: datetime | None = None,
    ) -> bool:
        """Suspend a subscription after an unrecoverable payment failure.

        Idempotent: an already-suspended subscription is left untouched and no
        notification is sent.

        Returns:
            True if this call suspended the subscription, False otherwise
        """
        if subscription_id is None:
            return False

        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            result = await session.execute(select(Subscription).where(Subscription.id == uuid.UUID(str(subscription_id))))
            subscription = result.scalar_one_or_none()
            if subscription is None:
                logger.warning("suspension_subscription_not_found", subscription_id=str(subscription_id))
                return False

            if subscription.status == SubscriptionStatus.SUSPENDED.value:
                logger.info("subscription_already_suspended", subscription_id=str(subscription_id))
                return False

            subscription.status = SubscriptionStatus.SUSPENDED.value
            subscription.failed_payment_attempts = (subscription.failed_payment_attempts or 0) + 1
            subscription.last_payment_failed_at = now
            subscription.last_payment_error = error_message
            subscription.suspended_at = now

            try:
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise ConcurrentModificationError("Subscription", subscription_id) from exc

        logger.warning(
            "subscription_suspended",
            subscription_id=str(subscription_id),
            owner_id=subscription.owner_id,
            error=error_message,
        )

        try:
            await self.notifier.send_subscription_suspended(
                subscription, f"Subscription suspended due to payment failure: {error_message}"
            )
        except Exception as exc:
            logger.error("suspension_notification_failed", subscription_id=str(subscription_id), error=str(exc))

        return True
