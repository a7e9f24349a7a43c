"""WebhookEventLedger: idempotency and bounded retry bookkeeping for gateway events.

The event id is the primary key, so a second insert for the same id fails at
the database. First-delivery races are resolved by catching IntegrityError
and re-reading the winner's row.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payguard.db.models.webhook_event import WebhookEvent

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
PERMANENTLY_FAILED_LIMIT = 100


@dataclass(frozen=True)
class IdempotencyCheck:
    should_process: bool
    reason: str  # new_event | already_processed | permanently_failed | retry_attempt
    retry_count: int = 0


@dataclass(frozen=True)
class WebhookProcessingStats:
    window_hours: int
    total_events: int
    successful_events: int
    failed_events: int
    permanently_failed_events: int
    pending_retry_events: int
    success_rate: float
    average_processing_ms: float | None
    events_by_type: dict[str, int]


class WebhookEventLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, event_id: str) -> WebhookEvent | None:
        async with self.session_factory() as session:
            return await session.get(WebhookEvent, event_id)

    async def is_processed(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(WebhookEvent.success).where(WebhookEvent.event_id == event_id))
            return bool(result.scalar_one_or_none())

    async def check_idempotency(
        self,
        event_id: str,
        event_type: str,
        payload: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        now: datetime | None = None,
    ) -> IdempotencyCheck:
        """Decide whether a delivery should be processed, recording it on first sight."""
        now = now or datetime.now(UTC)

        async with self.session_factory() as session:
            event = await session.get(WebhookEvent, event_id)
            if event is None:
                session.add(
                    WebhookEvent(
                        event_id=event_id,
                        event_type=event_type,
                        success=False,
                        retry_count=0,
                        max_retries=max_retries,
                        received_at=now,
                        payload=payload,
                    )
                )
                try:
                    await session.commit()
                    logger.info("webhook_event_recorded", event_id=event_id, event_type=event_type)
                    return IdempotencyCheck(should_process=True, reason="new_event")
                except IntegrityError:
                    # Another delivery inserted first; fall through to its row
                    await session.rollback()
                    event = await session.get(WebhookEvent, event_id)
                    if event is None:
                        raise

            if event.success:
                logger.info("webhook_duplicate_ignored", event_id=event_id, event_type=event_type)
                return IdempotencyCheck(should_process=False, reason="already_processed", retry_count=event.retry_count)

            if event.retry_count >= event.max_retries:
                logger.warning(
                    "webhook_permanently_failed",
                    event_id=event_id,
                    retry_count=event.retry_count,
                    max_retries=event.max_retries,
                )
                return IdempotencyCheck(should_process=False, reason="permanently_failed", retry_count=event.retry_count)

            if payload is not None and event.payload is None:
                event.payload = payload
                await session.commit()

            return IdempotencyCheck(should_process=True, reason="retry_attempt", retry_count=event.retry_count)

    async def mark_processed(
        self,
        event_id: str,
        duration_ms: int | None = None,
        metadata: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Terminal success. Returns False if the event was never recorded."""
        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            event = await session.get(WebhookEvent, event_id)
            if event is None:
                logger.warning("webhook_mark_processed_unknown_event", event_id=event_id)
                return False

            event.success = True
            event.processed_at = now
            event.last_attempt_at = now
            event.error_message = None
            event.processing_duration_ms = duration_ms
            if metadata is not None:
                event.event_metadata = metadata
            await session.commit()

        logger.info("webhook_event_processed", event_id=event_id, duration_ms=duration_ms)
        return True

    async def mark_failed(
        self,
        event_id: str,
        error_message: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
        now: datetime | None = None,
    ) -> bool:
        """Count one failed attempt. Never sets success; retry_count never exceeds max_retries."""
        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            event = await session.get(WebhookEvent, event_id)
            if event is None:
                logger.warning("webhook_mark_failed_unknown_event", event_id=event_id)
                return False
            if event.success:
                return False

            event.max_retries = max_retries
            event.retry_count = min((event.retry_count or 0) + 1, max_retries)
            event.last_attempt_at = now
            event.error_message = error_message
            await session.commit()

            retry_count = event.retry_count

        logger.warning(
            "webhook_event_failed",
            event_id=event_id,
            retry_count=retry_count,
            max_retries=max_retries,
            error=error_message,
        )
        return True

    async def get_failed_for_retry(self) -> list[WebhookEvent]:
        """Failed events with retries left, oldest delivery first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.success.is_(False), WebhookEvent.retry_count < WebhookEvent.max_retries)
                .order_by(WebhookEvent.received_at.asc())
            )
            return list(result.scalars().all())

    async def get_permanently_failed(self, limit: int = PERMANENTLY_FAILED_LIMIT) -> list[WebhookEvent]:
        """Events that exhausted their retries, most recent attempt first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.success.is_(False), WebhookEvent.retry_count >= WebhookEvent.max_retries)
                .order_by(WebhookEvent.last_attempt_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_processing_stats(self, hours: int = 24, now: datetime | None = None) -> WebhookProcessingStats:
        now = now or datetime.now(UTC)
        since = now - timedelta(hours=hours)

        async with self.session_factory() as session:
            result = await session.execute(select(WebhookEvent).where(WebhookEvent.received_at >= since))
            events = list(result.scalars().all())

        successful = [e for e in events if e.success]
        permanently_failed = [e for e in events if not e.success and e.retry_count >= e.max_retries]
        durations = [e.processing_duration_ms for e in successful if e.processing_duration_ms is not None]

        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1

        total = len(events)
        return WebhookProcessingStats(
            window_hours=hours,
            total_events=total,
            successful_events=len(successful),
            failed_events=total - len(successful),
            permanently_failed_events=len(permanently_failed),
            pending_retry_events=total - len(successful) - len(permanently_failed),
            success_rate=round(len(successful) / total * 100, 2) if total else 0.0,
            average_processing_ms=round(sum(durations) / len(durations), 2) if durations else None,
            events_by_type=by_type,
        )

    async def cleanup_old_events(self, older_than_days: int = 30, now: datetime | None = None) -> int:
        """Delete events received before the retention cutoff. Returns rows removed."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=older_than_days)

        async with self.session_factory() as session:
            count_result = await session.execute(
                select(func.count()).select_from(WebhookEvent).where(WebhookEvent.received_at < cutoff)
            )
            count = count_result.scalar_one()
            if count:
                await session.execute(delete(WebhookEvent).where(WebhookEvent.received_at < cutoff))
                await session.commit()

        logger.info("webhook_events_cleaned_up", deleted=count, older_than_days=older_than_days)
        return count
