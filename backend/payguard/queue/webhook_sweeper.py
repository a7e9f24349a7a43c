"""WebhookRetrySweeper: background re-delivery of failed gateway events.

Runs as an asyncio.Task inside the API process, started and cancelled by the
FastAPI lifespan. Each cycle:
  1. re-drives failed events that still have retries left (oldest first)
  2. deletes events older than the retention window

Errors in a cycle are logged and the loop keeps polling.
"""

import asyncio
from datetime import UTC, datetime

import structlog

from payguard.services.webhook_ledger import WebhookEventLedger
from payguard.services.webhook_processor import WebhookProcessor

logger = structlog.get_logger(__name__)


class WebhookRetrySweeper:
    """Periodic retry and retention loop for the webhook ledger.

    Usage:
        sweeper = WebhookRetrySweeper(processor, ledger, interval_seconds=60)
        task = asyncio.create_task(sweeper.run())
        ...
        sweeper.stop()
        await task
    """

    def __init__(
        self,
        processor: WebhookProcessor,
        ledger: WebhookEventLedger,
        interval_seconds: float = 60,
        retention_days: int = 30,
    ) -> None:
        self.processor = processor
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self.retention_days = retention_days
        self._stop = asyncio.Event()

    async def sweep_once(self, now: datetime | None = None) -> dict[str, int]:
        """One retry + retention cycle. Returns the redelivery summary plus ``cleaned``."""
        now = now or datetime.now(UTC)
        summary = await self.processor.redeliver_failed()
        summary["cleaned"] = await self.ledger.cleanup_old_events(self.retention_days, now=now)
        return summary

    async def run(self) -> None:
        """Sweep every ``interval_seconds`` until stop() is called."""
        logger.info("webhook_sweeper_started", interval_seconds=self.interval_seconds)

        while not self._stop.is_set():
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.warning("webhook_sweep_failed", error=str(exc), error_type=type(exc).__name__)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass

        logger.info("webhook_sweeper_stopped")

    def stop(self) -> None:
        self._stop.set()
