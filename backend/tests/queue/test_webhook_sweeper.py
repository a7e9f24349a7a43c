"""Tests for the background webhook retry sweeper."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from payguard.domain.billing import BillingStatus
from payguard.queue.webhook_sweeper import WebhookRetrySweeper
from payguard.services.webhook_processor import GatewayEvent

pytestmark = pytest.mark.unit


async def test_sweep_once_redelivers_and_cleans(webhook_processor, webhook_ledger, store):
    record = await store.create_billing_record("owner-1", Decimal("20"), None)
    event = GatewayEvent(
        id="evt_1",
        type="payment_intent.succeeded",
        data={"id": "pi_1", "metadata": {"billing_record_id": str(record.id)}},
    )
    with patch.object(store, "mark_paid", AsyncMock(side_effect=RuntimeError("database unavailable"))):
        await webhook_processor.handle(event)

    now = datetime.now(UTC)
    await webhook_ledger.check_idempotency("evt_ancient", "charge.refunded", now=now - timedelta(days=45))

    sweeper = WebhookRetrySweeper(webhook_processor, webhook_ledger, interval_seconds=60, retention_days=30)
    summary = await sweeper.sweep_once(now=now)

    assert summary["processed"] == 1
    assert summary["cleaned"] == 1
    assert (await store.get(record.id)).status == BillingStatus.PAID.value
    assert await webhook_ledger.get("evt_ancient") is None


async def test_sweep_once_with_nothing_to_do(webhook_processor, webhook_ledger):
    sweeper = WebhookRetrySweeper(webhook_processor, webhook_ledger)

    summary = await sweeper.sweep_once()

    assert summary == {"retried": 0, "processed": 0, "failed": 0, "skipped": 0, "cleaned": 0}


async def test_run_survives_failed_cycle_and_stops(webhook_processor, webhook_ledger):
    sweeper = WebhookRetrySweeper(webhook_processor, webhook_ledger, interval_seconds=0.01)
    calls = 0

    async def flaky_redeliver():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database unavailable")
        if calls >= 3:
            sweeper.stop()
        return {"retried": 0, "processed": 0, "failed": 0, "skipped": 0}

    with patch.object(webhook_processor, "redeliver_failed", flaky_redeliver):
        await asyncio.wait_for(sweeper.run(), timeout=5)

    assert calls >= 3


async def test_stop_before_run_exits_immediately(webhook_processor, webhook_ledger):
    sweeper = WebhookRetrySweeper(webhook_processor, webhook_ledger, interval_seconds=60)
    sweeper.stop()

    await asyncio.wait_for(sweeper.run(), timeout=1)
