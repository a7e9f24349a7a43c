"""Tests for BillingRecordStore: creation, transitions, refunds, partial payments and queries."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from payguard.core.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from payguard.db.models.billing_record import BillingRecord
from payguard.domain.billing import BillingStatus, BillingType, ensure_utc
from payguard.services.billing_store import UNKNOWN_PAYMENT_ERROR

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ============================================================================
# create_billing_record
# ============================================================================


async def test_create_billing_record_starts_pending(store):
    record = await store.create_billing_record("owner-1", Decimal("49.99"), NOW + timedelta(days=7))

    assert record.status == BillingStatus.PENDING.value
    assert record.type == BillingType.SUBSCRIPTION.value
    assert record.paid_at is None
    assert record.version == 1

    loaded = await store.get(record.id)
    assert loaded.amount == Decimal("49.99")
    assert loaded.owner_id == "owner-1"


async def test_create_rejects_blank_owner(store):
    with pytest.raises(ValidationError):
        await store.create_billing_record("  ", Decimal("10"), None)


async def test_create_rejects_negative_amount(store):
    with pytest.raises(ValidationError):
        await store.create_billing_record("owner-1", Decimal("-1"), None)


async def test_create_rejects_refund_type(store):
    with pytest.raises(ValidationError):
        await store.create_billing_record("owner-1", Decimal("10"), None, type=BillingType.REFUND)


async def test_create_rejects_unknown_type(store):
    with pytest.raises(ValidationError):
        await store.create_billing_record("owner-1", Decimal("10"), None, type="Lunch")


async def test_get_unknown_record_raises_not_found(store):
    with pytest.raises(NotFoundError):
        await store.get(uuid.uuid4())


async def test_get_malformed_id_raises_not_found(store):
    with pytest.raises(NotFoundError):
        await store.get("not-a-uuid")


# ============================================================================
# Transitions
# ============================================================================


async def test_mark_paid_stamps_paid_at_and_correlation(store):
    record = await store.create_billing_record("owner-1", Decimal("25"), None)

    paid = await store.mark_paid(record.id, "pi_123", now=NOW)

    assert paid.status == BillingStatus.PAID.value
    assert ensure_utc(paid.paid_at) == NOW
    assert paid.gateway_correlation_id == "pi_123"
    assert paid.transaction_id == "pi_123"
    assert paid.version == 2


async def test_mark_failed_defaults_reason(store):
    record = await store.create_billing_record("owner-1", Decimal("25"), None)

    failed = await store.mark_failed(record.id, "   ")

    assert failed.status == BillingStatus.FAILED.value
    assert failed.failure_reason == UNKNOWN_PAYMENT_ERROR
    assert failed.paid_at is None


async def test_rearm_clears_failure_reason(store):
    record = await store.create_billing_record("owner-1", Decimal("25"), None)
    await store.mark_failed(record.id, "declined")

    rearmed = await store.rearm(record.id)

    assert rearmed.status == BillingStatus.PENDING.value
    assert rearmed.failure_reason is None


async def test_transition_with_wrong_expected_status_fails(store):
    record = await store.create_billing_record("owner-1", Decimal("25"), None)

    with pytest.raises(PreconditionFailedError):
        await store.rearm(record.id)


async def test_paid_record_cannot_be_cancelled(store):
    record = await store.create_billing_record("owner-1", Decimal("25"), None)
    await store.mark_paid(record.id, "pi_1")

    with pytest.raises(InvalidTransitionError):
        await store.transition(record.id, BillingStatus.PAID, BillingStatus.CANCELLED)


async def test_stale_commit_maps_to_concurrent_modification(store):
    record = await store.create_billing_record("owner-1", Decimal("25"), None)

    with patch.object(AsyncSession, "commit", AsyncMock(side_effect=StaleDataError("stale"))):
        with pytest.raises(ConcurrentModificationError):
            await store.mark_paid(record.id, "pi_1")

    assert (await store.get(record.id)).status == BillingStatus.PENDING.value


async def test_version_column_detects_lost_update(store, session_factory):
    """A write based on an old version is refused by the database version check."""
    record = await store.create_billing_record("owner-1", Decimal("25"), None)

    async with session_factory() as stale_session:
        stale = await stale_session.get(BillingRecord, record.id)
        await store.cancel(record.id)

        stale.status = BillingStatus.FAILED.value
        stale.failure_reason = "late writer"
        with pytest.raises(StaleDataError):
            await stale_session.commit()

    assert (await store.get(record.id)).status == BillingStatus.CANCELLED.value


# ============================================================================
# Refund entries
# ============================================================================


async def test_append_refund_entry_flips_original_and_adds_negative_entry(store):
    record = await store.create_billing_record("owner-1", Decimal("80"), None)
    await store.mark_paid(record.id, "pi_9")

    original, refund = await store.append_refund_entry(record.id, Decimal("30"), "customer request", now=NOW)

    assert original.status == BillingStatus.REFUNDED.value
    assert original.paid_at is None
    assert ensure_utc(original.refunded_at) == NOW
    assert refund.amount == Decimal("-30")
    assert refund.type == BillingType.REFUND.value
    assert refund.status == BillingStatus.REFUNDED.value
    assert refund.parent_record_id == record.id
    assert refund.gateway_correlation_id == "pi_9"

    history = await store.get_owner_history("owner-1")
    assert {r.id for r in history} == {record.id, refund.id}


async def test_append_refund_entry_requires_paid(store):
    record = await store.create_billing_record("owner-1", Decimal("80"), None)

    with pytest.raises(PreconditionFailedError):
        await store.append_refund_entry(record.id, Decimal("10"))

    assert len(await store.get_owner_history("owner-1")) == 1


async def test_append_refund_entry_rejects_amount_above_original(store):
    record = await store.create_billing_record("owner-1", Decimal("80"), None)
    await store.mark_paid(record.id, "pi_9")

    with pytest.raises(PreconditionFailedError):
        await store.append_refund_entry(record.id, Decimal("80.01"))

    assert (await store.get(record.id)).status == BillingStatus.PAID.value


async def test_correlation_lookup_ignores_refund_entries(store):
    record = await store.create_billing_record("owner-1", Decimal("80"), None)
    await store.mark_paid(record.id, "pi_9")
    await store.append_refund_entry(record.id, Decimal("80"))

    found = await store.find_by_correlation_id("pi_9")
    assert found.id == record.id
    assert await store.find_by_correlation_id("pi_missing") is None


# ============================================================================
# Partial payments
# ============================================================================


async def test_partial_payment_accumulates_without_rewriting_amount(store):
    record = await store.create_billing_record("owner-1", Decimal("100"), None)

    updated = await store.apply_partial_payment(record.id, Decimal("40"))

    assert updated.amount == Decimal("100")
    assert updated.amount_paid == Decimal("40")
    assert updated.outstanding == Decimal("60")
    assert updated.status == BillingStatus.PENDING.value


async def test_partial_payment_of_full_remainder_marks_paid(store):
    record = await store.create_billing_record("owner-1", Decimal("100"), None)
    await store.apply_partial_payment(record.id, Decimal("40"))

    updated = await store.apply_partial_payment(record.id, Decimal("60"))

    assert updated.amount == Decimal("100")
    assert updated.amount_paid == Decimal("100")
    assert updated.outstanding == Decimal("0")
    assert updated.status == BillingStatus.PAID.value
    assert updated.paid_at is not None


async def test_partial_payment_over_remainder_is_rejected(store):
    record = await store.create_billing_record("owner-1", Decimal("100"), None)

    with pytest.raises(PreconditionFailedError):
        await store.apply_partial_payment(record.id, Decimal("100.01"))
    with pytest.raises(PreconditionFailedError):
        await store.apply_partial_payment(record.id, Decimal("0"))


async def test_partial_payment_bound_shrinks_with_each_collection(store):
    record = await store.create_billing_record("owner-1", Decimal("100"), None)
    await store.apply_partial_payment(record.id, Decimal("70"))

    with pytest.raises(PreconditionFailedError):
        await store.apply_partial_payment(record.id, Decimal("30.01"))

    assert (await store.get(record.id)).amount_paid == Decimal("70")


async def test_settled_partial_payments_count_at_charged_amount(store):
    record = await store.create_billing_record("owner-1", Decimal("100"), None)
    await store.apply_partial_payment(record.id, Decimal("40"))
    await store.apply_partial_payment(record.id, Decimal("60"))
    other = await store.create_billing_record("owner-1", Decimal("200"), None)
    await store.mark_paid(other.id, "pi_200")

    history = await store.get_payment_history("owner-1")

    assert history.payment_count == 2
    assert history.average_amount == Decimal("150.00")


# ============================================================================
# Queries
# ============================================================================


async def test_list_overdue_returns_pending_past_due_only(store):
    late = await store.create_billing_record("owner-1", Decimal("10"), NOW - timedelta(days=3))
    future = await store.create_billing_record("owner-1", Decimal("10"), NOW + timedelta(days=3))
    no_due = await store.create_billing_record("owner-1", Decimal("10"), None)
    paid_late = await store.create_billing_record("owner-1", Decimal("10"), NOW - timedelta(days=5))
    await store.mark_paid(paid_late.id, "pi_1")

    overdue = await store.list_overdue(now=NOW)

    assert [r.id for r in overdue] == [late.id]
    assert await store.is_overdue(late.id, now=NOW)
    assert not await store.is_overdue(future.id, now=NOW)
    assert not await store.is_overdue(no_due.id, now=NOW)
    assert not await store.is_overdue(paid_late.id, now=NOW)


async def test_list_overdue_does_not_modify_records(store):
    late = await store.create_billing_record("owner-1", Decimal("10"), NOW - timedelta(days=3))

    await store.list_overdue(now=NOW)

    reloaded = await store.get(late.id)
    assert reloaded.status == BillingStatus.PENDING.value
    assert reloaded.version == 1


async def test_list_pending(store):
    a = await store.create_billing_record("owner-1", Decimal("10"), NOW + timedelta(days=1))
    b = await store.create_billing_record("owner-2", Decimal("10"), NOW + timedelta(days=2))
    c = await store.create_billing_record("owner-3", Decimal("10"), None)
    await store.cancel(c.id)

    pending = await store.list_pending()
    assert [r.id for r in pending] == [a.id, b.id]


async def test_subscription_history(store, subscriptions):
    subscription = await subscriptions.create_subscription("owner-1")
    linked = await store.create_billing_record("owner-1", Decimal("10"), None, subscription_id=subscription.id)
    await store.create_billing_record("owner-1", Decimal("10"), None)

    history = await store.get_subscription_history(subscription.id)
    assert [r.id for r in history] == [linked.id]


async def test_payment_history_averages_paid_charges(store):
    for amount in ("100", "200"):
        record = await store.create_billing_record("owner-1", Decimal(amount), None)
        await store.mark_paid(record.id, f"pi_{amount}")
    await store.create_billing_record("owner-1", Decimal("900"), None)

    history = await store.get_payment_history("owner-1")

    assert history.payment_count == 2
    assert history.average_amount == Decimal("150.00")
    assert history.has_history


async def test_payment_history_empty_for_new_owner(store):
    history = await store.get_payment_history("nobody")
    assert history.payment_count == 0
    assert not history.has_history
