"""Billing record state machine and ledger invariants.

Pure domain functions. No DB access, fully deterministic.

State machine:
    PENDING -> PAID | FAILED | CANCELLED
    FAILED  -> PENDING   (explicit retry: manual, or the processor's bounded retry)
    PAID    -> REFUNDED  (a separate negative-amount Refund entry is appended)

OVERDUE is never stored. It is a query-time classification of a PENDING
record whose due date has passed.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from payguard.core.exceptions import InvalidTransitionError, InvariantViolationError


class BillingStatus(StrEnum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class SubscriptionStatus(StrEnum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    CANCELLED = "Cancelled"
    PAYMENT_FAILED = "PaymentFailed"
    SUSPENDED = "Suspended"


class BillingType(StrEnum):
    SUBSCRIPTION = "Subscription"
    CONSULTATION = "Consultation"
    MEDICATION = "Medication"
    LATE_FEE = "LateFee"
    REFUND = "Refund"
    RECURRING = "Recurring"
    UPFRONT = "Upfront"
    BUNDLE = "Bundle"
    INVOICE = "Invoice"
    CYCLE = "Cycle"


TRANSITIONS: dict[BillingStatus, frozenset[BillingStatus]] = {
    BillingStatus.PENDING: frozenset({BillingStatus.PAID, BillingStatus.FAILED, BillingStatus.CANCELLED}),
    BillingStatus.FAILED: frozenset({BillingStatus.PENDING}),
    BillingStatus.PAID: frozenset({BillingStatus.REFUNDED}),
    BillingStatus.CANCELLED: frozenset(),  # Terminal
    BillingStatus.REFUNDED: frozenset(),  # Terminal
}

OVERDUE = "Overdue"


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def can_transition(current: BillingStatus | str, target: BillingStatus | str) -> bool:
    return BillingStatus(target) in TRANSITIONS.get(BillingStatus(current), frozenset())


def assert_transition(current: BillingStatus | str, target: BillingStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(str(current), str(target))


def validate_amount(amount: Decimal, billing_type: BillingType | str) -> None:
    """Charges are non-negative; only Refund entries carry a negative amount."""
    if BillingType(billing_type) == BillingType.REFUND:
        if amount >= 0:
            raise InvariantViolationError("Refund entries must carry a negative amount")
    elif amount < 0:
        raise InvariantViolationError(f"Negative amount {amount} is only allowed for Refund entries")


def check_invariants(record: Any) -> None:
    """Validate the ledger invariants on anything shaped like a BillingRecord.

    - paid_at is set if and only if status is PAID
    - failure_reason is non-empty if and only if status is FAILED
    - amount sign is negative only for REFUND entries
    - partial payments never exceed the charged amount
    """
    status = BillingStatus(record.status)

    if (record.paid_at is not None) != (status == BillingStatus.PAID):
        raise InvariantViolationError(f"paid_at must be set exactly when status is Paid (status={status})")

    has_reason = bool(record.failure_reason and record.failure_reason.strip())
    if has_reason != (status == BillingStatus.FAILED):
        raise InvariantViolationError(f"failure_reason must be set exactly when status is Failed (status={status})")

    validate_amount(Decimal(record.amount), record.type)

    amount_paid = Decimal(getattr(record, "amount_paid", None) or 0)
    if amount_paid < 0 or amount_paid > max(Decimal(record.amount), Decimal("0")):
        raise InvariantViolationError(f"amount_paid {amount_paid} must be within [0, {record.amount}]")


def is_overdue(status: BillingStatus | str, due_date: datetime | None, now: datetime | None = None) -> bool:
    """A PENDING record whose due date has passed."""
    now = now or datetime.now(UTC)
    if due_date is None:
        return False
    return BillingStatus(status) == BillingStatus.PENDING and ensure_utc(due_date) < ensure_utc(now)


def classify(status: BillingStatus | str, due_date: datetime | None, now: datetime | None = None) -> str:
    """Return the display status, substituting "Overdue" where it applies."""
    if is_overdue(status, due_date, now):
        return OVERDUE
    return BillingStatus(status).value
