"""Payment risk heuristics.

Pure functions over recent payment attempts. This is a heuristic score, not a
fraud model: each signal adds a fixed weight and the total is capped at 100.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

MAX_RISK_SCORE = 100

FAILED_ATTEMPT_WEIGHT = 10
HIGH_AMOUNT_WEIGHT = 5
RAPID_ATTEMPT_WEIGHT = 15


@dataclass(frozen=True)
class PaymentAttempt:
    """One logged payment attempt (ephemeral, kept in Redis for an hour)."""

    user_id: str
    amount: Decimal
    success: bool
    at: datetime
    origin_ip: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class PaymentHistory:
    """Historical spending statistics for one user."""

    user_id: str
    average_amount: Decimal
    payment_count: int

    @property
    def has_history(self) -> bool:
        return self.payment_count > 0 and self.average_amount > 0


def calculate_risk_score(
    attempts: list[PaymentAttempt],
    now: datetime | None = None,
    high_amount_threshold: Decimal = Decimal("500"),
    rapid_window: timedelta = timedelta(minutes=5),
) -> int:
    """Score recent attempts: failed x10, amount over threshold x5, inside the rapid window x15."""
    if not attempts:
        return 0

    now = now or datetime.now(UTC)
    rapid_cutoff = now - rapid_window

    score = 0
    score += sum(1 for a in attempts if not a.success) * FAILED_ATTEMPT_WEIGHT
    score += sum(1 for a in attempts if a.amount > high_amount_threshold) * HIGH_AMOUNT_WEIGHT
    score += sum(1 for a in attempts if a.at > rapid_cutoff) * RAPID_ATTEMPT_WEIGHT

    return min(score, MAX_RISK_SCORE)


def is_unusual_amount(amount: Decimal, history: PaymentHistory, multiplier: Decimal = Decimal("3")) -> bool:
    """Amount above ``multiplier`` x the user's average. Never unusual without history."""
    if not history.has_history:
        return False
    return amount > history.average_amount * multiplier


def max_allowed_amount(
    history: PaymentHistory,
    multiplier: Decimal = Decimal("5"),
    absolute_ceiling: Decimal = Decimal("10000"),
) -> Decimal:
    """The lower of ``multiplier`` x average (when history exists) and the absolute ceiling."""
    if not history.has_history:
        return absolute_ceiling
    return min(history.average_amount * multiplier, absolute_ceiling)
