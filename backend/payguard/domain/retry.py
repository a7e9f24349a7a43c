"""Retry state and backoff curves for the payment processor.

Two deliberately different curves:

- exception path (transport error / unexpected failure on our side):
  pure exponential, 2^(a-1) units before attempt ``a``, plus 0-30 s jitter so
  a batch of records retried together does not resynchronize.
- decline path (the gateway answered and said no):
  2^a units after the declined attempt ``a``, plus a constant floor. Slower
  to start, no jitter.

The retry chain is an explicit value object instead of recursion, so the
bound is visible and a caller can persist or inspect where a chain stands.
"""

import random
from dataclasses import dataclass, field

from payguard.core.exceptions import RetryLimitExceededError


def exception_backoff(
    next_attempt: int,
    unit_seconds: float = 60.0,
    max_jitter_seconds: float = 30.0,
    rng: random.Random | None = None,
) -> float:
    """Delay before ``next_attempt`` (>= 1) after an exception."""
    if next_attempt < 1:
        raise ValueError("next_attempt must be >= 1")
    jitter = (rng or random).uniform(0, max_jitter_seconds) if max_jitter_seconds > 0 else 0.0
    return (2 ** (next_attempt - 1)) * unit_seconds + jitter


def decline_backoff(declined_attempt: int, unit_seconds: float = 60.0, floor_seconds: float = 300.0) -> float:
    """Delay after the gateway declined attempt ``declined_attempt`` (>= 0)."""
    if declined_attempt < 0:
        raise ValueError("declined_attempt must be >= 0")
    return (2**declined_attempt) * unit_seconds + floor_seconds


@dataclass
class RetryState:
    """Where a payment retry chain stands.

    ``attempt`` is the index of the attempt about to run (0 = first try).
    ``next_delay`` is how long to wait before it; 0 for the first try.
    """

    max_retries: int
    attempt: int = 0
    next_delay: float = 0.0
    last_error: str | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def can_retry(self) -> bool:
        return self.attempt < self.max_retries

    @property
    def total_attempts(self) -> int:
        return self.attempt + 1

    def schedule(self, delay: float, error: str | None = None) -> None:
        """Advance to the next attempt, waiting ``delay`` seconds first."""
        if not self.can_retry:
            raise RetryLimitExceededError(record_id=None, attempts=self.total_attempts)
        self.attempt += 1
        self.next_delay = delay
        self.last_error = error
        self.delays.append(delay)
