"""Tests for backoff curves and RetryState."""

import random

import pytest

from payguard.core.exceptions import RetryLimitExceededError
from payguard.domain.retry import RetryState, decline_backoff, exception_backoff

pytestmark = pytest.mark.unit


def test_decline_backoff_curve():
    """2^a minutes plus the 5-minute floor, no jitter."""
    assert decline_backoff(0) == 60 + 300
    assert decline_backoff(1) == 120 + 300
    assert decline_backoff(2) == 240 + 300


def test_exception_backoff_without_jitter():
    """2^(a-1) minutes before attempt a."""
    assert exception_backoff(1, max_jitter_seconds=0) == 60
    assert exception_backoff(2, max_jitter_seconds=0) == 120
    assert exception_backoff(3, max_jitter_seconds=0) == 240


def test_exception_backoff_jitter_is_bounded():
    rng = random.Random(42)
    for attempt in (1, 2, 3):
        delay = exception_backoff(attempt, rng=rng)
        base = 60 * 2 ** (attempt - 1)
        assert base <= delay <= base + 30


def test_exception_backoff_is_deterministic_with_seeded_rng():
    assert exception_backoff(2, rng=random.Random(1)) == exception_backoff(2, rng=random.Random(1))


def test_decline_path_starts_slower_than_exception_path():
    """The first decline retry waits longer than the first exception retry."""
    assert decline_backoff(0) > exception_backoff(1, max_jitter_seconds=30)


def test_configurable_unit_and_floor():
    assert decline_backoff(2, unit_seconds=1, floor_seconds=5) == 9
    assert exception_backoff(3, unit_seconds=0.5, max_jitter_seconds=0) == 2


def test_invalid_attempt_numbers_raise():
    with pytest.raises(ValueError):
        exception_backoff(0)
    with pytest.raises(ValueError):
        decline_backoff(-1)


def test_retry_state_bounds_attempts():
    """max_retries=3 allows exactly three scheduled retries (four attempts)."""
    state = RetryState(max_retries=3)
    assert state.total_attempts == 1

    for expected_attempt in (1, 2, 3):
        assert state.can_retry
        state.schedule(10.0 * expected_attempt, error=f"err {expected_attempt}")
        assert state.attempt == expected_attempt

    assert not state.can_retry
    assert state.total_attempts == 4
    assert state.delays == [10.0, 20.0, 30.0]
    assert state.last_error == "err 3"

    with pytest.raises(RetryLimitExceededError):
        state.schedule(1.0)


def test_retry_state_with_zero_retries():
    state = RetryState(max_retries=0)
    assert not state.can_retry
