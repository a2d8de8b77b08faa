"""Tests for backoff delay calculation."""

import random

import pytest
from hypothesis import given
from hypothesis import strategies as st

from pyconductor.models.retry import BackoffStrategy
from pyconductor.recovery.backoff import MAX_GROWTH_ATTEMPT, compute_delay, fibonacci


def test_fibonacci_sequence():
    assert [fibonacci(n) for n in range(1, 9)] == [1, 1, 2, 3, 5, 8, 13, 21]


@pytest.mark.parametrize(
    "strategy,expected",
    [
        (BackoffStrategy.NONE, [0, 0, 0, 0, 0]),
        (BackoffStrategy.FIXED, [100, 100, 100, 100, 100]),
        (BackoffStrategy.LINEAR, [100, 200, 300, 400, 500]),
        (BackoffStrategy.EXPONENTIAL, [100, 200, 400, 800, 1600]),
        (BackoffStrategy.FIBONACCI, [100, 100, 200, 300, 500]),
    ],
)
def test_strategy_curves_without_jitter(strategy, expected):
    delays = [compute_delay(n, strategy, base_ms=100, cap_ms=100_000) for n in range(1, 6)]
    assert delays == expected


def test_fibonacci_delay_is_capped():
    assert compute_delay(5, BackoffStrategy.FIBONACCI, base_ms=100, cap_ms=300) == 300


def test_custom_strategy_receives_attempt_and_base():
    calls = []

    def custom(attempt, base):
        calls.append((attempt, base))
        return base + attempt

    assert compute_delay(3, BackoffStrategy.CUSTOM, 50, 1000, custom=custom) == 53
    assert calls == [(3, 50)]


def test_custom_strategy_without_function_uses_base():
    assert compute_delay(4, BackoffStrategy.CUSTOM, 75, 1000) == 75


def test_attempt_below_one_rejected():
    with pytest.raises(ValueError):
        compute_delay(0, BackoffStrategy.FIXED, 100, 1000)


def test_huge_attempt_does_not_overflow():
    delay = compute_delay(MAX_GROWTH_ATTEMPT * 10, BackoffStrategy.EXPONENTIAL, 100, 30_000)
    assert delay == 30_000


def test_jitter_is_deterministic_with_seeded_rng():
    a = compute_delay(3, BackoffStrategy.EXPONENTIAL, 100, 10_000, 0.5, rng=random.Random(7))
    b = compute_delay(3, BackoffStrategy.EXPONENTIAL, 100, 10_000, 0.5, rng=random.Random(7))
    assert a == b
    assert 200 <= a <= 600


# ==============================================================================
# PROPERTIES
# ==============================================================================


@pytest.mark.property
@given(
    attempt=st.integers(min_value=1, max_value=5000),
    strategy=st.sampled_from(list(BackoffStrategy)),
    base_ms=st.floats(min_value=0, max_value=10_000, allow_nan=False),
    cap_ms=st.floats(min_value=0, max_value=100_000, allow_nan=False),
    jitter=st.floats(min_value=0, max_value=1, allow_nan=False),
    seed=st.integers(min_value=0, max_value=2**32 - 1),
)
def test_delay_always_within_zero_and_cap(attempt, strategy, base_ms, cap_ms, jitter, seed):
    delay = compute_delay(
        attempt, strategy, base_ms, cap_ms, jitter, rng=random.Random(seed)
    )
    assert 0 <= delay <= cap_ms


@pytest.mark.property
@given(
    attempt=st.integers(min_value=1, max_value=60),
    base_ms=st.floats(min_value=1, max_value=1000, allow_nan=False),
)
def test_exponential_without_jitter_is_monotonic(attempt, base_ms):
    cap = float("inf")
    first = compute_delay(attempt, BackoffStrategy.EXPONENTIAL, base_ms, cap)
    second = compute_delay(attempt + 1, BackoffStrategy.EXPONENTIAL, base_ms, cap)
    assert second >= first


@pytest.mark.property
@given(
    attempt=st.integers(min_value=1, max_value=200),
    strategy=st.sampled_from(list(BackoffStrategy)),
    base_ms=st.floats(min_value=0, max_value=5000, allow_nan=False),
)
def test_zero_jitter_is_reproducible(attempt, strategy, base_ms):
    a = compute_delay(attempt, strategy, base_ms, 60_000)
    b = compute_delay(attempt, strategy, base_ms, 60_000)
    assert a == b
