"""
Backoff delay calculation.

Pure function mapping (attempt, strategy) to a delay in milliseconds.
No sleeping happens here; callers decide how to wait.

Example:
    ```python
    compute_delay(3, BackoffStrategy.EXPONENTIAL, base_ms=100, cap_ms=10_000)
    # 400.0

    compute_delay(5, BackoffStrategy.FIBONACCI, base_ms=100, cap_ms=300)
    # 300.0 (capped)
    ```
"""

from __future__ import annotations

import random
from functools import cache

from pyconductor.models.retry import BackoffFunction, BackoffStrategy

# Exponential and fibonacci curves stop growing past this attempt
MAX_GROWTH_ATTEMPT = 1000


@cache
def fibonacci(n: int) -> int:
    """fib(1) = fib(2) = 1."""
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a


def base_delay(
    attempt: int,
    strategy: BackoffStrategy,
    base_ms: float,
    custom: BackoffFunction | None = None,
) -> float:
    """Raw delay before jitter and capping."""
    match strategy:
        case BackoffStrategy.NONE:
            return 0.0
        case BackoffStrategy.FIXED:
            return float(base_ms)
        case BackoffStrategy.LINEAR:
            return float(base_ms * attempt)
        case BackoffStrategy.EXPONENTIAL:
            return float(base_ms * 2 ** (min(attempt, MAX_GROWTH_ATTEMPT) - 1))
        case BackoffStrategy.FIBONACCI:
            return float(base_ms * fibonacci(min(attempt, MAX_GROWTH_ATTEMPT)))
        case BackoffStrategy.CUSTOM:
            if custom is None:
                return float(base_ms)
            return float(custom(attempt, base_ms))
    raise ValueError(f"Unknown backoff strategy: {strategy!r}")


def compute_delay(
    attempt: int,
    strategy: BackoffStrategy,
    base_ms: float,
    cap_ms: float,
    jitter_factor: float = 0.0,
    custom: BackoffFunction | None = None,
    rng: random.Random | None = None,
) -> float:
    """
    Delay in milliseconds before retry number ``attempt``.

    Symmetric jitter ``delay * jitter_factor * U(-1, 1)`` is added, then the
    value is clamped to ``[0, cap_ms]``. With ``jitter_factor=0`` the result
    is exactly reproducible.

    Args:
        attempt: 1-based attempt number
        strategy: Backoff curve
        base_ms: Base delay fed into the curve
        cap_ms: Upper bound applied after jitter
        jitter_factor: 0.0 - 1.0
        custom: Used by BackoffStrategy.CUSTOM
        rng: Random source for jitter, defaults to the module generator

    Raises:
        ValueError: If attempt < 1
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    delay = base_delay(attempt, strategy, base_ms, custom)

    if jitter_factor > 0 and delay > 0:
        uniform = rng.uniform if rng is not None else random.uniform
        delay += delay * jitter_factor * uniform(-1.0, 1.0)

    return min(max(delay, 0.0), float(cap_ms))
