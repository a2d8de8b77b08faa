"""
Circuit breaker.

Stops calling a failing dependency for a cooldown period.

State machine:
    CLOSED ──(failure_threshold failures in window)──> OPEN
    OPEN ──(reset_timeout elapsed, checked on access)──> HALF_OPEN
    HALF_OPEN ──(success_threshold successes)──> CLOSED
    HALF_OPEN ──(any failure)──> OPEN

There is no timer thread: the OPEN -> HALF_OPEN move happens lazily the
next time ``state`` or ``allow_request()`` is read. The clock is
injectable so tests can move time by hand.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from pyconductor.core.status import CircuitState
from pyconductor.models.retry import CircuitBreakerConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
"""Monotonic clock returning seconds."""

StateChangeCallback = Callable[[CircuitState, CircuitState], None]


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time snapshot of a breaker. Timestamps are clock seconds."""

    state: CircuitState
    failures: int
    successes: int
    last_failure_at: float | None
    opened_at: float | None


class CircuitBreaker:
    """
    Failure-rate guard owned by a single RecoveryPolicy.

    Example:
        ```python
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2))
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()
        ```
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        name: str = "default",
        clock: Clock = time.monotonic,
        on_state_change: StateChangeCallback | None = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_times: deque[float] = deque()
        self._successes = 0
        self._last_failure_at: float | None = None
        self._opened_at: float | None = None

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state})"

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN if the cooldown elapsed."""
        self._check_reset_timeout()
        return self._state

    @property
    def failures(self) -> int:
        self._prune(self._clock())
        return len(self._failure_times)

    @property
    def successes(self) -> int:
        return self._successes

    def allow_request(self) -> bool:
        """False while OPEN. Calls are rejected without being invoked."""
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        state = self.state
        if state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                self._failure_times.clear()
                self._successes = 0
                self._opened_at = None
                self._transition(CircuitState.CLOSED)
        elif state == CircuitState.CLOSED:
            # Consecutive-failure count restarts
            self._failure_times.clear()

    def record_failure(self) -> None:
        now = self._clock()
        state = self.state
        self._last_failure_at = now
        self._successes = 0

        if state == CircuitState.HALF_OPEN:
            self._open(now)
            return

        if state == CircuitState.CLOSED:
            self._prune(now)
            self._failure_times.append(now)
            if len(self._failure_times) >= self.config.failure_threshold:
                self._open(now)

    def snapshot(self) -> CircuitBreakerState:
        state = self.state
        return CircuitBreakerState(
            state=state,
            failures=self.failures,
            successes=self._successes,
            last_failure_at=self._last_failure_at,
            opened_at=self._opened_at,
        )

    def reset(self) -> None:
        """Force the breaker back to CLOSED and forget all counts."""
        self._failure_times.clear()
        self._successes = 0
        self._last_failure_at = None
        self._opened_at = None
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    # ========================================================================
    # Internal helpers
    # ========================================================================

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._transition(CircuitState.OPEN)

    def _prune(self, now: float) -> None:
        window = self.config.failure_window_ms / 1000.0
        while self._failure_times and now - self._failure_times[0] > window:
            self._failure_times.popleft()

    def _check_reset_timeout(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed_ms = (self._clock() - self._opened_at) * 1000.0
        if elapsed_ms >= self.config.reset_timeout_ms:
            self._successes = 0
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state

        if new_state == CircuitState.OPEN:
            logger.warning(
                f"Circuit '{self.name}' opened ({old_state} -> {new_state}), "
                f"cooling down for {self.config.reset_timeout_ms:g}ms"
            )
        else:
            logger.info(f"Circuit '{self.name}' {old_state} -> {new_state}")

        if self._on_state_change is not None:
            self._on_state_change(old_state, new_state)
