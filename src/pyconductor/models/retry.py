"""
Recovery policy configuration.

Design Pattern: Strategy Pattern
RecoveryConfig encapsulates retry behavior (how many attempts, which
backoff curve, which errors are worth retrying, whether a circuit breaker
guards the dependency) so the policy code never changes when the
strategy does.

Design Rationale:
- Sensible default: 3 retries, exponential backoff, transient/timeout/
  rate-limit errors retried
- Named presets for the common call sites (LLM API, tool execution)
- Advanced control: build a RecoveryConfig by hand
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, cast


class BackoffStrategy(str, Enum):
    """Curve used to space retry attempts."""

    NONE = "none"  # No delay between retries
    FIXED = "fixed"  # Same delay every time
    LINEAR = "linear"  # base * attempt
    EXPONENTIAL = "exponential"  # base * 2^(attempt-1)
    FIBONACCI = "fibonacci"  # base * fib(attempt)
    CUSTOM = "custom"  # Caller supplied function


class ErrorCategory(str, Enum):
    """
    Classification of an operation error.

    Category says WHAT went wrong; whether to retry is a separate
    decision (see RecoveryConfig.retryable_categories).
    """

    TRANSIENT = "transient"  # Network blips, 5xx, service unavailable
    TIMEOUT = "timeout"  # Operation or per-node timeout
    AUTH = "auth"  # 401/403, bad credentials
    RATE_LIMIT = "rate_limit"  # 429, provider throttling
    RESOURCE = "resource"  # Quota, out of memory, payload too large
    VALIDATION = "validation"  # Bad input
    PERMANENT = "permanent"  # Not found, cancelled, will never succeed
    UNKNOWN = "unknown"


BackoffFunction = Callable[[int, float], float]
"""Custom backoff: (attempt, initial_delay_ms) -> delay_ms."""

ErrorClassifierFunction = Callable[[BaseException], ErrorCategory]

DEFAULT_RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.TRANSIENT, ErrorCategory.TIMEOUT, ErrorCategory.RATE_LIMIT}
)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    Circuit breaker thresholds.

    Examples:
        # Defaults: open after 5 failures in a minute, probe after 30s
        config = CircuitBreakerConfig()

        # Trip fast, recover fast
        config = CircuitBreakerConfig(failure_threshold=2, reset_timeout_ms=1000)
    """

    failure_threshold: int = 5
    """Consecutive failures (inside the window) that open the circuit."""

    reset_timeout_ms: float = 30000
    """Time the circuit stays open before a half-open probe is allowed."""

    success_threshold: int = 3
    """Consecutive half-open successes that close the circuit again."""

    failure_window_ms: float = 60000
    """Failures older than this are forgotten before counting."""

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.reset_timeout_ms < 0 or self.failure_window_ms <= 0:
            raise ValueError("reset_timeout_ms must be >= 0 and failure_window_ms > 0")


@dataclass(frozen=True)
class RecoveryConfig:
    """
    Configuration for RecoveryPolicy.

    Examples:
        # Simple: just change the retry budget
        config = RecoveryConfig.with_max_retries(5)

        # Named preset: tuned for LLM API calls
        config = RecoveryConfig.API

        # Custom: full control
        config = RecoveryConfig(
            max_retries=4,
            backoff_strategy=BackoffStrategy.FIBONACCI,
            initial_delay_ms=200,
            max_delay_ms=5000,
            jitter_factor=0.0,
            circuit_breaker=CircuitBreakerConfig(failure_threshold=3),
        )
    """

    max_retries: int = 3
    """Retries after the first attempt. max_retries=3 means up to 4 attempts."""

    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL

    initial_delay_ms: float = 1000
    """Base delay fed into the backoff curve."""

    max_delay_ms: float = 30000
    """Cap applied after jitter."""

    jitter_factor: float = 0.1
    """Symmetric jitter, 0.1 = ±10%. Use 0 for reproducible delays."""

    backoff_fn: BackoffFunction | None = None
    """Used when backoff_strategy is CUSTOM."""

    retryable_errors: tuple[type[BaseException], ...] = ()
    """Errors of these classes are always retried."""

    retryable_patterns: tuple[str | re.Pattern[str], ...] = ()
    """Errors whose message matches one of these regexes are retried."""

    retryable_categories: frozenset[ErrorCategory] = DEFAULT_RETRYABLE_CATEGORIES
    """Errors classified into one of these categories are retried."""

    classifier: ErrorClassifierFunction | None = None
    """Replaces the default ordered classification rules."""

    total_timeout_ms: float | None = None
    """Budget across all attempts, including backoff waits."""

    circuit_breaker: CircuitBreakerConfig | None = None
    """Enables a circuit breaker owned by the policy instance."""

    compiled_patterns: tuple[re.Pattern[str], ...] = field(
        init=False, repr=False, compare=False, default=()
    )

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        # Type checker sees these as RecoveryConfig
        NONE: RecoveryConfig
        API: RecoveryConfig
        TOOL: RecoveryConfig
        RESILIENT: RecoveryConfig
    else:
        # Runtime sees these as None (set after class definition)
        NONE = cast("RecoveryConfig", None)
        API = cast("RecoveryConfig", None)
        TOOL = cast("RecoveryConfig", None)
        RESILIENT = cast("RecoveryConfig", None)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")

        compiled = tuple(
            p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE)
            for p in self.retryable_patterns
        )
        # frozen dataclass: derived field set through object.__setattr__
        object.__setattr__(self, "compiled_patterns", compiled)
        object.__setattr__(self, "retryable_categories", frozenset(self.retryable_categories))

    @classmethod
    def with_max_retries(cls, max_retries: int) -> RecoveryConfig:
        """
        Create a config with a custom retry budget (standard delays).

        Example:
            config = RecoveryConfig.with_max_retries(5)
        """
        return cls(max_retries=max_retries)

    @classmethod
    def from_env(cls, prefix: str = "CONDUCTOR_") -> RecoveryConfig:
        """
        Build a config from environment variables.

        Reads ``{prefix}MAX_RETRIES``, ``{prefix}BACKOFF_STRATEGY``,
        ``{prefix}INITIAL_DELAY_MS``, ``{prefix}MAX_DELAY_MS`` and
        ``{prefix}JITTER_FACTOR``; unset variables keep the defaults.

        Example:
            # $ export CONDUCTOR_MAX_RETRIES=5
            config = RecoveryConfig.from_env()
        """
        defaults = cls()
        env = os.environ
        return cls(
            max_retries=int(env.get(f"{prefix}MAX_RETRIES", defaults.max_retries)),
            backoff_strategy=BackoffStrategy(
                env.get(f"{prefix}BACKOFF_STRATEGY", defaults.backoff_strategy.value)
            ),
            initial_delay_ms=float(env.get(f"{prefix}INITIAL_DELAY_MS", defaults.initial_delay_ms)),
            max_delay_ms=float(env.get(f"{prefix}MAX_DELAY_MS", defaults.max_delay_ms)),
            jitter_factor=float(env.get(f"{prefix}JITTER_FACTOR", defaults.jitter_factor)),
        )

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"RecoveryConfig(max_retries={self.max_retries}, "
            f"backoff_strategy={self.backoff_strategy.value}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"jitter_factor={self.jitter_factor}, "
            f"circuit_breaker={self.circuit_breaker})"
        )


# Initialize predefined policies after class definition
RecoveryConfig.NONE = RecoveryConfig(
    max_retries=0,
    backoff_strategy=BackoffStrategy.NONE,
    initial_delay_ms=0,
    max_delay_ms=0,
    jitter_factor=0.0,
)

RecoveryConfig.API = RecoveryConfig(
    max_retries=3,
    backoff_strategy=BackoffStrategy.EXPONENTIAL,
    initial_delay_ms=1000,  # 1 second
    max_delay_ms=30000,  # 30 seconds
    retryable_patterns=(
        r"ECONNRESET",
        r"ETIMEDOUT",
        r"rate.?limit",
        r"\b429\b",
        r"\b503\b",
        r"\b502\b",
    ),
)

RecoveryConfig.TOOL = RecoveryConfig(
    max_retries=2,
    backoff_strategy=BackoffStrategy.LINEAR,
    initial_delay_ms=500,
    max_delay_ms=5000,
    retryable_categories=frozenset({ErrorCategory.TRANSIENT, ErrorCategory.TIMEOUT}),
)

RecoveryConfig.RESILIENT = RecoveryConfig(
    max_retries=5,
    backoff_strategy=BackoffStrategy.FIBONACCI,
    initial_delay_ms=1000,
    max_delay_ms=60000,
    circuit_breaker=CircuitBreakerConfig(
        failure_threshold=5,
        reset_timeout_ms=30000,
        success_threshold=3,
    ),
)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for errors that can specify whether they should be retried.

    The recovery policy asks ``is_retryable()`` before looking at classes,
    patterns or categories, so an error can veto or force a retry itself.

    Example:
        class ToolError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        # Transient error - should retry
        raise ToolError("sandbox busy", is_retryable=True)

        # Permanent error - should NOT retry
        raise ToolError("file does not exist", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """
        Returns True if this error is transient and the operation should be retried.

        Returns:
            True if retryable, False if permanent
        """
        # Default: all errors are retryable (safe default)
        return True
