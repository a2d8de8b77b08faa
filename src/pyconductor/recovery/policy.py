"""
Recovery policy: classify, retry, back off, break the circuit.

Design Pattern: Template Method
``execute()`` fixes the order of every step of an attempt. Hooks and
RecoveryAction values customize individual steps without changing the
sequence.

Order of one attempt:
    1. Total time budget exhausted  -> raise last error (or TotalTimeoutError)
    2. Circuit open                 -> raise CircuitOpenError, fn not invoked
    3. Cancellation token set       -> raise TaskCancelledError, fn not invoked
    4. Call fn
       success: record success, on_recovered (only if attempt > 1), return
       failure: record failure, classify, build RecoveryContext, then
         a. final attempt      -> on_exhausted, raise RetriesExhaustedError
         b. not retryable      -> re-raise the error
         c. on_error action    -> Retry / RetryWithBackoff / Skip / Fallback /
                                  Abort / Escalate / CheckpointRestore
         d. before_retry, sleep backoff (capped by budget), after_retry

Every hook is called at most once per attempt and may be sync or async.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from pyconductor.core.errors import (
    AbortedError,
    CheckpointRestoreRequested,
    CircuitOpenError,
    EscalationError,
    RetriesExhaustedError,
    TotalTimeoutError,
)
from pyconductor.core.hooks import maybe_await
from pyconductor.core.status import CircuitState
from pyconductor.executor.cancellation import CancellationToken
from pyconductor.models.recovery import (
    Abort,
    CheckpointRestore,
    Escalate,
    Fallback,
    RecoveryContext,
    Retry,
    RetryWithBackoff,
    Skip,
)
from pyconductor.models.retry import ErrorCategory, RecoveryConfig
from pyconductor.recovery.backoff import compute_delay
from pyconductor.recovery.circuit_breaker import CircuitBreaker, CircuitBreakerState, Clock
from pyconductor.recovery.classifier import ErrorClassifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

ContextHook = Callable[[RecoveryContext], Any]
"""Hook receiving a RecoveryContext. May return an awaitable."""

ErrorHook = Callable[[RecoveryContext], Any]
"""on_error hook. Returns a RecoveryAction (or None), possibly awaitable."""


@dataclass(frozen=True)
class RecoveryHooks:
    """
    Callbacks invoked by RecoveryPolicy.execute().

    Guarantees per execute() call:
    - on_error: once per failed non-final retryable attempt, before before_retry
    - before_retry / after_retry: once around each backoff wait
    - on_exhausted: exactly once, when the final attempt fails
    - on_recovered: exactly once, when an attempt after the first succeeds
    """

    on_error: ErrorHook | None = None
    before_retry: ContextHook | None = None
    after_retry: ContextHook | None = None
    on_exhausted: ContextHook | None = None
    on_recovered: ContextHook | None = None


class RecoveryPolicy:
    """
    Wraps fallible async operations with retries and circuit breaking.

    One policy instance owns one circuit breaker, so share an instance
    between calls that hit the same dependency.

    Usage:
        ```python
        policy = RecoveryPolicy(RecoveryConfig.API)

        reply = await policy.execute("llm.chat", lambda: client.chat(prompt))

        @policy.wrap("tool.search")
        async def search(query: str) -> str:
            ...
        ```
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        hooks: RecoveryHooks | None = None,
        *,
        name: str = "recovery",
        classifier: ErrorClassifier | None = None,
        clock: Clock = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config or RecoveryConfig()
        self.hooks = hooks or RecoveryHooks()
        self.name = name
        self._classifier = classifier or ErrorClassifier()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._breaker: CircuitBreaker | None = None
        if self.config.circuit_breaker is not None:
            self._breaker = CircuitBreaker(self.config.circuit_breaker, name=name, clock=clock)

    def __repr__(self) -> str:
        return f"RecoveryPolicy(name={self.name!r}, config={self.config!r})"

    @property
    def circuit_breaker(self) -> CircuitBreaker | None:
        return self._breaker

    # ========================================================================
    # Decisions (pure)
    # ========================================================================

    def get_delay(self, attempt: int) -> float:
        """Backoff delay in milliseconds before retry number ``attempt``."""
        config = self.config
        return compute_delay(
            attempt,
            config.backoff_strategy,
            config.initial_delay_ms,
            config.max_delay_ms,
            config.jitter_factor,
            custom=config.backoff_fn,
            rng=self._rng,
        )

    def classify_error(self, error: BaseException) -> ErrorCategory:
        if self.config.classifier is not None:
            return self.config.classifier(error)
        return self._classifier.classify(error)

    def is_retryable(self, error: BaseException) -> bool:
        """
        Retryability, independent of the category label.

        Checked in order: the error's own ``is_retryable()``, configured
        retryable classes, configured message patterns, then the
        classified category.
        """
        declared = getattr(error, "is_retryable", None)
        if callable(declared):
            return bool(declared())

        if self.config.retryable_errors and isinstance(error, self.config.retryable_errors):
            return True

        message = str(error)
        if any(p.search(message) for p in self.config.compiled_patterns):
            return True

        return self.classify_error(error) in self.config.retryable_categories

    # ========================================================================
    # Circuit breaker access
    # ========================================================================

    def circuit_state(self) -> CircuitBreakerState | None:
        if self._breaker is None:
            return None
        return self._breaker.snapshot()

    def reset_circuit(self) -> None:
        if self._breaker is not None:
            self._breaker.reset()

    def reset(self) -> None:
        """Reset all per-instance state."""
        self.reset_circuit()

    # ========================================================================
    # Execution
    # ========================================================================

    async def execute(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        *,
        args: Any = None,
        metadata: Mapping[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
        last_checkpoint: str | None = None,
    ) -> T | None:
        """
        Run ``fn`` with recovery.

        Args:
            operation: Name used in errors, logs and hook contexts
            fn: Zero-argument async callable, called once per attempt
            args: Opaque arguments copied into each RecoveryContext
            metadata: Copied into each RecoveryContext
            cancel_token: Checked before every attempt
            last_checkpoint: Checkpoint id offered to hooks

        Returns:
            The result of ``fn``, of a Fallback, or None after Skip

        Raises:
            CircuitOpenError: Breaker open, fn not invoked
            TaskCancelledError: Token cancelled before an attempt
            TotalTimeoutError: Budget ran out before the first attempt
            RetriesExhaustedError: Final attempt failed (chained from the last error)
            AbortedError, EscalationError, CheckpointRestoreRequested: on_error actions
            Exception: The error itself, when it is not retryable
        """
        config = self.config
        hooks = self.hooks
        metadata = dict(metadata or {})
        started = self._clock()
        first_attempt_at = datetime.now(UTC)
        errors: list[BaseException] = []
        last_error: BaseException | None = None
        last_category: ErrorCategory | None = None
        max_attempts = config.max_retries + 1

        def elapsed_ms() -> float:
            return (self._clock() - started) * 1000.0

        def make_context(attempt: int, error: BaseException, category: ErrorCategory):
            return RecoveryContext(
                error=error,
                attempt=attempt,
                max_retries=config.max_retries,
                operation=operation,
                elapsed_ms=elapsed_ms(),
                first_attempt_at=first_attempt_at,
                category=category,
                previous_errors=tuple(errors[:-1]),
                args=args,
                metadata=metadata,
                last_checkpoint=last_checkpoint,
            )

        for attempt in range(1, max_attempts + 1):
            # 1. Total budget
            if config.total_timeout_ms is not None and elapsed_ms() >= config.total_timeout_ms:
                logger.warning(
                    f"Operation '{operation}' exceeded total timeout "
                    f"{config.total_timeout_ms:g}ms before attempt {attempt}"
                )
                if last_error is not None:
                    raise last_error
                raise TotalTimeoutError(operation, config.total_timeout_ms)

            # 2. Circuit breaker
            if self._breaker is not None and not self._breaker.allow_request():
                raise CircuitOpenError(operation)

            # 3. Cooperative cancellation
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(operation)

            try:
                result = await fn()
            except Exception as e:
                error = e
            else:
                if self._breaker is not None:
                    self._breaker.record_success()
                if attempt > 1 and last_error is not None:
                    logger.info(f"Operation '{operation}' recovered on attempt {attempt}")
                    if hooks.on_recovered is not None:
                        await maybe_await(
                            hooks.on_recovered(make_context(attempt, last_error, last_category))
                        )
                return result

            # 4. Failure
            last_error = error
            errors.append(error)
            if self._breaker is not None:
                self._breaker.record_failure()
            category = self.classify_error(error)
            last_category = category
            ctx = make_context(attempt, error, category)

            if attempt >= max_attempts:
                logger.error(
                    f"Operation '{operation}' failed after {attempt} attempts "
                    f"({category}): {error}"
                )
                if hooks.on_exhausted is not None:
                    await maybe_await(hooks.on_exhausted(ctx))
                raise RetriesExhaustedError(operation, attempt, error, category) from error

            if not self.is_retryable(error):
                logger.debug(f"Operation '{operation}' failed with non-retryable {category}: {error}")
                raise error

            delay_ms = self.get_delay(attempt)

            if hooks.on_error is not None:
                action = await maybe_await(hooks.on_error(ctx))
                match action:
                    case None | Retry():
                        pass
                    case RetryWithBackoff(delay_ms=custom_delay):
                        delay_ms = custom_delay
                    case Skip():
                        logger.info(f"Operation '{operation}' skipped after {category} error")
                        return None
                    case Fallback(fn=fallback_fn):
                        logger.info(f"Operation '{operation}' using fallback after {category} error")
                        return await fallback_fn()
                    case Abort(reason=reason):
                        raise AbortedError(operation, reason) from error
                    case Escalate(to=target):
                        raise EscalationError(operation, target, error) from error
                    case CheckpointRestore(checkpoint_id=checkpoint_id):
                        raise CheckpointRestoreRequested(operation, checkpoint_id, error) from error
                    case _:
                        raise TypeError(f"on_error returned unsupported action {action!r}")

            if config.total_timeout_ms is not None:
                delay_ms = max(0.0, min(delay_ms, config.total_timeout_ms - elapsed_ms()))

            logger.warning(
                f"Operation '{operation}' failed (attempt {attempt}/{max_attempts}, "
                f"{category}): {error}; retrying in {delay_ms:.0f}ms"
            )

            if hooks.before_retry is not None:
                await maybe_await(hooks.before_retry(ctx))
            if delay_ms > 0:
                await self._sleep(delay_ms / 1000.0)
            if hooks.after_retry is not None:
                await maybe_await(hooks.after_retry(ctx))

        # Loop always returns or raises; max_attempts >= 1
        raise AssertionError("unreachable")

    def wrap(self, operation: str | None = None):
        """
        Decorator running every call of an async function through execute().

        Example:
            ```python
            @policy.wrap("fetch_user")
            async def fetch_user(user_id: str) -> dict:
                ...
            ```
        """

        def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T | None]]:
            name = operation or fn.__qualname__

            @functools.wraps(fn)
            async def wrapper(*args: Any, **kwargs: Any) -> T | None:
                return await self.execute(
                    name,
                    lambda: fn(*args, **kwargs),
                    args={"args": args, "kwargs": kwargs},
                )

            return wrapper

        return decorator

    @property
    def is_circuit_open(self) -> bool:
        return self._breaker is not None and self._breaker.state == CircuitState.OPEN
