"""Tests for RecoveryPolicy.execute(): retries, hooks, actions and the circuit."""

import pytest

from pyconductor.core.errors import (
    AbortedError,
    CheckpointRestoreRequested,
    CircuitOpenError,
    EscalationError,
    RetriesExhaustedError,
    TaskCancelledError,
    TotalTimeoutError,
)
from pyconductor.executor.cancellation import CancellationToken
from pyconductor.models.recovery import (
    Abort,
    CheckpointRestore,
    Escalate,
    Fallback,
    RetryWithBackoff,
    Skip,
)
from pyconductor.models.retry import (
    BackoffStrategy,
    CircuitBreakerConfig,
    ErrorCategory,
    RecoveryConfig,
    RetryableError,
)
from pyconductor.recovery.policy import RecoveryHooks, RecoveryPolicy


def make_config(**overrides) -> RecoveryConfig:
    values = dict(
        max_retries=3,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        initial_delay_ms=100,
        max_delay_ms=10_000,
        jitter_factor=0.0,
    )
    values.update(overrides)
    return RecoveryConfig(**values)


class Flaky:
    """Async callable failing with ``error`` for the first ``failures`` calls."""

    def __init__(self, failures: int, error: Exception | None = None, result="ok"):
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


@pytest.fixture
def make_policy(fake_clock, recording_sleep):
    def factory(config=None, hooks=None, **kwargs):
        return RecoveryPolicy(
            config or make_config(),
            hooks,
            clock=fake_clock,
            sleep=recording_sleep,
            **kwargs,
        )

    return factory


@pytest.mark.asyncio
async def test_success_on_first_attempt(make_policy, recording_sleep):
    fn = Flaky(0)
    assert await make_policy().execute("op", fn) == "ok"
    assert fn.calls == 1
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_transient_failures_retried_with_backoff(make_policy, recording_sleep):
    events = []
    hooks = RecoveryHooks(
        before_retry=lambda ctx: events.append(("before", ctx.attempt)),
        after_retry=lambda ctx: events.append(("after", ctx.attempt)),
        on_recovered=lambda ctx: events.append(("recovered", ctx.attempt)),
        on_exhausted=lambda ctx: events.append(("exhausted", ctx.attempt)),
    )
    fn = Flaky(2)

    assert await make_policy(hooks=hooks).execute("op", fn) == "ok"

    assert fn.calls == 3
    assert recording_sleep.delays == [0.1, 0.2]
    assert events == [
        ("before", 1),
        ("after", 1),
        ("before", 2),
        ("after", 2),
        ("recovered", 3),
    ]


@pytest.mark.asyncio
async def test_async_hooks_are_awaited(make_policy):
    seen = []

    async def on_recovered(ctx):
        seen.append(ctx.attempt)

    policy = make_policy(hooks=RecoveryHooks(on_recovered=on_recovered))
    await policy.execute("op", Flaky(1))
    assert seen == [2]


@pytest.mark.asyncio
async def test_retries_exhausted_wraps_last_error(make_policy):
    exhausted = []
    error = ConnectionError("connection refused")
    policy = make_policy(
        make_config(max_retries=2),
        RecoveryHooks(on_exhausted=lambda ctx: exhausted.append(ctx)),
    )
    fn = Flaky(10, error)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        await policy.execute("op", fn)

    assert fn.calls == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.__cause__ is error
    assert exc_info.value.category == ErrorCategory.TRANSIENT
    assert len(exhausted) == 1
    assert exhausted[0].is_final_attempt
    assert len(exhausted[0].previous_errors) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_raised_immediately(make_policy, recording_sleep):
    error = ValueError("field 'query' is required")
    fn = Flaky(5, error)

    with pytest.raises(ValueError) as exc_info:
        await make_policy().execute("op", fn)

    assert exc_info.value is error
    assert fn.calls == 1
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_error_can_declare_itself_not_retryable(make_policy):
    class SandboxGone(RetryableError):
        def is_retryable(self) -> bool:
            return False

    fn = Flaky(5, SandboxGone("connection reset"))
    with pytest.raises(SandboxGone):
        await make_policy().execute("op", fn)
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_retryable_errors_and_patterns_force_retry(make_policy):
    by_class = make_policy(make_config(retryable_errors=(KeyError,)))
    fn = Flaky(1, KeyError("missing"))
    assert await by_class.execute("op", fn) == "ok"
    assert fn.calls == 2

    by_pattern = make_policy(make_config(retryable_patterns=(r"sandbox busy",)))
    fn = Flaky(1, RuntimeError("Sandbox BUSY, try later"))
    assert await by_pattern.execute("op", fn) == "ok"
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_custom_classifier_replaces_rules(make_policy):
    policy = make_policy(make_config(classifier=lambda e: ErrorCategory.RATE_LIMIT))
    assert policy.classify_error(ValueError("anything")) == ErrorCategory.RATE_LIMIT
    fn = Flaky(1, ValueError("anything"))
    assert await policy.execute("op", fn) == "ok"


@pytest.mark.asyncio
async def test_cancelled_token_prevents_attempt(make_policy):
    token = CancellationToken()
    token.cancel("shutdown")
    fn = Flaky(0)

    with pytest.raises(TaskCancelledError):
        await make_policy().execute("op", fn, cancel_token=token)
    assert fn.calls == 0


# ==============================================================================
# Recovery actions
# ==============================================================================


@pytest.mark.asyncio
async def test_skip_returns_none(make_policy):
    policy = make_policy(hooks=RecoveryHooks(on_error=lambda ctx: Skip()))
    fn = Flaky(5)
    assert await policy.execute("op", fn) is None
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_fallback_result_is_returned(make_policy):
    async def cached_answer():
        return "from cache"

    policy = make_policy(hooks=RecoveryHooks(on_error=lambda ctx: Fallback(cached_answer)))
    assert await policy.execute("op", Flaky(5)) == "from cache"


@pytest.mark.asyncio
async def test_abort_raises_aborted_error(make_policy):
    policy = make_policy(hooks=RecoveryHooks(on_error=lambda ctx: Abort("budget spent")))
    with pytest.raises(AbortedError, match="budget spent"):
        await policy.execute("op", Flaky(5))


@pytest.mark.asyncio
async def test_escalate_raises_escalation_error(make_policy):
    policy = make_policy(hooks=RecoveryHooks(on_error=lambda ctx: Escalate(to="user")))
    with pytest.raises(EscalationError) as exc_info:
        await policy.execute("op", Flaky(5))
    assert exc_info.value.target == "user"


@pytest.mark.asyncio
async def test_checkpoint_restore_requested(make_policy):
    policy = make_policy(
        hooks=RecoveryHooks(on_error=lambda ctx: CheckpointRestore(ctx.last_checkpoint))
    )
    with pytest.raises(CheckpointRestoreRequested) as exc_info:
        await policy.execute("op", Flaky(5), last_checkpoint="cp-1")
    assert exc_info.value.checkpoint_id == "cp-1"


@pytest.mark.asyncio
async def test_retry_with_backoff_overrides_delay(make_policy, recording_sleep):
    policy = make_policy(hooks=RecoveryHooks(on_error=lambda ctx: RetryWithBackoff(5)))
    assert await policy.execute("op", Flaky(2)) == "ok"
    assert recording_sleep.delays == [0.005, 0.005]


@pytest.mark.asyncio
async def test_unknown_action_is_a_type_error(make_policy):
    policy = make_policy(hooks=RecoveryHooks(on_error=lambda ctx: "retry please"))
    with pytest.raises(TypeError):
        await policy.execute("op", Flaky(5))


# ==============================================================================
# Time budget and circuit breaker
# ==============================================================================


@pytest.mark.asyncio
async def test_zero_total_timeout_fails_before_first_attempt(make_policy):
    fn = Flaky(0)
    with pytest.raises(TotalTimeoutError):
        await make_policy(make_config(total_timeout_ms=0)).execute("op", fn)
    assert fn.calls == 0


@pytest.mark.asyncio
async def test_total_timeout_raises_last_error(make_policy, recording_sleep):
    config = make_config(
        max_retries=10,
        backoff_strategy=BackoffStrategy.FIXED,
        initial_delay_ms=100,
        total_timeout_ms=250,
    )
    error = ConnectionError("connection reset")
    fn = Flaky(100, error)

    with pytest.raises(ConnectionError) as exc_info:
        await make_policy(config).execute("op", fn)

    assert exc_info.value is error
    # Waits never run past the budget
    assert sum(recording_sleep.delays) == pytest.approx(0.25)
    assert fn.calls == 3


@pytest.mark.asyncio
async def test_open_circuit_rejects_without_calling(make_policy, fake_clock):
    config = make_config(
        max_retries=0,
        circuit_breaker=CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=1000),
    )
    policy = make_policy(config)

    with pytest.raises(RetriesExhaustedError):
        await policy.execute("op", Flaky(1))
    assert policy.is_circuit_open

    fn = Flaky(0)
    with pytest.raises(CircuitOpenError):
        await policy.execute("op", fn)
    assert fn.calls == 0

    fake_clock.advance(1)
    assert await policy.execute("op", fn) == "ok"


@pytest.mark.asyncio
async def test_reset_circuit(make_policy):
    config = make_config(max_retries=0, circuit_breaker=CircuitBreakerConfig(failure_threshold=1))
    policy = make_policy(config)
    with pytest.raises(RetriesExhaustedError):
        await policy.execute("op", Flaky(1))

    policy.reset_circuit()
    assert not policy.is_circuit_open


@pytest.mark.asyncio
async def test_wrap_decorator(make_policy):
    policy = make_policy()
    calls = []

    @policy.wrap("greet")
    async def greet(name: str) -> str:
        calls.append(name)
        if len(calls) == 1:
            raise ConnectionError("connection reset")
        return f"hello {name}"

    assert await greet("ada") == "hello ada"
    assert calls == ["ada", "ada"]
    assert greet.__name__ == "greet"


def test_presets():
    assert RecoveryConfig.NONE.max_retries == 0
    assert RecoveryConfig.API.compiled_patterns
    assert RecoveryConfig.RESILIENT.circuit_breaker is not None
    assert RecoveryConfig.with_max_retries(7).max_retries == 7


def test_from_env(monkeypatch):
    monkeypatch.setenv("CONDUCTOR_MAX_RETRIES", "6")
    monkeypatch.setenv("CONDUCTOR_BACKOFF_STRATEGY", "linear")
    config = RecoveryConfig.from_env()
    assert config.max_retries == 6
    assert config.backoff_strategy == BackoffStrategy.LINEAR
