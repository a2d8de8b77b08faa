"""
Recovery context and recovery actions.

**Design Pattern**: Sum type using Union of frozen dataclasses.

An ``on_error`` hook inspects a RecoveryContext and may return one of the
RecoveryAction variants. The policy matches on the variant:

    ```python
    def on_error(ctx: RecoveryContext) -> RecoveryAction | None:
        match ctx.category:
            case ErrorCategory.AUTH:
                return Escalate(to="user")
            case ErrorCategory.RATE_LIMIT:
                return RetryWithBackoff(delay_ms=60_000)
        return None
    ```
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pyconductor.models.retry import ErrorCategory

__all__ = [
    "RecoveryContext",
    "Retry",
    "RetryWithBackoff",
    "Skip",
    "Fallback",
    "Abort",
    "Escalate",
    "CheckpointRestore",
    "RecoveryAction",
]


@dataclass(frozen=True)
class RecoveryContext:
    """
    Snapshot of one failed attempt, handed to recovery hooks.

    Built fresh for every failure inside RecoveryPolicy.execute(); hooks
    cannot mutate it.
    """

    error: BaseException
    attempt: int
    max_retries: int
    operation: str
    elapsed_ms: float
    first_attempt_at: datetime
    category: ErrorCategory
    previous_errors: tuple[BaseException, ...] = ()
    args: Any = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    last_checkpoint: str | None = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt > self.max_retries


@dataclass(frozen=True)
class Retry:
    """Retry after the normal backoff delay."""


@dataclass(frozen=True)
class RetryWithBackoff:
    """Retry after the given delay instead of the computed one."""

    delay_ms: float


@dataclass(frozen=True)
class Skip:
    """Give up quietly. execute() returns None."""


@dataclass(frozen=True)
class Fallback:
    """Return the result of the fallback callable instead."""

    fn: Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class Abort:
    """Stop with AbortedError carrying the reason."""

    reason: str


@dataclass(frozen=True)
class Escalate:
    """Stop with EscalationError tagging the target (supervisor, user)."""

    to: str


@dataclass(frozen=True)
class CheckpointRestore:
    """Ask the owning state machine to restore a checkpoint and retry."""

    checkpoint_id: str


RecoveryAction = Retry | RetryWithBackoff | Skip | Fallback | Abort | Escalate | CheckpointRestore
