"""
Error taxonomy for conductor.

From Dave Cheney: "Errors are values"
Every failure the core raises is a dedicated class carrying the context
a caller needs to react (operation, attempts, edge, checkpoint id),
not a bare Exception with a formatted message.

Families:
- Scheduling errors: the dependency graph itself is broken. Fatal to the run.
- Operation errors: the unit of work failed. Classified and maybe retried.
- Recovery (policy) errors: the recovery policy decided to stop.
- State errors: illegal lifecycle transition or unusable checkpoint.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyconductor.core.status import AgentStatus


class ConductorError(Exception):
    """Root of every error raised by pyconductor."""

    pass


# =============================================================================
# Scheduling errors
# =============================================================================


class SchedulingError(ConductorError):
    """The dependency graph cannot be scheduled. Never retryable."""

    def is_retryable(self) -> bool:
        return False


class CycleError(SchedulingError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cycle detected in dependency graph: {' -> '.join(cycle)}")


class UnknownDependencyError(SchedulingError):
    """A node depends on an id that is not part of the graph."""

    def __init__(self, node_id: str, dependency: str):
        self.node_id = node_id
        self.dependency = dependency
        super().__init__(f"Node '{node_id}' depends on non-existent node '{dependency}'")


class DuplicateNodeError(SchedulingError):
    """Two nodes share the same id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate node id '{node_id}'")


class DagExecutionError(ConductorError):
    """A node failed in a run configured to propagate errors."""

    def __init__(self, node_id: str, error: BaseException):
        self.node_id = node_id
        self.error = error
        super().__init__(f"Node '{node_id}' failed: {error}")


# =============================================================================
# Operation errors
# =============================================================================


class TaskTimeoutError(ConductorError, TimeoutError):
    """A unit of work did not settle within its timeout."""

    def __init__(self, operation: str, timeout_ms: float):
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout after {timeout_ms:g}ms: {operation}")


class TaskCancelledError(ConductorError):
    """A unit of work was cancelled cooperatively."""

    def __init__(self, operation: str, reason: str | None = None):
        self.operation = operation
        self.reason = reason
        message = f"Task cancelled: {operation}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)

    def is_retryable(self) -> bool:
        return False


# =============================================================================
# Recovery policy errors
# =============================================================================


class RecoveryError(ConductorError):
    """Base class for decisions taken by the recovery policy."""

    pass


class CircuitOpenError(RecoveryError):
    """The circuit breaker rejected the call without invoking it."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Circuit breaker is open: {operation}")


class RetriesExhaustedError(RecoveryError):
    """Every attempt failed. The last error is chained as __cause__."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException, category=None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        self.category = category
        super().__init__(
            f"Retries exhausted for '{operation}' after {attempts} attempts: {last_error}"
        )


class TotalTimeoutError(RecoveryError, TimeoutError):
    """The total time budget across all attempts ran out before any attempt."""

    def __init__(self, operation: str, total_timeout_ms: float):
        self.operation = operation
        self.total_timeout_ms = total_timeout_ms
        super().__init__(f"Total timeout exceeded: {total_timeout_ms:g}ms ({operation})")


class AbortedError(RecoveryError):
    """An on_error hook asked to abort."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Aborted: {reason}")


class EscalationError(RecoveryError):
    """An on_error hook escalated the failure to a supervisor or the user."""

    def __init__(self, operation: str, target: str, error: BaseException):
        self.operation = operation
        self.target = target
        self.error = error
        super().__init__(f"Escalated to {target}: {error}")


class CheckpointRestoreRequested(RecoveryError):
    """
    An on_error hook asked for a checkpoint restore.

    The policy never touches storage. The owning AgentStateMachine
    catches this in execute_with_recovery(), restores the checkpoint
    and runs the operation again.
    """

    def __init__(self, operation: str, checkpoint_id: str, error: BaseException):
        self.operation = operation
        self.checkpoint_id = checkpoint_id
        self.error = error
        super().__init__(f"Checkpoint restore requested ({checkpoint_id}): {error}")


# =============================================================================
# State errors
# =============================================================================


class StateTransitionError(ConductorError):
    """An edge outside the allowed transition table was attempted."""

    def __init__(self, from_status: AgentStatus, to_status: AgentStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


class CheckpointError(ConductorError):
    """A checkpoint is missing, corrupt or storage is not configured."""

    pass


class StorageError(ConductorError):
    """
    Storage operation failed.

    From Dave Cheney: "Errors are values"
    Custom exception with context, not generic Exception.
    """

    pass
