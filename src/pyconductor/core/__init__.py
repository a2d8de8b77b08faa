"""
Core types for pyconductor.

This module contains the fundamental types used throughout pyconductor:
- NodeStatus, AgentStatus, CircuitState, SubAgentStatus: lifecycle enums
- ConductorError and its families: scheduling, operation, recovery,
  state and storage errors
"""

from pyconductor.core.errors import (
    AbortedError,
    CheckpointError,
    CheckpointRestoreRequested,
    CircuitOpenError,
    ConductorError,
    CycleError,
    DagExecutionError,
    DuplicateNodeError,
    EscalationError,
    RecoveryError,
    RetriesExhaustedError,
    SchedulingError,
    StateTransitionError,
    StorageError,
    TaskCancelledError,
    TaskTimeoutError,
    TotalTimeoutError,
    UnknownDependencyError,
)
from pyconductor.core.status import AgentStatus, CircuitState, NodeStatus, SubAgentStatus

__all__ = [
    "AgentStatus",
    "CircuitState",
    "NodeStatus",
    "SubAgentStatus",
    "ConductorError",
    "SchedulingError",
    "CycleError",
    "UnknownDependencyError",
    "DuplicateNodeError",
    "DagExecutionError",
    "TaskTimeoutError",
    "TaskCancelledError",
    "RecoveryError",
    "CircuitOpenError",
    "RetriesExhaustedError",
    "TotalTimeoutError",
    "AbortedError",
    "EscalationError",
    "CheckpointRestoreRequested",
    "StateTransitionError",
    "CheckpointError",
    "StorageError",
]
