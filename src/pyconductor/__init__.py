"""
Conductor: orchestration core for AI agents.

Schedules dependent units of work with bounded concurrency, drives an
agent's lifecycle through an explicit state machine with checkpoints,
and retries failures through a classifying recovery policy with
backoff and circuit breaking.

Design Pattern: Façade Pattern
This module gathers the public types of the subpackages so callers can
write ``from pyconductor import DagScheduler, RecoveryPolicy``.

From Dave Cheney: "A good package starts with its name"
Package "conductor" describes what it provides: it coordinates players,
it does not play.

Example:
    ```python
    import asyncio
    from pyconductor import DagScheduler, RecoveryConfig, RecoveryPolicy, WorkNode

    async def fetch(ctx):
        return await client.get(ctx.payload)

    async def summarize(ctx):
        return await llm(ctx.dependency_results["fetch"])

    async def main():
        scheduler = DagScheduler().with_recovery(RecoveryPolicy(RecoveryConfig.API))
        result = await scheduler.orchestrate([
            WorkNode("fetch", fetch, payload="/issues"),
            WorkNode("summarize", summarize, depends_on=("fetch",)),
        ])
        print(result["summarize"].result)

    asyncio.run(main())
    ```
"""

# Core types
from pyconductor.core import (
    AbortedError,
    AgentStatus,
    CheckpointError,
    CheckpointRestoreRequested,
    CircuitOpenError,
    CircuitState,
    ConductorError,
    CycleError,
    DagExecutionError,
    DuplicateNodeError,
    EscalationError,
    NodeStatus,
    RecoveryError,
    RetriesExhaustedError,
    SchedulingError,
    StateTransitionError,
    StorageError,
    SubAgentStatus,
    TaskCancelledError,
    TaskTimeoutError,
    TotalTimeoutError,
    UnknownDependencyError,
)

# Models
from pyconductor.models import (
    Abort,
    AgentError,
    AgentLike,
    AgentState,
    BackoffStrategy,
    ChatResponse,
    Checkpoint,
    CheckpointRestore,
    CircuitBreakerConfig,
    DagRunResult,
    ErrorCategory,
    Escalate,
    Fallback,
    Message,
    NodeContext,
    NodeOutcome,
    PlanRef,
    RecoveryAction,
    RecoveryConfig,
    RecoveryContext,
    Retry,
    RetryableError,
    RetryWithBackoff,
    Skip,
    SubAgentConfig,
    SubAgentDag,
    SubAgentResult,
    SubAgentTask,
    TokenUsage,
    ToolCallRecord,
    WorkNode,
)

# Recovery
from pyconductor.recovery import (
    CircuitBreaker,
    CircuitBreakerState,
    ErrorClassifier,
    RecoveryHooks,
    RecoveryPolicy,
    compute_delay,
)

# Execution
from pyconductor.executor import (
    CancellationToken,
    DagScheduler,
    DagSummary,
    DependencyGraph,
    ResultCache,
    SchedulerConfig,
)

# Agent lifecycle
from pyconductor.agent import (
    AgentStateMachine,
    InputRequired,
    Plan,
    PlanRunner,
    PlanRunResult,
    PlanStep,
    StateMachineConfig,
)

# Sub-agents
from pyconductor.subagent import SubAgentManager, SubAgentManagerConfig

# Storage (Adapter pattern)
from pyconductor.storage import CheckpointStorage
from pyconductor.storage.memory import InMemoryCheckpointStorage

# Version
__version__ = "0.1.0"

__all__ = [
    # Status enums
    "AgentStatus",
    "CircuitState",
    "NodeStatus",
    "SubAgentStatus",

    # Errors
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
    "RetryableError",

    # Work and results
    "WorkNode",
    "NodeContext",
    "NodeOutcome",
    "DagRunResult",

    # Recovery
    "BackoffStrategy",
    "ErrorCategory",
    "CircuitBreakerConfig",
    "RecoveryConfig",
    "RecoveryContext",
    "RecoveryAction",
    "Retry",
    "RetryWithBackoff",
    "Skip",
    "Fallback",
    "Abort",
    "Escalate",
    "CheckpointRestore",
    "RecoveryHooks",
    "RecoveryPolicy",
    "CircuitBreaker",
    "CircuitBreakerState",
    "ErrorClassifier",
    "compute_delay",

    # Execution
    "CancellationToken",
    "DagScheduler",
    "SchedulerConfig",
    "DependencyGraph",
    "DagSummary",
    "ResultCache",

    # Agent lifecycle
    "AgentState",
    "AgentError",
    "Message",
    "PlanRef",
    "Checkpoint",
    "AgentStateMachine",
    "StateMachineConfig",
    "Plan",
    "PlanStep",
    "PlanRunner",
    "PlanRunResult",
    "InputRequired",

    # Sub-agents
    "AgentLike",
    "ChatResponse",
    "TokenUsage",
    "ToolCallRecord",
    "SubAgentConfig",
    "SubAgentTask",
    "SubAgentDag",
    "SubAgentResult",
    "SubAgentManager",
    "SubAgentManagerConfig",

    # Storage
    "CheckpointStorage",
    "InMemoryCheckpointStorage",

    # Metadata
    "__version__",
]
