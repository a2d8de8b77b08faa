"""Core data models for orchestration.

Defines types for work nodes, recovery configuration and actions,
agent session state, checkpoints and sub-agent tasks.

Design: Thin Models
These types depend only on the status enums and the error taxonomy in
``pyconductor.core``, never on executors or storage, to prevent circular
imports and keep layering clean.
"""

from pyconductor.models.agent_state import (
    AgentError,
    AgentState,
    Checkpoint,
    Message,
    PlanRef,
    TransitionRecord,
)
from pyconductor.models.recovery import (
    Abort,
    CheckpointRestore,
    Escalate,
    Fallback,
    RecoveryAction,
    RecoveryContext,
    Retry,
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
from pyconductor.models.subagent import (
    AgentFactory,
    AgentLike,
    ChatResponse,
    SubAgentConfig,
    SubAgentDag,
    SubAgentResult,
    SubAgentTask,
    TokenUsage,
    ToolCallRecord,
)
from pyconductor.models.work import DagRunResult, NodeContext, NodeOutcome, WorkNode

__all__ = [
    "AgentError",
    "AgentState",
    "Checkpoint",
    "Message",
    "PlanRef",
    "TransitionRecord",
    "RecoveryContext",
    "RecoveryAction",
    "Retry",
    "RetryWithBackoff",
    "Skip",
    "Fallback",
    "Abort",
    "Escalate",
    "CheckpointRestore",
    "BackoffStrategy",
    "CircuitBreakerConfig",
    "ErrorCategory",
    "RecoveryConfig",
    "RetryableError",
    "AgentFactory",
    "AgentLike",
    "ChatResponse",
    "SubAgentConfig",
    "SubAgentDag",
    "SubAgentResult",
    "SubAgentTask",
    "TokenUsage",
    "ToolCallRecord",
    "DagRunResult",
    "NodeContext",
    "NodeOutcome",
    "WorkNode",
]
