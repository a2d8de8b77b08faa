"""Sub-agent orchestration on top of the DAG scheduler."""

from pyconductor.subagent.manager import (
    AgentNotRegisteredError,
    SubAgentManager,
    SubAgentManagerConfig,
)

__all__ = [
    "AgentNotRegisteredError",
    "SubAgentManager",
    "SubAgentManagerConfig",
]
