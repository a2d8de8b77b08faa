"""
Agent lifecycle: the checkpointing state machine and the plan runner
that drives it through a DAG of tool calls.
"""

from pyconductor.agent.plan import (
    InputRequired,
    Plan,
    PlanRunner,
    PlanRunResult,
    PlanStep,
    UnknownToolError,
)
from pyconductor.agent.state_machine import (
    ALLOWED_TRANSITIONS,
    AgentStateMachine,
    StateMachineConfig,
    can_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AgentStateMachine",
    "StateMachineConfig",
    "can_transition",
    "InputRequired",
    "Plan",
    "PlanRunner",
    "PlanRunResult",
    "PlanStep",
    "UnknownToolError",
]
