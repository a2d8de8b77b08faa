"""
Status enums for conductor execution tracking.

Following Dave Cheney's principle: "Make zero values useful"
The first member of each enum is the state a fresh object starts in.
"""

from enum import Enum


class NodeStatus(Enum):
    """
    Status of a work node inside one scheduler run.

    Lifecycle:
    PENDING → READY → RUNNING → COMPLETED/FAILED/CANCELLED

    A node whose dependency never completes stays PENDING forever
    (starvation) - the scheduler reports it as unresolved.
    """

    PENDING = "pending"
    """Waiting for dependencies."""

    READY = "ready"
    """Every dependency is COMPLETED, waiting for an admission permit."""

    RUNNING = "running"
    """Work is in flight."""

    COMPLETED = "completed"
    """Work settled successfully."""

    FAILED = "failed"
    """Work settled with an error (timeouts included)."""

    CANCELLED = "cancelled"
    """Cancelled before start, or result discarded after cancellation."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work needed)."""
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.CANCELLED)

    def __str__(self) -> str:
        return self.value


class AgentStatus(Enum):
    """
    Lifecycle status of one agent session.

    Lifecycle:
    IDLE → PLANNING → EXECUTING ⇄ WAITING_FOR_INPUT → COMPLETED/FAILED/CANCELLED

    The legal edges live in pyconductor.agent.state_machine.ALLOWED_TRANSITIONS.
    """

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Terminal statuses accept no further transitions."""
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.CANCELLED)

    def __str__(self) -> str:
        return self.value


class CircuitState(Enum):
    """
    Circuit breaker states.

    Lifecycle:
    CLOSED → OPEN → HALF_OPEN → CLOSED (enough successes)
                              → OPEN   (any failure)
    """

    CLOSED = "closed"
    """Normal operation, calls pass through."""

    OPEN = "open"
    """Dependency failing, calls rejected without being invoked."""

    HALF_OPEN = "half_open"
    """Cooldown elapsed, probing whether the dependency recovered."""

    def __str__(self) -> str:
        return self.value


class SubAgentStatus(Enum):
    """Status reported for a sub-agent task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    def __str__(self) -> str:
        return self.value
