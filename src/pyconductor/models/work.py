"""
Work nodes and their settled outcomes.

A WorkNode is the unit the DagScheduler runs: an id, an async callable,
and the ids it depends on. Run-owned fields (status, result, error) are
written only by the scheduler run that owns the node.

Design: Value object pattern
NodeOutcome is the immutable record of how a node settled. Outcomes are
appended to DagRunResult in completion order.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pyconductor.core.status import NodeStatus
from pyconductor.models.retry import ErrorCategory

if TYPE_CHECKING:
    from pyconductor.executor.cancellation import CancellationToken


NodeWork = Callable[["NodeContext"], Awaitable[Any]]
"""Async callable executed for a node. Receives the node's context."""


@dataclass(frozen=True)
class NodeContext:
    """
    Everything a node's work function may look at.

    Attributes:
        node_id: Id of the node being executed
        payload: Opaque payload declared on the node
        dependency_results: Results of the node's dependencies, by id
        token: The node's cancellation token (child of the run token)
    """

    node_id: str
    payload: Any
    dependency_results: Mapping[str, Any]
    token: CancellationToken

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


@dataclass
class WorkNode:
    """
    One schedulable unit of work.

    Example:
        ```python
        async def fetch(ctx: NodeContext) -> str:
            return await client.get(ctx.payload)

        nodes = [
            WorkNode("a", fetch, payload="/users"),
            WorkNode("b", summarize, depends_on=("a",)),
        ]
        ```
    """

    id: str
    work: NodeWork
    depends_on: tuple[str, ...] = ()
    payload: Any = None
    timeout_ms: float | None = None
    """Per-node timeout. None falls back to the scheduler default."""

    cache_key: str | None = None
    """Key used by the scheduler result cache. None uses the node id."""

    # Run-owned fields
    status: NodeStatus = NodeStatus.PENDING
    result: Any = None
    error: BaseException | None = None
    category: ErrorCategory | None = None

    def __post_init__(self) -> None:
        # Accept lists for convenience, store tuples
        self.depends_on = tuple(self.depends_on)

    def reset(self) -> None:
        """Clear run-owned fields so the node can join a new run."""
        self.status = NodeStatus.PENDING
        self.result = None
        self.error = None
        self.category = None


@dataclass(frozen=True)
class NodeOutcome:
    """Immutable record of a settled node."""

    node_id: str
    status: NodeStatus
    result: Any = None
    error: BaseException | None = None
    category: ErrorCategory | None = None
    timed_out: bool = False
    cached: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == NodeStatus.COMPLETED

    def __str__(self) -> str:
        if self.error is not None:
            return f"{self.node_id}: {self.status} ({self.error})"
        return f"{self.node_id}: {self.status}"


@dataclass
class DagRunResult:
    """
    Result of one DagScheduler.orchestrate() call.

    Failure policy is starvation: nodes whose dependencies never
    completed stay PENDING and are listed in ``unresolved``.
    """

    outcomes: list[NodeOutcome] = field(default_factory=list)
    """Settled outcomes in completion order."""

    nodes: dict[str, WorkNode] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)

    def __getitem__(self, node_id: str) -> NodeOutcome:
        for outcome in self.outcomes:
            if outcome.node_id == node_id:
                return outcome
        raise KeyError(node_id)

    def __contains__(self, node_id: object) -> bool:
        return any(outcome.node_id == node_id for outcome in self.outcomes)

    @property
    def order(self) -> list[str]:
        """Node ids in completion order."""
        return [outcome.node_id for outcome in self.outcomes]

    @property
    def completed(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.status == NodeStatus.COMPLETED]

    @property
    def failed(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.status == NodeStatus.FAILED]

    @property
    def cancelled(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.status == NodeStatus.CANCELLED]

    @property
    def ok(self) -> bool:
        """True when every node completed."""
        return not self.unresolved and all(o.succeeded for o in self.outcomes)

    def results(self) -> dict[str, Any]:
        """Results of completed nodes, by id."""
        return {o.node_id: o.result for o in self.completed}
