"""
DAG scheduler: run dependent work nodes with bounded concurrency.

This module provides DagScheduler, which resolves WorkNodes with
dependency edges into waves of concurrently runnable work:

1. Validate the graph (duplicates, unknown ids, cycles) before anything runs
2. Compute the ready set: pending nodes whose dependencies all COMPLETED
3. Admit ready nodes through a counting semaphore (max_concurrent);
   when the bound is reached, wait for an in-flight node to settle
4. Run each node with its timeout, the optional result cache, the
   optional recovery policy and a cooperative cancellation token
5. Record settled outcomes in completion order; loop

Failure policy is starvation, not cascade: a failed node's dependents
never become ready and are reported in ``DagRunResult.unresolved``.

Example:
    ```python
    scheduler = DagScheduler().with_max_concurrent(2).with_timeout(30_000)

    result = await scheduler.orchestrate([
        WorkNode("a", fetch),
        WorkNode("b", parse, depends_on=("a",)),
        WorkNode("c", index, depends_on=("a",)),
        WorkNode("d", report, depends_on=("b", "c")),
    ])
    print(result["d"].result)
    ```
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pyconductor.core.errors import (
    CycleError,
    DagExecutionError,
    RetriesExhaustedError,
    TaskCancelledError,
    TaskTimeoutError,
)
from pyconductor.core.hooks import notify
from pyconductor.core.status import NodeStatus
from pyconductor.executor.cache import CACHE_MISS, ResultCache
from pyconductor.executor.cancellation import CancellationToken
from pyconductor.executor.graph import DependencyGraph
from pyconductor.models.retry import ErrorCategory
from pyconductor.models.work import DagRunResult, NodeContext, NodeOutcome, WorkNode
from pyconductor.recovery.classifier import ErrorClassifier

if TYPE_CHECKING:
    from pyconductor.recovery.policy import RecoveryPolicy

logger = logging.getLogger(__name__)

NodeStartHook = Callable[[WorkNode], Any]
NodeCompleteHook = Callable[[NodeOutcome], Any]
NodeErrorHook = Callable[[WorkNode, BaseException], Any]


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _is_timeout(error: BaseException | None) -> bool:
    if isinstance(error, RetriesExhaustedError):
        error = error.last_error
    return isinstance(error, TimeoutError)


@dataclass(frozen=True)
class SchedulerConfig:
    """
    DagScheduler settings.

    Examples:
        config = SchedulerConfig(max_concurrent=10, default_timeout_ms=60_000)

        # $ export CONDUCTOR_MAX_CONCURRENT=10
        config = SchedulerConfig.from_env()
    """

    max_concurrent: int = 5
    """Admission bound: never more than this many nodes in flight."""

    default_timeout_ms: float | None = None
    """Timeout for nodes that do not set their own. None = no timeout."""

    propagate_errors: bool = False
    """Cancel the run and raise DagExecutionError on the first failure."""

    cache_ttl_ms: float | None = None
    """Lifetime of cached node results when a cache is enabled."""

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

    @classmethod
    def from_env(cls, prefix: str = "CONDUCTOR_") -> SchedulerConfig:
        env = os.environ
        timeout = env.get(f"{prefix}DEFAULT_TIMEOUT_MS")
        ttl = env.get(f"{prefix}CACHE_TTL_MS")
        return cls(
            max_concurrent=int(env.get(f"{prefix}MAX_CONCURRENT", cls.max_concurrent)),
            default_timeout_ms=float(timeout) if timeout else None,
            propagate_errors=_env_bool(env.get(f"{prefix}PROPAGATE_ERRORS", "false")),
            cache_ttl_ms=float(ttl) if ttl else None,
        )


@dataclass
class _RunState:
    """Mutable bookkeeping for one orchestrate() call."""

    token: CancellationToken
    nodes: dict[str, WorkNode]
    result: DagRunResult
    semaphore: asyncio.Semaphore
    graph: DependencyGraph
    remaining: dict[str, int]
    ready: list[str]
    cancel_requested: set[str] = field(default_factory=set)
    failure: tuple[str, BaseException] | None = None


class DagScheduler:
    """
    Bounded-concurrency DAG executor.

    Instances own their cache, running-node registry and hooks. Nothing is
    shared between scheduler instances.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        *,
        recovery: RecoveryPolicy | None = None,
        cache: ResultCache | None = None,
        on_start: NodeStartHook | None = None,
        on_complete: NodeCompleteHook | None = None,
        on_error: NodeErrorHook | None = None,
        classifier: ErrorClassifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SchedulerConfig()
        self._recovery = recovery
        self._cache = cache
        self._on_start = on_start
        self._on_complete = on_complete
        self._on_error = on_error
        self._classifier = classifier or ErrorClassifier()
        self._clock = clock

        # node id -> token of the running node
        self._running: dict[str, CancellationToken] = {}
        self._runs: list[_RunState] = []

    def __repr__(self) -> str:
        return (
            f"DagScheduler(max_concurrent={self.config.max_concurrent}, "
            f"running={self.running_count})"
        )

    # ========================================================================
    # Builder methods
    # ========================================================================

    def with_max_concurrent(self, max_concurrent: int) -> DagScheduler:
        """Set the admission bound (builder pattern). Returns self."""
        self.config = dataclasses.replace(self.config, max_concurrent=max_concurrent)
        return self

    def with_timeout(self, timeout_ms: float | None) -> DagScheduler:
        """Set the default per-node timeout (builder pattern). Returns self."""
        self.config = dataclasses.replace(self.config, default_timeout_ms=timeout_ms)
        return self

    def with_recovery(self, policy: RecoveryPolicy | None) -> DagScheduler:
        """Run every node attempt through ``policy``. Returns self."""
        self._recovery = policy
        return self

    def with_cache(self, ttl_ms: float | None = None) -> DagScheduler:
        """Cache completed node results by cache_key (or id). Returns self."""
        ttl = ttl_ms if ttl_ms is not None else self.config.cache_ttl_ms
        self._cache = ResultCache(ttl_ms=ttl, clock=self._clock)
        return self

    def with_propagate_errors(self, propagate: bool = True) -> DagScheduler:
        self.config = dataclasses.replace(self.config, propagate_errors=propagate)
        return self

    # ========================================================================
    # Introspection and cancellation
    # ========================================================================

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def running_ids(self) -> list[str]:
        return list(self._running)

    @property
    def cache(self) -> ResultCache | None:
        return self._cache

    def cancel(self, node_id: str, reason: str = "cancelled") -> bool:
        """
        Cancel one node.

        A running node keeps running, but its result is discarded and it
        reports CANCELLED. A pending node of an active run is settled as
        CANCELLED when it would have been admitted.

        Returns:
            False when no active run has ``node_id`` running or pending, or
            when it was already cancelled
        """
        token = self._running.get(node_id)
        if token is not None:
            return token.cancel(reason)
        for state in self._runs:
            node = state.nodes.get(node_id)
            if node is None or node.status not in (NodeStatus.PENDING, NodeStatus.READY):
                continue
            if node_id in state.cancel_requested:
                return False
            state.cancel_requested.add(node_id)
            return True
        return False

    def cancel_all(self, reason: str = "cancelled") -> int:
        """Cancel every active run. Returns the number of running nodes affected."""
        affected = len(self._running)
        for state in list(self._runs):
            state.token.cancel(reason)
        return affected

    # ========================================================================
    # Orchestration
    # ========================================================================

    async def orchestrate(
        self,
        nodes: Iterable[WorkNode],
        *,
        token: CancellationToken | None = None,
    ) -> DagRunResult:
        """
        Run every node whose dependencies complete.

        Args:
            nodes: Nodes of this run. Their run-owned fields are reset.
            token: Optional external token; cancelling it cancels the run.

        Returns:
            DagRunResult with outcomes in completion order and the ids of
            starved nodes in ``unresolved``.

        Raises:
            SchedulingError: Duplicate ids, unknown dependencies or a cycle.
                Raised before any node runs.
            DagExecutionError: A node failed and propagate_errors is set.
        """
        nodes = list(nodes)
        graph = DependencyGraph.from_nodes(nodes)
        for node in nodes:
            node.reset()

        run_token = token.child() if token is not None else CancellationToken()
        state = _RunState(
            token=run_token,
            nodes={node.id: node for node in nodes},
            result=DagRunResult(nodes={node.id: node for node in nodes}),
            semaphore=asyncio.Semaphore(self.config.max_concurrent),
            graph=graph,
            remaining={node_id: len(graph.dependencies(node_id)) for node_id in graph},
            ready=graph.roots(),
        )
        self._runs.append(state)
        in_flight: set[asyncio.Task] = set()

        logger.debug(
            f"Orchestrating {len(nodes)} nodes "
            f"(max_concurrent={self.config.max_concurrent}, levels={len(graph.levels())})"
        )

        try:
            while True:
                ready = self._take_ready(state)
                for node in ready:
                    node.status = NodeStatus.READY

                for node in ready:
                    if self._admission_blocked(node, state):
                        await self._settle_unstarted(node, state)
                        continue

                    # Backpressure: permit acquired BEFORE the node is started
                    await state.semaphore.acquire()
                    if self._admission_blocked(node, state):
                        state.semaphore.release()
                        await self._settle_unstarted(node, state)
                        continue

                    node.status = NodeStatus.RUNNING
                    self._running[node.id] = run_token.child()
                    in_flight.add(asyncio.create_task(self._run_node(node, state)))
                    logger.debug(f"Admitted node '{node.id}' ({len(self._running)} running)")

                finished = {t for t in in_flight if t.done()}
                for task in finished:
                    # Re-raise anything _run_node did not handle
                    task.result()
                in_flight -= finished
                if not in_flight:
                    if state.ready:
                        continue
                    break

                await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._runs.remove(state)
            for task in in_flight:
                if not task.done():
                    task.cancel()

        state.result.unresolved = self._check_starvation(graph, state)

        completed = len(state.result.completed)
        logger.info(
            f"DAG run finished: {completed}/{len(nodes)} completed, "
            f"{len(state.result.failed)} failed, {len(state.result.cancelled)} cancelled, "
            f"{len(state.result.unresolved)} unresolved"
        )

        if state.failure is not None:
            node_id, error = state.failure
            raise DagExecutionError(node_id, error) from error

        return state.result

    # ========================================================================
    # Internal helpers
    # ========================================================================

    @staticmethod
    def _take_ready(state: _RunState) -> list[WorkNode]:
        """Drain the ready queue in declaration order."""
        ready = sorted(state.ready, key=state.graph.index_of)
        state.ready = []
        return [state.nodes[node_id] for node_id in ready]

    @staticmethod
    def _release_dependents(node: WorkNode, state: _RunState) -> None:
        for dependent in state.graph.dependents(node.id):
            state.remaining[dependent] -= 1
            if state.remaining[dependent] == 0:
                state.ready.append(dependent)

    @staticmethod
    def _admission_blocked(node: WorkNode, state: _RunState) -> bool:
        return state.token.cancelled or node.id in state.cancel_requested

    @staticmethod
    def _check_starvation(graph: DependencyGraph, state: _RunState) -> list[str]:
        """
        Ids of nodes left PENDING.

        Each must be blocked by a dependency that did not complete. A
        pending node with every dependency completed means the loop
        stopped making progress, which is reported as a cycle.
        """
        unresolved = []
        for node_id in graph:
            node = state.nodes[node_id]
            if node.status.is_terminal:
                continue
            blocked = any(state.nodes[d].status != NodeStatus.COMPLETED for d in node.depends_on)
            if not blocked:
                raise CycleError([node_id])
            unresolved.append(node_id)

        if unresolved:
            logger.warning(f"Nodes starved by failed dependencies: {unresolved}")
        return unresolved

    async def _settle_unstarted(self, node: WorkNode, state: _RunState) -> None:
        reason = state.token.reason if state.token.cancelled else "cancelled"
        state.cancel_requested.discard(node.id)
        node.status = NodeStatus.CANCELLED
        node.error = TaskCancelledError(node.id, reason)
        now = datetime.now(UTC)
        outcome = NodeOutcome(
            node_id=node.id,
            status=NodeStatus.CANCELLED,
            error=node.error,
            started_at=now,
            completed_at=now,
        )
        state.result.outcomes.append(outcome)
        logger.debug(f"Node '{node.id}' cancelled before start")
        await notify(self._on_complete, outcome, name="on_complete")

    async def _run_node(self, node: WorkNode, state: _RunState) -> None:
        token = self._running[node.id]
        started_at = datetime.now(UTC)
        t0 = self._clock()
        cached = False
        value: Any = None
        error: BaseException | None = None

        try:
            await notify(self._on_start, node, name="on_start")

            ctx = NodeContext(
                node_id=node.id,
                payload=node.payload,
                dependency_results={d: state.nodes[d].result for d in node.depends_on},
                token=token,
            )
            cache_key = node.cache_key or node.id

            hit = self._cache.get(cache_key) if self._cache is not None else CACHE_MISS
            if hit is not CACHE_MISS:
                value, cached = hit, True
                logger.debug(f"Node '{node.id}' served from cache")
            else:
                try:
                    value = await self._execute(node, ctx)
                except Exception as e:
                    error = e

            if token.cancelled:
                # Result of in-flight work is discarded
                node.status = NodeStatus.CANCELLED
                node.error = TaskCancelledError(node.id, token.reason)
                node.result = None
            elif error is not None:
                node.status = NodeStatus.FAILED
                node.error = error
                node.category = self._categorize(error)
            else:
                node.status = NodeStatus.COMPLETED
                node.result = value
                if self._cache is not None and not cached:
                    self._cache.set(cache_key, value)
                self._release_dependents(node, state)
        finally:
            self._running.pop(node.id, None)
            state.cancel_requested.discard(node.id)
            state.semaphore.release()

        outcome = NodeOutcome(
            node_id=node.id,
            status=node.status,
            result=node.result,
            error=node.error,
            category=node.category,
            timed_out=_is_timeout(node.error),
            cached=cached,
            started_at=started_at,
            completed_at=datetime.now(UTC),
            duration_ms=(self._clock() - t0) * 1000.0,
        )
        state.result.outcomes.append(outcome)

        if node.status == NodeStatus.FAILED:
            logger.warning(f"Node '{node.id}' failed ({node.category}): {node.error}")
            await notify(self._on_error, node, node.error, name="on_error")
            if self.config.propagate_errors and state.failure is None:
                state.failure = (node.id, node.error)
                state.token.cancel(f"node '{node.id}' failed")
        else:
            logger.debug(f"Node '{node.id}' {node.status} in {outcome.duration_ms:.1f}ms")

        await notify(self._on_complete, outcome, name="on_complete")

    async def _execute(self, node: WorkNode, ctx: NodeContext) -> Any:
        timeout_ms = node.timeout_ms if node.timeout_ms is not None else self.config.default_timeout_ms

        async def attempt() -> Any:
            ctx.token.raise_if_cancelled(node.id)
            if timeout_ms is None:
                return await node.work(ctx)
            try:
                return await asyncio.wait_for(node.work(ctx), timeout_ms / 1000.0)
            except TimeoutError:
                raise TaskTimeoutError(node.id, timeout_ms) from None

        if self._recovery is None:
            return await attempt()
        return await self._recovery.execute(
            node.id,
            attempt,
            args=node.payload,
            metadata={"node_id": node.id},
            cancel_token=ctx.token,
        )

    def _categorize(self, error: BaseException) -> ErrorCategory:
        if isinstance(error, RetriesExhaustedError) and error.category is not None:
            return error.category
        if self._recovery is not None:
            return self._recovery.classify_error(error)
        return self._classifier.classify(error)


__all__ = [
    "DagScheduler",
    "SchedulerConfig",
]
