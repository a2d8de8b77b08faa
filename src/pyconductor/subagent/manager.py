"""
Sub-agent manager: run child agents as DAG nodes.

Composes a DagScheduler, an optional RecoveryPolicy and an injected
agent factory. Every batch, including a single ``execute()``, goes
through the scheduler, so concurrency bounds, timeouts, cancellation and
retries behave the same for one task as for a DAG of them.

Failures are values: each task yields a SubAgentResult with status
completed, failed, timeout or cancelled. Only ``propagate_errors=True``
turns the first failure into a raised DagExecutionError.

Example:
    ```python
    manager = SubAgentManager(lambda config: MyAgent(config))
    manager.register(SubAgentConfig(id="researcher", name="Researcher"))
    manager.register(SubAgentConfig(id="writer", name="Writer"))

    results = await manager.orchestrate([
        SubAgentTask("researcher", "find sources", task_id="research"),
        SubAgentTask("writer", "draft the post", task_id="draft",
                     depends_on=("research",)),
    ])
    ```

The writer receives the researcher's output in ``options["context"]``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pyconductor.core.errors import ConductorError, TaskCancelledError
from pyconductor.core.hooks import notify
from pyconductor.core.status import NodeStatus, SubAgentStatus
from pyconductor.executor.cache import CACHE_MISS, ResultCache
from pyconductor.executor.dag import DagScheduler, SchedulerConfig
from pyconductor.models.retry import ErrorCategory
from pyconductor.models.subagent import (
    AgentFactory,
    AgentLike,
    ChatResponse,
    SubAgentConfig,
    SubAgentDag,
    SubAgentResult,
    SubAgentTask,
)
from pyconductor.models.work import DagRunResult, NodeContext, NodeOutcome, WorkNode
from pyconductor.recovery.policy import RecoveryPolicy

logger = logging.getLogger(__name__)


class AgentNotRegisteredError(ConductorError):
    """A task names an agent id with no registered config."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not registered")

    def is_retryable(self) -> bool:
        return False


@dataclass(frozen=True)
class SubAgentManagerConfig:
    """
    SubAgentManager settings.

    Examples:
        config = SubAgentManagerConfig(max_concurrent=3, enable_cache=True)

        # $ export CONDUCTOR_MAX_CONCURRENT=3 CONDUCTOR_CACHE_TTL_MS=60000
        config = SubAgentManagerConfig.from_env()
    """

    max_concurrent: int = 5
    default_timeout_ms: float = 60_000
    """Used when neither the task nor the agent config sets a timeout."""

    propagate_errors: bool = False
    enable_cache: bool = False
    cache_ttl_ms: float | None = None
    """Lifetime of cached results. None keeps them until clear_cache()."""

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be > 0")

    @classmethod
    def from_env(cls, prefix: str = "CONDUCTOR_") -> SubAgentManagerConfig:
        env = os.environ
        ttl = env.get(f"{prefix}CACHE_TTL_MS")
        enable = env.get(f"{prefix}ENABLE_CACHE")
        return cls(
            max_concurrent=int(env.get(f"{prefix}MAX_CONCURRENT", cls.max_concurrent)),
            default_timeout_ms=float(
                env.get(f"{prefix}DEFAULT_TIMEOUT_MS", cls.default_timeout_ms)
            ),
            propagate_errors=env.get(f"{prefix}PROPAGATE_ERRORS", "false").strip().lower()
            in ("1", "true", "yes", "on"),
            enable_cache=enable.strip().lower() in ("1", "true", "yes", "on")
            if enable is not None
            else ttl is not None,
            cache_ttl_ms=float(ttl) if ttl else None,
        )


class SubAgentManager:
    """
    Registry and executor for sub-agents.

    Registry, agent instances, cache and scheduler are owned by the
    manager instance. Two managers never share anything.
    """

    def __init__(
        self,
        agent_factory: AgentFactory,
        config: SubAgentManagerConfig | None = None,
        *,
        recovery: RecoveryPolicy | None = None,
        on_start=None,
        on_complete=None,
        on_error=None,
    ):
        """
        Args:
            agent_factory: Builds an AgentLike from a SubAgentConfig
            config: Manager settings
            recovery: Policy every chat() attempt runs through
            on_start: ``on_start(agent_id, input)`` before an agent is called
            on_complete: ``on_complete(result)`` for every SubAgentResult
            on_error: ``on_error(agent_id, error)`` for every failed task
        """
        self.config = config or SubAgentManagerConfig()
        self._factory = agent_factory
        self._on_start = on_start
        self._on_complete = on_complete
        self._on_error = on_error

        self._configs: dict[str, SubAgentConfig] = {}
        self._instances: dict[str, AgentLike] = {}
        self._cache = ResultCache(ttl_ms=self.config.cache_ttl_ms)
        self._scheduler = DagScheduler(
            SchedulerConfig(
                max_concurrent=self.config.max_concurrent,
                default_timeout_ms=self.config.default_timeout_ms,
                propagate_errors=self.config.propagate_errors,
            ),
            recovery=recovery,
            on_error=self._node_failed,
        )

    def __repr__(self) -> str:
        return (
            f"SubAgentManager(agents={list(self._configs)}, "
            f"running={self.running_count})"
        )

    # ========================================================================
    # Registry
    # ========================================================================

    def register(self, config: SubAgentConfig) -> None:
        """Register (or replace) an agent config. A replaced agent is rebuilt lazily."""
        self._configs[config.id] = config
        self._instances.pop(config.id, None)
        logger.debug(f"Registered sub-agent '{config.id}' ({config.name})")

    def unregister(self, agent_id: str) -> bool:
        self._instances.pop(agent_id, None)
        return self._configs.pop(agent_id, None) is not None

    def get_agent(self, agent_id: str) -> SubAgentConfig | None:
        return self._configs.get(agent_id)

    @property
    def agents(self) -> list[SubAgentConfig]:
        return list(self._configs.values())

    def agent_instance(self, agent_id: str) -> AgentLike:
        """
        The agent built for ``agent_id``, created on first use.

        Raises:
            AgentNotRegisteredError: No config registered under ``agent_id``
        """
        agent = self._instances.get(agent_id)
        if agent is None:
            config = self._configs.get(agent_id)
            if config is None:
                raise AgentNotRegisteredError(agent_id)
            agent = self._factory(config)
            self._instances[agent_id] = agent
        return agent

    # ========================================================================
    # Execution
    # ========================================================================

    async def execute(self, task: SubAgentTask) -> SubAgentResult:
        results = await self.orchestrate([task])
        return results[0]

    async def execute_parallel(self, tasks: Iterable[SubAgentTask]) -> list[SubAgentResult]:
        """
        Run independent tasks, at most ``max_concurrent`` at a time.

        Declared ``depends_on`` edges are ignored. Results are in
        completion order.
        """
        independent = [dataclasses.replace(task, depends_on=()) for task in tasks]
        return await self.orchestrate(independent)

    async def orchestrate(
        self, tasks: SubAgentDag | Iterable[SubAgentTask]
    ) -> list[SubAgentResult]:
        """
        Run tasks in dependency order.

        Returns:
            One SubAgentResult per task: settled tasks in completion
            order, then tasks starved by a failed dependency (cancelled)

        Raises:
            SchedulingError: Duplicate task ids, unknown dependencies or a cycle
            DagExecutionError: A task failed and propagate_errors is set
        """
        if isinstance(tasks, SubAgentDag):
            task_list = tasks.resolved_tasks()
        else:
            task_list = list(tasks)

        nodes = [
            WorkNode(
                id=task.task_id,
                work=self._run_task,
                depends_on=task.depends_on,
                payload=task,
                timeout_ms=self._timeout_for(task),
            )
            for task in task_list
        ]

        logger.info(f"Orchestrating {len(nodes)} sub-agent tasks")
        run = await self._scheduler.orchestrate(nodes)

        results = [self._to_result(outcome, run) for outcome in run.outcomes]
        for task_id in run.unresolved:
            task: SubAgentTask = run.nodes[task_id].payload
            results.append(
                SubAgentResult(
                    task_id=task_id,
                    agent_id=task.agent_id,
                    status=SubAgentStatus.CANCELLED,
                    error="Dependency did not complete",
                )
            )

        for result in results:
            await notify(self._on_complete, result, name="on_complete")
        return results

    def _timeout_for(self, task: SubAgentTask) -> float:
        if task.timeout_ms is not None:
            return task.timeout_ms
        config = self._configs.get(task.agent_id)
        if config is not None and config.timeout_ms is not None:
            return config.timeout_ms
        return self.config.default_timeout_ms

    async def _run_task(self, ctx: NodeContext) -> ChatResponse | SubAgentResult:
        task: SubAgentTask = ctx.payload

        if self.config.enable_cache:
            hit = self._cache.get(task.task_id)
            if hit is not CACHE_MISS:
                logger.debug(f"Task '{task.task_id}' served from cache")
                return hit

        agent = self.agent_instance(task.agent_id)
        config = self._configs[task.agent_id]

        context = dict(task.context)
        for dep_id, value in ctx.dependency_results.items():
            context[dep_id] = _output_of(value)
        options: dict[str, Any] = {"max_iterations": config.max_iterations, "context": context}

        await notify(self._on_start, task.agent_id, task.input, name="on_start")
        return await agent.chat(task.input, options)

    async def _node_failed(self, node: WorkNode, error: BaseException) -> None:
        task: SubAgentTask = node.payload
        await notify(self._on_error, task.agent_id, error, name="on_error")

    def _to_result(self, outcome: NodeOutcome, run: DagRunResult) -> SubAgentResult:
        task: SubAgentTask = run.nodes[outcome.node_id].payload

        if outcome.status == NodeStatus.COMPLETED:
            value = outcome.result
            if isinstance(value, SubAgentResult):
                return dataclasses.replace(value, cached=True)
            result = SubAgentResult(
                task_id=task.task_id,
                agent_id=task.agent_id,
                status=SubAgentStatus.COMPLETED,
                output=value.content,
                duration_ms=outcome.duration_ms,
                token_usage=value.usage,
                tool_calls=value.tool_calls,
                started_at=outcome.started_at,
                completed_at=outcome.completed_at,
            )
            if self.config.enable_cache:
                self._cache.set(task.task_id, result)
            return result

        if outcome.status == NodeStatus.CANCELLED:
            status = SubAgentStatus.CANCELLED
        elif outcome.category == ErrorCategory.TIMEOUT:
            status = SubAgentStatus.TIMEOUT
        else:
            status = SubAgentStatus.FAILED

        error = outcome.error
        if isinstance(error, TaskCancelledError):
            message = "Task cancelled"
        else:
            message = str(error) if error is not None else None

        return SubAgentResult(
            task_id=task.task_id,
            agent_id=task.agent_id,
            status=status,
            error=message,
            duration_ms=outcome.duration_ms,
            started_at=outcome.started_at,
            completed_at=outcome.completed_at,
        )

    # ========================================================================
    # Control and cache
    # ========================================================================

    def cancel(self, task_id: str) -> bool:
        """Cancel a running or not yet admitted task. Its result is reported cancelled."""
        return self._scheduler.cancel(task_id, "Task cancelled")

    def cancel_all(self) -> int:
        return self._scheduler.cancel_all("All tasks cancelled")

    @property
    def running_count(self) -> int:
        return self._scheduler.running_count

    def cached_result(self, task_id: str) -> SubAgentResult | None:
        hit = self._cache.get(task_id)
        return None if hit is CACHE_MISS else hit

    def clear_cache(self) -> None:
        self._cache.clear()


def _output_of(value: Any) -> Any:
    if isinstance(value, ChatResponse):
        return value.content
    if isinstance(value, SubAgentResult):
        return value.output
    return value


__all__ = [
    "AgentNotRegisteredError",
    "SubAgentManager",
    "SubAgentManagerConfig",
]
