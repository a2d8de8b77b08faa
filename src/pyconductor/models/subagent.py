"""
Sub-agent configuration, tasks and results.

The manager never implements an agent. It talks to whatever the injected
``AgentFactory`` builds, as long as it satisfies ``AgentLike``:

    ```python
    class EchoAgent:
        async def chat(self, input: str, options: dict) -> ChatResponse:
            return ChatResponse(content=input.upper())

    manager = SubAgentManager(lambda config: EchoAgent())
    ```
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from uuid_extensions import uuid7

from pyconductor.core.status import SubAgentStatus


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ToolCallRecord:
    """A tool call the agent made while answering."""

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    result: str = ""


@dataclass(frozen=True)
class ChatResponse:
    """What an agent's chat() returns."""

    content: str
    tool_calls: tuple[ToolCallRecord, ...] = ()
    usage: TokenUsage | None = None


@runtime_checkable
class AgentLike(Protocol):
    """Anything with an async chat(input, options) -> ChatResponse."""

    async def chat(self, input: str, options: dict[str, Any]) -> ChatResponse: ...


AgentFactory = Callable[["SubAgentConfig"], AgentLike]


@dataclass(frozen=True)
class SubAgentConfig:
    """Registered definition of a sub-agent."""

    id: str
    name: str
    system_prompt: str = ""
    tools: tuple[str, ...] = ()
    model: str | None = None
    max_iterations: int | None = None
    timeout_ms: float | None = None
    """Overrides the manager default. A task's own timeout_ms wins over this."""

    can_spawn_sub_agents: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubAgentTask:
    """
    One unit of sub-agent work.

    ``task_id`` doubles as the DAG node id and the cache key, so tasks
    that depend on each other refer to it in ``depends_on``.
    """

    agent_id: str
    input: str
    task_id: str = field(default_factory=lambda: f"task_{uuid7()}")
    timeout_ms: float | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


@dataclass(frozen=True)
class SubAgentDag:
    """
    A batch of tasks plus explicit edges.

    Edges are merged into the ``depends_on`` of their target task:
    ``(from, to)`` means ``to`` depends on ``from``.
    """

    tasks: tuple[SubAgentTask, ...]
    edges: tuple[tuple[str, str], ...] = ()
    id: str = field(default_factory=lambda: str(uuid7()))
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def resolved_tasks(self) -> list[SubAgentTask]:
        """Tasks with edge dependencies folded into depends_on."""
        extra: dict[str, list[str]] = {}
        for source, target in self.edges:
            extra.setdefault(target, []).append(source)
        resolved = []
        for task in self.tasks:
            deps = list(task.depends_on)
            for dep in extra.get(task.task_id, []):
                if dep not in deps:
                    deps.append(dep)
            resolved.append(
                SubAgentTask(
                    agent_id=task.agent_id,
                    input=task.input,
                    task_id=task.task_id,
                    timeout_ms=task.timeout_ms,
                    context=task.context,
                    depends_on=tuple(deps),
                    metadata=task.metadata,
                )
            )
        return resolved


@dataclass(frozen=True)
class SubAgentResult:
    """Structured result of a sub-agent task. Failures are values, not raises."""

    task_id: str
    agent_id: str
    status: SubAgentStatus
    output: str = ""
    error: str | None = None
    duration_ms: float = 0.0
    token_usage: TokenUsage | None = None
    tool_calls: tuple[ToolCallRecord, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cached: bool = False

    @property
    def success(self) -> bool:
        return self.status == SubAgentStatus.COMPLETED
