"""
Plan execution: run a plan's steps as DAG nodes under the state machine.

A Plan is a goal plus PlanSteps. Each step names a tool (an async
callable returning a string) and the steps it depends on. PlanRunner
moves the AgentStateMachine through PLANNING -> EXECUTING, runs the
steps through the DagScheduler (tool calls through the optional
RecoveryPolicy), records step bookkeeping and finishes the session:

- every step completed          -> COMPLETED
- a tool raised InputRequired   -> WAITING_FOR_INPUT (checkpoint written)
- anything else                 -> FAILED

Running the same plan again after ``input_received()`` resumes it:
steps already completed are not re-run.

Example:
    ```python
    async def search(query: str) -> str: ...
    async def summarize(text: str) -> str: ...

    plan = Plan(
        goal="summarize recent issues",
        steps=[
            PlanStep("s1", "find issues", tool="search", args={"query": "is:open"}),
            PlanStep("s2", "summarize", tool="summarize", args={"text": "..."},
                     depends_on=("s1",)),
        ],
    )
    runner = PlanRunner(machine, DagScheduler(), {"search": search, "summarize": summarize})
    outcome = await runner.run(plan)
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from uuid_extensions import uuid7

from pyconductor.core.errors import ConductorError
from pyconductor.core.status import AgentStatus
from pyconductor.executor.cancellation import CancellationToken
from pyconductor.executor.dag import DagScheduler
from pyconductor.executor.graph import DependencyGraph
from pyconductor.models.agent_state import Message, PlanRef
from pyconductor.models.work import DagRunResult, NodeContext, WorkNode

if TYPE_CHECKING:
    from pyconductor.agent.state_machine import AgentStateMachine
    from pyconductor.recovery.policy import RecoveryPolicy

logger = logging.getLogger(__name__)

Tool = Callable[..., Awaitable[str]]


class InputRequired(ConductorError):
    """Raised by a tool that cannot continue without user input."""

    def __init__(self, prompt: str):
        self.prompt = prompt
        super().__init__(f"Input required: {prompt}")

    def is_retryable(self) -> bool:
        return False


class UnknownToolError(ConductorError):
    """A step names a tool that was not provided."""

    def __init__(self, step_id: str, tool: str):
        self.step_id = step_id
        self.tool = tool
        super().__init__(f"Step '{step_id}' uses unknown tool '{tool}'")

    def is_retryable(self) -> bool:
        return False


@dataclass(frozen=True)
class PlanStep:
    id: str
    description: str
    tool: str
    args: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    priority: int = 0
    """Lower runs first among steps that are ready together."""

    timeout_ms: float | None = None
    estimated_duration_ms: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


@dataclass
class Plan:
    goal: str
    steps: list[PlanStep]
    id: str = field(default_factory=lambda: str(uuid7()))

    def graph(self) -> DependencyGraph:
        """Validated dependency graph of the steps."""
        return DependencyGraph.from_nodes(self.steps)

    def execution_order(self) -> list[str]:
        """Topological order, lower priority first among ready steps."""
        return self.graph().topological_order({s.id: s.priority for s in self.steps})

    def critical_path(self) -> tuple[list[str], float]:
        weights = {
            s.id: s.estimated_duration_ms
            for s in self.steps
            if s.estimated_duration_ms is not None
        }
        return self.graph().critical_path(weights)

    def to_ref(self) -> PlanRef:
        return PlanRef(
            plan_id=self.id,
            goal=self.goal,
            step_ids=tuple(self.execution_order()),
        )


@dataclass
class PlanRunResult:
    """How a PlanRunner.run() call ended."""

    status: AgentStatus
    outputs: dict[str, str] = field(default_factory=dict)
    dag: DagRunResult | None = None
    prompt: str | None = None
    """Question for the user when status is WAITING_FOR_INPUT."""

    checkpoint_id: str | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class _InputSignal:
    step_id: str
    prompt: str


class PlanRunner:
    """Runs Plans for one AgentStateMachine."""

    def __init__(
        self,
        machine: AgentStateMachine,
        scheduler: DagScheduler | None = None,
        tools: Mapping[str, Tool] | None = None,
        recovery: RecoveryPolicy | None = None,
    ):
        self.machine = machine
        self.scheduler = scheduler or DagScheduler()
        self.tools: dict[str, Tool] = dict(tools or {})
        self.recovery = recovery

    def register_tool(self, name: str, tool: Tool) -> None:
        self.tools[name] = tool

    async def run(self, plan: Plan) -> PlanRunResult:
        """
        Execute ``plan`` and move the machine to its next resting status.

        Raises:
            SchedulingError: The plan's steps form an invalid graph. Raised
                before the machine is touched.
            StateTransitionError: The machine is in a status a plan cannot
                run from
        """
        machine = self.machine
        graph = plan.graph()

        if machine.status == AgentStatus.IDLE:
            await machine.start(plan.goal)
        if machine.status == AgentStatus.PLANNING:
            await machine.plan_created(plan.to_ref())
        elif machine.status == AgentStatus.EXECUTING:
            current = machine.state.plan
            if current is None or current.plan_id != plan.id:
                await machine.replan(f"switching to plan {plan.id}")
                await machine.plan_created(plan.to_ref())
        else:
            # WAITING_FOR_INPUT resumes; terminal statuses raise
            await machine.transition(AgentStatus.EXECUTING, f"run plan {plan.id}")

        signals: list[_InputSignal] = []
        run_token = CancellationToken()
        order = graph.topological_order({s.id: s.priority for s in plan.steps})
        steps = {s.id: s for s in plan.steps}
        nodes = [
            WorkNode(
                id=step_id,
                work=self._make_work(steps[step_id], signals, run_token),
                depends_on=steps[step_id].depends_on,
                payload=steps[step_id],
                timeout_ms=steps[step_id].timeout_ms,
            )
            for step_id in order
        ]

        logger.info(f"Running plan {plan.id} ({len(nodes)} steps): {plan.goal}")
        dag = await self.scheduler.orchestrate(nodes, token=run_token)
        outputs = {
            step_id: result
            for step_id, result in dag.results().items()
        }

        if signals:
            signal = signals[0]
            checkpoint_id = await machine.wait_for_input(
                signal.prompt,
                pending_messages=[Message(role="assistant", content=signal.prompt)],
            )
            return PlanRunResult(
                status=AgentStatus.WAITING_FOR_INPUT,
                outputs=outputs,
                dag=dag,
                prompt=signal.prompt,
                checkpoint_id=checkpoint_id,
            )

        if dag.ok:
            await machine.complete(outputs)
            return PlanRunResult(status=AgentStatus.COMPLETED, outputs=outputs, dag=dag)

        failures = dag.failed + dag.cancelled
        error: BaseException
        if failures and failures[0].error is not None:
            error = failures[0].error
        else:
            error = ConductorError(f"Plan {plan.id} left steps unresolved: {dag.unresolved}")
        await machine.fail(error)
        return PlanRunResult(status=AgentStatus.FAILED, outputs=outputs, dag=dag, error=error)

    def _make_work(
        self, step: PlanStep, signals: list[_InputSignal], run_token: CancellationToken
    ):
        machine = self.machine

        async def work(ctx: NodeContext) -> Any:
            plan = machine.state.plan
            if plan is not None and step.id in plan.completed_steps:
                # Done in an earlier run of this plan
                return machine.get_memory(f"step:{step.id}")

            tool = self.tools.get(step.tool)
            if tool is None:
                error = UnknownToolError(step.id, step.tool)
                machine.step_failed(step.id, error)
                raise error

            machine.step_started(step.id)

            async def call() -> Any:
                try:
                    return await tool(**step.args)
                except InputRequired as e:
                    return _InputSignal(step.id, e.prompt)

            try:
                if self.recovery is not None:
                    output = await self.recovery.execute(
                        f"tool:{step.tool}",
                        call,
                        args=dict(step.args),
                        metadata={"step_id": step.id},
                        cancel_token=ctx.token,
                        last_checkpoint=machine.state.checkpoint_id,
                    )
                else:
                    output = await call()
            except Exception as e:
                machine.step_failed(step.id, e)
                raise

            if isinstance(output, _InputSignal):
                logger.info(f"Step {step.id} needs input: {output.prompt}")
                signals.append(output)
                run_token.cancel(f"step {step.id} needs input")
                return None

            if not ctx.cancelled:
                machine.step_completed(step.id, output)
            return output

        return work
