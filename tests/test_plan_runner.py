"""Tests for PlanRunner: plans driven through the state machine and the DAG scheduler."""

import asyncio

import pytest

from pyconductor.agent.plan import InputRequired, Plan, PlanRunner, PlanStep, UnknownToolError
from pyconductor.agent.state_machine import AgentStateMachine
from pyconductor.core.errors import CycleError
from pyconductor.core.status import AgentStatus, NodeStatus
from pyconductor.executor.dag import DagScheduler
from pyconductor.models.retry import BackoffStrategy, RecoveryConfig
from pyconductor.models.work import WorkNode
from pyconductor.recovery.policy import RecoveryPolicy


class Toolbox:
    """Tools that record their calls."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.answers: list[str] = []

    async def search(self, query: str) -> str:
        self.calls.append(("search", {"query": query}))
        return f"3 issues for {query}"

    async def summarize(self, text: str) -> str:
        self.calls.append(("summarize", {"text": text}))
        return f"summary of {text}"

    async def explode(self) -> str:
        self.calls.append(("explode", {}))
        raise ValueError("tool crashed")

    async def ask(self, question: str) -> str:
        self.calls.append(("ask", {"question": question}))
        if not self.answers:
            raise InputRequired(question)
        return self.answers[-1]

    def as_dict(self) -> dict:
        return {
            "search": self.search,
            "summarize": self.summarize,
            "explode": self.explode,
            "ask": self.ask,
        }


@pytest.fixture
def toolbox() -> Toolbox:
    return Toolbox()


def two_step_plan(second_tool: str = "summarize", second_args=None) -> Plan:
    return Plan(
        goal="summarize open issues",
        steps=[
            PlanStep("s1", "find issues", tool="search", args={"query": "is:open"}),
            PlanStep(
                "s2",
                "summarize them",
                tool=second_tool,
                args=second_args if second_args is not None else {"text": "issues"},
                depends_on=("s1",),
            ),
        ],
    )


@pytest.mark.asyncio
async def test_plan_runs_to_completion(toolbox):
    machine = AgentStateMachine()
    runner = PlanRunner(machine, tools=toolbox.as_dict())

    outcome = await runner.run(two_step_plan())

    assert outcome.status == AgentStatus.COMPLETED
    assert outcome.outputs == {"s1": "3 issues for is:open", "s2": "summary of issues"}
    assert [name for name, _ in toolbox.calls] == ["search", "summarize"]
    assert machine.status == AgentStatus.COMPLETED
    assert machine.get_memory("result") == outcome.outputs
    assert machine.state.plan.completed_steps == ["s1", "s2"]


@pytest.mark.asyncio
async def test_failing_tool_fails_session(toolbox):
    machine = AgentStateMachine()
    runner = PlanRunner(machine, tools=toolbox.as_dict())

    outcome = await runner.run(two_step_plan("explode", {}))

    assert outcome.status == AgentStatus.FAILED
    assert str(outcome.error) == "tool crashed"
    assert machine.status == AgentStatus.FAILED
    assert machine.state.error.message == "tool crashed"
    assert machine.state.plan.failed_steps == ["s2"]


@pytest.mark.asyncio
async def test_unknown_tool_fails_session(toolbox):
    machine = AgentStateMachine()
    runner = PlanRunner(machine, tools={"search": toolbox.search})

    outcome = await runner.run(two_step_plan())

    assert outcome.status == AgentStatus.FAILED
    assert isinstance(outcome.error, UnknownToolError)
    assert outcome.error.tool == "summarize"
    assert outcome.outputs == {"s1": "3 issues for is:open"}


@pytest.mark.asyncio
async def test_input_required_waits_then_resumes(toolbox, in_memory_storage):
    machine = AgentStateMachine(storage=in_memory_storage)
    runner = PlanRunner(machine, tools=toolbox.as_dict())
    plan = two_step_plan("ask", {"question": "which repository?"})

    waiting = await runner.run(plan)

    assert waiting.status == AgentStatus.WAITING_FOR_INPUT
    assert waiting.prompt == "which repository?"
    assert machine.status == AgentStatus.WAITING_FOR_INPUT
    assert in_memory_storage.save_count == 1
    checkpoint = await in_memory_storage.load(waiting.checkpoint_id)
    assert [m.content for m in checkpoint.pending_messages] == ["which repository?"]

    toolbox.answers.append("pyconductor")
    await machine.input_received("pyconductor")
    done = await runner.run(plan)

    assert done.status == AgentStatus.COMPLETED
    assert done.outputs == {"s1": "3 issues for is:open", "s2": "pyconductor"}
    # s1 completed in the first run and is not repeated
    assert [name for name, _ in toolbox.calls] == ["search", "ask", "ask"]


@pytest.mark.asyncio
async def test_input_required_leaves_other_runs_on_shared_scheduler(toolbox, in_memory_storage):
    started = asyncio.Event()
    release = asyncio.Event()

    async def background(ctx):
        started.set()
        await release.wait()
        return "indexed"

    scheduler = DagScheduler()
    other = asyncio.create_task(scheduler.orchestrate([WorkNode("index", background)]))
    await started.wait()

    machine = AgentStateMachine(storage=in_memory_storage)
    runner = PlanRunner(machine, scheduler=scheduler, tools=toolbox.as_dict())
    waiting = await runner.run(two_step_plan("ask", {"question": "which repository?"}))
    assert waiting.status == AgentStatus.WAITING_FOR_INPUT

    release.set()
    result = await other
    assert result["index"].status == NodeStatus.COMPLETED
    assert result["index"].result == "indexed"


@pytest.mark.asyncio
async def test_recovery_retries_flaky_tool(recording_sleep):
    attempts = []

    async def flaky(url: str) -> str:
        attempts.append(url)
        if len(attempts) < 3:
            raise ConnectionError("connection reset")
        return "fetched"

    policy = RecoveryPolicy(
        RecoveryConfig(max_retries=3, backoff_strategy=BackoffStrategy.NONE, jitter_factor=0.0),
        sleep=recording_sleep,
    )
    machine = AgentStateMachine()
    runner = PlanRunner(machine, recovery=policy)
    runner.register_tool("fetch", flaky)

    outcome = await runner.run(
        Plan(goal="fetch", steps=[PlanStep("s1", "fetch page", "fetch", {"url": "/a"})])
    )

    assert outcome.status == AgentStatus.COMPLETED
    assert outcome.outputs == {"s1": "fetched"}
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_invalid_plan_rejected_before_session_starts(toolbox):
    machine = AgentStateMachine()
    runner = PlanRunner(machine, tools=toolbox.as_dict())
    plan = Plan(
        goal="loop",
        steps=[
            PlanStep("a", "a", "search", {"query": "a"}, depends_on=("b",)),
            PlanStep("b", "b", "search", {"query": "b"}, depends_on=("a",)),
        ],
    )

    with pytest.raises(CycleError):
        await runner.run(plan)
    assert machine.status == AgentStatus.IDLE
    assert toolbox.calls == []


@pytest.mark.asyncio
async def test_new_plan_while_executing_replans(toolbox):
    machine = AgentStateMachine()
    await machine.start("first goal")
    first = two_step_plan()
    await machine.plan_created(first.to_ref())

    second = two_step_plan()
    outcome = await PlanRunner(machine, tools=toolbox.as_dict()).run(second)

    assert outcome.status == AgentStatus.COMPLETED
    assert machine.state.plan.plan_id == second.id
    reasons = [h.reason for h in machine.state.history]
    assert f"replan: switching to plan {second.id}" in reasons


def test_execution_order_and_critical_path():
    plan = Plan(
        goal="report",
        steps=[
            PlanStep("fetch", "fetch", "search", estimated_duration_ms=100),
            PlanStep("slow", "slow branch", "search", depends_on=("fetch",),
                     priority=5, estimated_duration_ms=900),
            PlanStep("fast", "fast branch", "search", depends_on=("fetch",),
                     priority=1, estimated_duration_ms=10),
            PlanStep("report", "report", "summarize", depends_on=("slow", "fast"),
                     estimated_duration_ms=50),
        ],
    )

    assert plan.execution_order() == ["fetch", "fast", "slow", "report"]
    assert plan.critical_path() == (["fetch", "slow", "report"], 1050)
    assert plan.to_ref().step_ids == ("fetch", "fast", "slow", "report")
