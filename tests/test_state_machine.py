"""Tests for AgentStateMachine transitions and checkpoint/resume."""

import dataclasses

import pytest

from pyconductor.agent.state_machine import (
    ALLOWED_TRANSITIONS,
    AgentStateMachine,
    StateMachineConfig,
    can_transition,
)
from pyconductor.core.errors import (
    CheckpointError,
    CheckpointRestoreRequested,
    StateTransitionError,
)
from pyconductor.core.status import AgentStatus
from pyconductor.models.agent_state import Message, PlanRef
from pyconductor.models.recovery import CheckpointRestore
from pyconductor.models.retry import BackoffStrategy, RecoveryConfig
from pyconductor.recovery.policy import RecoveryHooks, RecoveryPolicy
from pyconductor.storage import InMemoryCheckpointStorage


async def executing_machine(storage=None, **kwargs) -> AgentStateMachine:
    machine = AgentStateMachine(storage=storage, **kwargs)
    await machine.start("summarize the repository")
    await machine.plan_created(PlanRef(plan_id="p1", goal="summarize", step_ids=("a", "b")))
    return machine


# ==============================================================================
# Transition table
# ==============================================================================


def test_idle_only_reaches_planning():
    assert ALLOWED_TRANSITIONS[AgentStatus.IDLE] == frozenset({AgentStatus.PLANNING})
    for status in AgentStatus:
        if status != AgentStatus.PLANNING:
            assert not can_transition(AgentStatus.IDLE, status)


@pytest.mark.parametrize(
    "terminal", [AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.CANCELLED]
)
def test_terminal_statuses_have_no_exits(terminal):
    assert ALLOWED_TRANSITIONS[terminal] == frozenset()
    assert terminal.is_terminal


@pytest.mark.asyncio
async def test_happy_path_records_history():
    machine = await executing_machine()
    await machine.complete({"summary": "ok"})

    assert machine.status == AgentStatus.COMPLETED
    assert machine.is_terminal
    assert machine.get_memory("result") == {"summary": "ok"}
    assert [(h.from_status, h.to_status) for h in machine.state.history] == [
        (AgentStatus.IDLE, AgentStatus.PLANNING),
        (AgentStatus.PLANNING, AgentStatus.EXECUTING),
        (AgentStatus.EXECUTING, AgentStatus.COMPLETED),
    ]
    assert machine.state.conversation[0].content == "summarize the repository"


@pytest.mark.asyncio
async def test_illegal_transition_raises_and_reports():
    errors = []
    machine = AgentStateMachine(on_error=errors.append)

    with pytest.raises(StateTransitionError) as exc_info:
        await machine.complete("too early")

    assert exc_info.value.from_status == AgentStatus.IDLE
    assert exc_info.value.to_status == AgentStatus.COMPLETED
    assert errors == [exc_info.value]
    assert machine.status == AgentStatus.IDLE
    assert machine.get_memory("result") is None


@pytest.mark.asyncio
async def test_terminal_session_rejects_everything():
    machine = await executing_machine()
    await machine.cancel("user closed the tab")

    for status in AgentStatus:
        with pytest.raises(StateTransitionError):
            await machine.transition(status)
    assert machine.status == AgentStatus.CANCELLED


@pytest.mark.asyncio
async def test_fail_records_error_detail():
    machine = await executing_machine()
    await machine.fail(ValueError("bad plan"))

    assert machine.status == AgentStatus.FAILED
    assert machine.state.error.message == "bad plan"
    assert machine.state.error.error_type == "ValueError"


@pytest.mark.asyncio
async def test_replan_returns_to_planning():
    machine = await executing_machine()
    await machine.replan("tool missing")
    assert machine.status == AgentStatus.PLANNING
    assert machine.state.history[-1].reason == "replan: tool missing"


@pytest.mark.asyncio
async def test_max_history_caps_records():
    machine = await executing_machine(config=StateMachineConfig(max_history=2))
    await machine.complete()
    assert len(machine.state.history) == 2
    assert machine.state.history[-1].to_status == AgentStatus.COMPLETED


# ==============================================================================
# Steps
# ==============================================================================


@pytest.mark.asyncio
async def test_step_bookkeeping():
    machine = await executing_machine()

    machine.step_started("a")
    assert machine.state.plan.current_step == "a"
    machine.step_completed("a", "fetched")
    machine.step_skipped("b", "not needed")

    plan = machine.state.plan
    assert plan.completed_steps == ["a"]
    assert plan.skipped_steps == ["b"]
    assert plan.current_step is None
    assert plan.progress == 1.0
    assert machine.state.step_index == 2
    assert machine.get_memory("step:a") == "fetched"


@pytest.mark.asyncio
async def test_step_failed_records_step_error():
    machine = await executing_machine()
    machine.step_started("a")
    machine.step_failed("a", ConnectionError("reset"), recoverable=True)

    assert machine.state.plan.failed_steps == ["a"]
    assert machine.state.error.step_id == "a"
    assert machine.state.retry_count == 1


def test_steps_require_a_plan():
    with pytest.raises(ValueError):
        AgentStateMachine().step_started("a")


# ==============================================================================
# Checkpoints
# ==============================================================================


@pytest.mark.asyncio
async def test_waiting_writes_exactly_one_checkpoint(in_memory_storage):
    machine = await executing_machine(in_memory_storage)

    checkpoint_id = await machine.wait_for_input(
        "which branch?", [Message("assistant", "which branch?")]
    )

    assert in_memory_storage.save_count == 1
    assert machine.state.checkpoint_id == checkpoint_id
    checkpoint = await in_memory_storage.load(checkpoint_id)
    assert checkpoint.status == AgentStatus.WAITING_FOR_INPUT
    assert checkpoint.session_id == machine.session_id
    assert checkpoint.plan.plan_id == "p1"
    assert [m.content for m in checkpoint.pending_messages] == ["which branch?"]
    assert checkpoint.verify()


class FlakyStorage(InMemoryCheckpointStorage):
    """Storage whose saves fail until ``healthy`` is set."""

    def __init__(self):
        super().__init__()
        self.healthy = False

    async def save(self, checkpoint_id, checkpoint):
        if not self.healthy:
            raise OSError("disk full")
        await super().save(checkpoint_id, checkpoint)


@pytest.mark.asyncio
async def test_failed_checkpoint_save_rolls_back_waiting():
    storage = FlakyStorage()
    machine = await executing_machine(storage)
    seen = []
    machine.subscribe(lambda state: seen.append(state.status))
    history_before = list(machine.state.history)

    with pytest.raises(OSError, match="disk full"):
        await machine.wait_for_input("which branch?", [Message("assistant", "which branch?")])

    assert machine.status == AgentStatus.EXECUTING
    assert machine.state.history == history_before
    assert machine.state.checkpoint_id is None
    assert seen == []

    storage.healthy = True
    checkpoint_id = await machine.wait_for_input("which tag?", [Message("assistant", "which tag?")])

    assert machine.status == AgentStatus.WAITING_FOR_INPUT
    assert storage.save_count == 1
    checkpoint = await storage.load(checkpoint_id)
    assert [m.content for m in checkpoint.pending_messages] == ["which tag?"]


@pytest.mark.asyncio
async def test_waiting_without_storage_fails_before_transition():
    machine = await executing_machine()
    with pytest.raises(CheckpointError):
        await machine.wait_for_input("need input")
    assert machine.status == AgentStatus.EXECUTING


@pytest.mark.asyncio
async def test_restore_reenters_checkpointed_status(in_memory_storage):
    machine = await executing_machine(in_memory_storage)
    checkpoint_id = await machine.wait_for_input(
        "which branch?", [Message("assistant", "which branch?")]
    )
    await machine.input_received("main")
    machine.set_memory("branch", "main")
    assert machine.pending_messages == []

    await machine.restore(checkpoint_id)

    assert machine.status == AgentStatus.WAITING_FOR_INPUT
    assert machine.get_memory("branch") is None
    assert [m.content for m in machine.pending_messages] == ["which branch?"]
    assert machine.state.checkpoint_id == checkpoint_id


@pytest.mark.asyncio
async def test_resume_builds_machine_from_checkpoint(in_memory_storage):
    machine = await executing_machine(in_memory_storage)
    checkpoint_id = await machine.wait_for_input("which branch?")

    resumed = await AgentStateMachine.resume(in_memory_storage, checkpoint_id)

    assert resumed.session_id == machine.session_id
    assert resumed.status == AgentStatus.WAITING_FOR_INPUT
    await resumed.input_received("main")
    await resumed.complete("done")
    assert resumed.status == AgentStatus.COMPLETED


@pytest.mark.asyncio
async def test_tampered_checkpoint_is_rejected(in_memory_storage):
    machine = await executing_machine(in_memory_storage)
    checkpoint_id = await machine.wait_for_input("which branch?")
    checkpoint = await in_memory_storage.load(checkpoint_id)
    tampered = dataclasses.replace(checkpoint, checksum=checkpoint.checksum ^ 1)
    await in_memory_storage.save(checkpoint_id, tampered)

    with pytest.raises(CheckpointError, match="checksum"):
        await AgentStateMachine.resume(in_memory_storage, checkpoint_id)


@pytest.mark.asyncio
async def test_restore_missing_or_into_terminal_session(in_memory_storage):
    machine = await executing_machine(in_memory_storage)
    with pytest.raises(CheckpointError, match="not found"):
        await machine.restore("missing")

    checkpoint_id = await machine.checkpoint("manual")
    await machine.cancel()
    with pytest.raises(CheckpointError):
        await machine.restore(checkpoint_id)


@pytest.mark.asyncio
async def test_list_and_delete_checkpoints(in_memory_storage):
    machine = await executing_machine(in_memory_storage)
    first = await machine.checkpoint("before tools")
    second = await machine.wait_for_input("confirm?")

    listed = await machine.list_checkpoints()
    assert [c.id for c in listed] == [first, second]

    assert await machine.delete_checkpoint(first)
    assert not await machine.delete_checkpoint(first)
    assert [c.id for c in await machine.list_checkpoints()] == [second]


@pytest.mark.asyncio
async def test_list_checkpoints_without_storage_is_empty():
    assert await AgentStateMachine().list_checkpoints() == []


# ==============================================================================
# Recovery integration
# ==============================================================================


def restore_policy(recording_sleep) -> RecoveryPolicy:
    return RecoveryPolicy(
        RecoveryConfig(max_retries=3, backoff_strategy=BackoffStrategy.NONE, jitter_factor=0.0),
        RecoveryHooks(on_error=lambda ctx: CheckpointRestore(ctx.last_checkpoint)),
        sleep=recording_sleep,
    )


@pytest.mark.asyncio
async def test_execute_with_recovery_restores_then_reruns(in_memory_storage, recording_sleep):
    machine = await executing_machine(in_memory_storage)
    checkpoint_id = await machine.wait_for_input("which branch?")
    await machine.input_received("main")
    machine.set_memory("scratch", "dirty")
    calls = []

    async def op():
        calls.append(machine.status)
        if len(calls) == 1:
            raise ConnectionError("connection reset")
        return "ok"

    result = await machine.execute_with_recovery(restore_policy(recording_sleep), "sync", op)

    assert result == "ok"
    assert calls == [AgentStatus.EXECUTING, AgentStatus.WAITING_FOR_INPUT]
    assert machine.state.checkpoint_id == checkpoint_id
    assert machine.get_memory("scratch") is None


@pytest.mark.asyncio
async def test_execute_with_recovery_limits_restores(in_memory_storage, recording_sleep):
    machine = await executing_machine(in_memory_storage)
    await machine.wait_for_input("which branch?")
    await machine.input_received("main")

    async def op():
        raise ConnectionError("connection reset")

    with pytest.raises(CheckpointRestoreRequested):
        await machine.execute_with_recovery(restore_policy(recording_sleep), "sync", op)


# ==============================================================================
# Memory, observation and serialization
# ==============================================================================


def test_working_memory_evicts_oldest_key():
    machine = AgentStateMachine(config=StateMachineConfig(max_working_memory=2))
    machine.set_memory("a", 1)
    machine.set_memory("b", 2)
    machine.set_memory("a", 10)
    machine.set_memory("c", 3)

    assert machine.state.working_memory == {"b": 2, "c": 3}
    machine.clear_memory()
    assert machine.state.working_memory == {}


def test_conversation_can_be_disabled():
    machine = AgentStateMachine(config=StateMachineConfig(include_conversation=False))
    machine.add_message(Message("user", "hello"))
    assert machine.state.conversation == []


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe():
    seen = []
    machine = AgentStateMachine()
    unsubscribe = machine.subscribe(lambda state: seen.append(state.status))

    await machine.start("hi")
    unsubscribe()
    await machine.plan_created(PlanRef(plan_id="p1", goal="greet"))

    assert seen == [AgentStatus.PLANNING]


@pytest.mark.asyncio
async def test_export_and_import_state():
    machine = await executing_machine()
    machine.set_memory("notes", ["one", "two"])
    exported = machine.export_state()

    other = AgentStateMachine()
    state = await other.import_state(exported)

    assert state.session_id == machine.session_id
    assert other.status == AgentStatus.EXECUTING
    assert other.get_memory("notes") == ["one", "two"]
    assert other.state.plan.step_ids == ("a", "b")
    assert other.state.history == machine.state.history
