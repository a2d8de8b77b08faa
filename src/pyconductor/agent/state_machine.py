"""
Agent lifecycle state machine with checkpoint/resume.

Design Pattern: State Machine with an explicit transition table
Every legal (from, to) edge is listed in ALLOWED_TRANSITIONS. Anything
else raises StateTransitionError naming the attempted edge; statuses are
never coerced.

    IDLE → PLANNING → EXECUTING ⇄ WAITING_FOR_INPUT
                ↑         │
                └─replan──┘
    PLANNING / EXECUTING / WAITING_FOR_INPUT → FAILED / CANCELLED
    EXECUTING → COMPLETED

COMPLETED, FAILED and CANCELLED are terminal.

Entering WAITING_FOR_INPUT writes exactly one checkpoint through the
injected CheckpointStorage. Restoring a checkpoint re-enters the
checkpointed status, not IDLE.

Example:
    ```python
    machine = AgentStateMachine(storage=InMemoryCheckpointStorage())
    await machine.start("summarize the repo")
    await machine.plan_created(PlanRef(plan_id="p1", goal="summarize"))
    checkpoint_id = await machine.wait_for_input("which branch?")

    # later, in another process
    machine = await AgentStateMachine.resume(storage, checkpoint_id)
    await machine.input_received("main")
    ```
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from pyconductor.core.errors import (
    CheckpointError,
    CheckpointRestoreRequested,
    StateTransitionError,
)
from pyconductor.core.hooks import notify
from pyconductor.core.status import AgentStatus
from pyconductor.models.agent_state import (
    AgentError,
    AgentState,
    Checkpoint,
    Message,
    PlanRef,
    TransitionRecord,
)

if TYPE_CHECKING:
    from pyconductor.recovery.policy import RecoveryPolicy
    from pyconductor.storage.base import CheckpointStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALLOWED_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.IDLE: frozenset({AgentStatus.PLANNING}),
    AgentStatus.PLANNING: frozenset(
        {AgentStatus.EXECUTING, AgentStatus.FAILED, AgentStatus.CANCELLED}
    ),
    AgentStatus.EXECUTING: frozenset(
        {
            AgentStatus.PLANNING,
            AgentStatus.WAITING_FOR_INPUT,
            AgentStatus.COMPLETED,
            AgentStatus.FAILED,
            AgentStatus.CANCELLED,
        }
    ),
    AgentStatus.WAITING_FOR_INPUT: frozenset(
        {
            AgentStatus.EXECUTING,
            AgentStatus.PLANNING,
            AgentStatus.FAILED,
            AgentStatus.CANCELLED,
        }
    ),
    AgentStatus.COMPLETED: frozenset(),
    AgentStatus.FAILED: frozenset(),
    AgentStatus.CANCELLED: frozenset(),
}

StateListener = Callable[[AgentState], Any]
ErrorListener = Callable[[BaseException], Any]


def can_transition(from_status: AgentStatus, to_status: AgentStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


@dataclass(frozen=True)
class StateMachineConfig:
    """AgentStateMachine settings."""

    max_working_memory: int = 100
    """Oldest working-memory key is evicted beyond this size."""

    include_conversation: bool = True
    """Keep conversation history in state (and therefore in checkpoints)."""

    max_history: int | None = None
    """Cap on stored TransitionRecords. None keeps all."""

    max_restores: int = 1
    """Checkpoint restores allowed per execute_with_recovery() call."""


class AgentStateMachine:
    """
    Finite-state controller for one agent session.

    The machine owns its AgentState. Callers read it through ``state`` (a
    live reference) or ``export_state()`` and change it only through the
    transition helpers.
    """

    def __init__(
        self,
        *,
        storage: CheckpointStorage | None = None,
        config: StateMachineConfig | None = None,
        state: AgentState | None = None,
        on_error: ErrorListener | None = None,
    ):
        self.config = config or StateMachineConfig()
        self._storage = storage
        self._state = state or AgentState()
        self._on_error = on_error
        self._listeners: list[StateListener] = []
        self._pending_messages: list[Message] = []

    def __repr__(self) -> str:
        return (
            f"AgentStateMachine(session_id={self._state.session_id!r}, "
            f"status={self._state.status})"
        )

    # ========================================================================
    # Accessors
    # ========================================================================

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def status(self) -> AgentStatus:
        return self._state.status

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def is_terminal(self) -> bool:
        return self._state.status.is_terminal

    @property
    def storage(self) -> CheckpointStorage | None:
        return self._storage

    def can_transition(self, to_status: AgentStatus) -> bool:
        return can_transition(self._state.status, to_status)

    # ========================================================================
    # Transitions
    # ========================================================================

    async def transition(self, to_status: AgentStatus, reason: str | None = None) -> AgentState:
        """
        Move to ``to_status`` if the edge is in ALLOWED_TRANSITIONS.

        Entering WAITING_FOR_INPUT saves one checkpoint. If the save fails
        the transition is rolled back and the storage error propagates.

        Raises:
            StateTransitionError: The edge is not allowed (reported to on_error first)
        """
        from_status = self._state.status
        if not can_transition(from_status, to_status):
            await self._reject(to_status)
        if to_status == AgentStatus.WAITING_FOR_INPUT:
            self._require_storage()

        history = list(self._state.history)
        updated_at = self._state.updated_at
        self._state.status = to_status
        self._state.history.append(TransitionRecord(from_status, to_status, reason=reason))
        if self.config.max_history is not None:
            del self._state.history[: -self.config.max_history]
        self._state.touch()

        if to_status == AgentStatus.WAITING_FOR_INPUT:
            try:
                # The checkpoint must hold the waiting state itself
                await self.checkpoint(name=reason or "waiting_for_input")
            except Exception:
                self._state.status = from_status
                self._state.history[:] = history
                self._state.updated_at = updated_at
                logger.error(
                    f"Session {self.session_id}: checkpoint failed, staying in {from_status}"
                )
                raise

        logger.debug(f"Session {self.session_id}: {from_status} -> {to_status}")
        if to_status.is_terminal:
            logger.info(f"Session {self.session_id} finished: {to_status}")

        await self._notify()
        return self._state

    async def start(self, input: str, task_id: str | None = None) -> AgentState:
        """IDLE -> PLANNING with the user's input as the first message."""
        await self._guard(AgentStatus.PLANNING)
        self._state.task_id = task_id
        self.add_message(Message(role="user", content=input))
        return await self.transition(AgentStatus.PLANNING, "start")

    async def plan_created(self, plan: PlanRef) -> AgentState:
        """PLANNING -> EXECUTING with the plan attached."""
        await self._guard(AgentStatus.EXECUTING)
        self._state.plan = plan
        self._state.step_index = 0
        return await self.transition(AgentStatus.EXECUTING, f"plan {plan.plan_id} created")

    async def wait_for_input(
        self,
        reason: str | None = None,
        pending_messages: list[Message] | None = None,
    ) -> str:
        """
        EXECUTING -> WAITING_FOR_INPUT.

        Returns:
            Id of the checkpoint written on entry
        """
        await self._guard(AgentStatus.WAITING_FOR_INPUT)
        previous = self._pending_messages
        self._pending_messages = list(pending_messages or [])
        try:
            await self.transition(AgentStatus.WAITING_FOR_INPUT, reason)
        except Exception:
            self._pending_messages = previous
            raise
        if self._state.checkpoint_id is None:
            raise CheckpointError(f"Session {self.session_id} entered waiting without a checkpoint")
        return self._state.checkpoint_id

    async def input_received(self, input: str) -> AgentState:
        """WAITING_FOR_INPUT -> EXECUTING with the reply appended."""
        await self._guard(AgentStatus.EXECUTING)
        self.add_message(Message(role="user", content=input))
        self._pending_messages.clear()
        return await self.transition(AgentStatus.EXECUTING, "input received")

    async def replan(self, reason: str) -> AgentState:
        """EXECUTING or WAITING_FOR_INPUT -> PLANNING."""
        return await self.transition(AgentStatus.PLANNING, f"replan: {reason}")

    async def complete(self, result: Any = None) -> AgentState:
        """EXECUTING -> COMPLETED. The result is kept in working memory."""
        await self._guard(AgentStatus.COMPLETED)
        if result is not None:
            self._state.working_memory["result"] = result
        return await self.transition(AgentStatus.COMPLETED, "completed")

    async def fail(self, error: BaseException | AgentError | str) -> AgentState:
        """Any non-terminal status except IDLE -> FAILED, recording the error."""
        await self._guard(AgentStatus.FAILED)
        if isinstance(error, AgentError):
            detail = error
        elif isinstance(error, BaseException):
            detail = AgentError.from_exception(error)
        else:
            detail = AgentError(message=error)
        self._state.error = detail
        return await self.transition(AgentStatus.FAILED, detail.message)

    async def cancel(self, reason: str | None = None) -> AgentState:
        return await self.transition(AgentStatus.CANCELLED, reason or "cancelled")

    async def _guard(self, to_status: AgentStatus) -> None:
        # Helpers validate before mutating state
        if not self.can_transition(to_status):
            await self._reject(to_status)

    async def _reject(self, to_status: AgentStatus) -> None:
        error = StateTransitionError(self._state.status, to_status)
        logger.error(f"Session {self.session_id}: {error}")
        await notify(self._on_error, error, name="on_error")
        raise error

    # ========================================================================
    # Step bookkeeping (while EXECUTING)
    # ========================================================================

    def _plan(self) -> PlanRef:
        if self._state.plan is None:
            raise ValueError(f"Session {self.session_id} has no plan attached")
        return self._state.plan

    def step_started(self, step_id: str) -> None:
        self._plan().current_step = step_id
        self._state.touch()

    def step_completed(self, step_id: str, result: Any = None) -> None:
        plan = self._plan()
        if step_id not in plan.completed_steps:
            plan.completed_steps.append(step_id)
        if plan.current_step == step_id:
            plan.current_step = None
        self._state.step_index += 1
        if result is not None:
            self.set_memory(f"step:{step_id}", result)
        self._state.touch()

    def step_skipped(self, step_id: str, reason: str | None = None) -> None:
        plan = self._plan()
        if step_id not in plan.skipped_steps:
            plan.skipped_steps.append(step_id)
        if plan.current_step == step_id:
            plan.current_step = None
        self._state.step_index += 1
        self._state.touch()
        logger.debug(f"Session {self.session_id}: step {step_id} skipped ({reason})")

    def step_failed(self, step_id: str, error: BaseException, recoverable: bool = False) -> None:
        plan = self._plan()
        if step_id not in plan.failed_steps:
            plan.failed_steps.append(step_id)
        if plan.current_step == step_id:
            plan.current_step = None
        self._state.error = AgentError.from_exception(
            error, recoverable=recoverable, step_id=step_id
        )
        if recoverable:
            self._state.retry_count += 1
        self._state.touch()

    # ========================================================================
    # Checkpoints
    # ========================================================================

    def _require_storage(self) -> CheckpointStorage:
        if self._storage is None:
            raise CheckpointError("Checkpoint storage not configured")
        return self._storage

    async def checkpoint(self, name: str | None = None) -> str:
        """
        Save the current state.

        Returns:
            The new checkpoint id (UUIDv7)
        """
        storage = self._require_storage()
        checkpoint = Checkpoint.capture(
            self._state,
            pending_messages=self._pending_messages,
            name=name,
        )
        await storage.save(checkpoint.id, checkpoint)
        self._state.checkpoint_id = checkpoint.id
        logger.info(
            f"Session {self.session_id}: checkpoint {checkpoint.id} written ({checkpoint.status})"
        )
        return checkpoint.id

    async def _load_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = await self._require_storage().load(checkpoint_id)
        if checkpoint is None:
            raise CheckpointError(f"Checkpoint {checkpoint_id} not found")
        return checkpoint

    async def restore(self, checkpoint_id: str) -> AgentState:
        """
        Replace the current state with a checkpoint's state.

        The machine re-enters the checkpointed status. Pending messages
        saved with the checkpoint become pending again.

        Raises:
            CheckpointError: Missing checkpoint, checksum mismatch, or the
                current session is already terminal
        """
        if self.is_terminal:
            raise CheckpointError(
                f"Cannot restore into terminal session {self.session_id} ({self.status})"
            )
        checkpoint = await self._load_checkpoint(checkpoint_id)
        state = checkpoint.load_state()
        state.checkpoint_id = checkpoint.id
        state.touch()
        self._state = state
        self._pending_messages = list(checkpoint.pending_messages)
        logger.info(
            f"Session {self.session_id}: restored checkpoint {checkpoint_id} ({state.status})"
        )
        await self._notify()
        return self._state

    @classmethod
    async def resume(
        cls,
        storage: CheckpointStorage,
        checkpoint_id: str,
        *,
        config: StateMachineConfig | None = None,
        on_error: ErrorListener | None = None,
    ) -> AgentStateMachine:
        """Build a machine from a stored checkpoint (e.g. after a restart)."""
        machine = cls(storage=storage, config=config, on_error=on_error)
        await machine.restore(checkpoint_id)
        return machine

    @property
    def pending_messages(self) -> list[Message]:
        return list(self._pending_messages)

    async def list_checkpoints(self) -> list[Checkpoint]:
        if self._storage is None:
            return []
        return await self._storage.list(self.session_id)

    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return await self._require_storage().delete(checkpoint_id)

    # ========================================================================
    # Recovery integration
    # ========================================================================

    async def execute_with_recovery(
        self,
        policy: RecoveryPolicy,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        **kwargs: Any,
    ) -> T | None:
        """
        Run ``fn`` through ``policy``, honouring CheckpointRestore actions.

        When the policy raises CheckpointRestoreRequested, the named
        checkpoint is restored and the operation runs again, at most
        ``config.max_restores`` times. The current checkpoint id is
        offered to hooks as ``last_checkpoint``.
        """
        restores = 0
        while True:
            try:
                return await policy.execute(
                    operation,
                    fn,
                    last_checkpoint=self._state.checkpoint_id,
                    **kwargs,
                )
            except CheckpointRestoreRequested as e:
                if restores >= self.config.max_restores:
                    logger.error(
                        f"Session {self.session_id}: restore limit reached for '{operation}'"
                    )
                    raise
                restores += 1
                logger.warning(
                    f"Session {self.session_id}: restoring {e.checkpoint_id} "
                    f"after '{operation}' failed: {e.error}"
                )
                await self.restore(e.checkpoint_id)

    # ========================================================================
    # Working memory and conversation
    # ========================================================================

    def set_memory(self, key: str, value: Any) -> None:
        memory = self._state.working_memory
        if key not in memory and len(memory) >= self.config.max_working_memory:
            oldest = next(iter(memory))
            del memory[oldest]
        memory[key] = value
        self._state.touch()

    def get_memory(self, key: str, default: Any = None) -> Any:
        return self._state.working_memory.get(key, default)

    def clear_memory(self) -> None:
        self._state.working_memory = {}
        self._state.touch()

    def add_message(self, message: Message) -> None:
        if self.config.include_conversation:
            self._state.conversation.append(message)
            self._state.touch()

    def set_conversation(self, messages: list[Message]) -> None:
        if self.config.include_conversation:
            self._state.conversation = list(messages)
            self._state.touch()

    # ========================================================================
    # Observation and serialization
    # ========================================================================

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Call ``listener(state)`` after every transition, restore and import.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            await notify(listener, self._state, name="state listener")

    def export_state(self) -> str:
        """Serialize the state to JSON. Working memory must be JSON-friendly."""
        return json.dumps(self._state.to_dict(), indent=2)

    async def import_state(self, serialized: str) -> AgentState:
        """Replace the state with one produced by export_state()."""
        data = json.loads(serialized)
        if data.get("version") != self._state.version:
            logger.warning(
                f"State version mismatch: expected {self._state.version}, "
                f"got {data.get('version')}"
            )
        state = AgentState.from_dict(data)
        state.touch()
        self._state = state
        await self._notify()
        return self._state
