"""
Agent session state and checkpoints.

AgentState is created at session start and mutated only by the
AgentStateMachine through validated transitions. A Checkpoint is a
pickled copy of that state (plus the pending messages and plan
reference) written at designated transitions and used to resume.

Design principles:
- Serialization-friendly: every field is a basic type or a dataclass
  with to_dict()/from_dict()
- Integrity: checkpoints carry an xxhash digest of the pickled state
"""

from __future__ import annotations

import pickle
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import xxhash
from uuid_extensions import uuid7

from pyconductor.core.errors import CheckpointError
from pyconductor.core.status import AgentStatus

STATE_VERSION = 1


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def state_checksum(data: bytes) -> int:
    """64-bit xxhash of serialized state, masked to a signed-safe int."""
    return xxhash.xxh64(data).intdigest() & 0x7FFFFFFFFFFFFFFF


@dataclass(frozen=True)
class Message:
    """One conversation message."""

    role: str
    content: str
    created_at: datetime = field(default_factory=_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=data["content"],
            created_at=_parse_dt(data.get("created_at")) or _now(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class AgentError:
    """Error detail recorded on a failed session or step."""

    message: str
    error_type: str = "Exception"
    category: str | None = None
    recoverable: bool = False
    step_id: str | None = None

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        *,
        category: str | None = None,
        recoverable: bool = False,
        step_id: str | None = None,
    ) -> AgentError:
        return cls(
            message=str(error),
            error_type=type(error).__name__,
            category=category,
            recoverable=recoverable,
            step_id=step_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "error_type": self.error_type,
            "category": self.category,
            "recoverable": self.recoverable,
            "step_id": self.step_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentError:
        return cls(**data)


@dataclass
class PlanRef:
    """Reference to the plan a session is executing, with step progress."""

    plan_id: str
    goal: str
    step_ids: tuple[str, ...] = ()
    completed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    current_step: str | None = None

    @property
    def progress(self) -> float:
        """Fraction of steps that are done (completed or skipped)."""
        if not self.step_ids:
            return 1.0
        done = len(set(self.completed_steps) | set(self.skipped_steps))
        return done / len(self.step_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "goal": self.goal,
            "step_ids": list(self.step_ids),
            "completed_steps": list(self.completed_steps),
            "skipped_steps": list(self.skipped_steps),
            "failed_steps": list(self.failed_steps),
            "current_step": self.current_step,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanRef:
        return cls(
            plan_id=data["plan_id"],
            goal=data["goal"],
            step_ids=tuple(data.get("step_ids", ())),
            completed_steps=list(data.get("completed_steps", [])),
            skipped_steps=list(data.get("skipped_steps", [])),
            failed_steps=list(data.get("failed_steps", [])),
            current_step=data.get("current_step"),
        )


@dataclass(frozen=True)
class TransitionRecord:
    """One accepted lifecycle transition."""

    from_status: AgentStatus
    to_status: AgentStatus
    at: datetime = field(default_factory=_now)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "at": self.at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        return cls(
            from_status=AgentStatus(data["from"]),
            to_status=AgentStatus(data["to"]),
            at=_parse_dt(data.get("at")) or _now(),
            reason=data.get("reason"),
        )


@dataclass
class AgentState:
    """
    Complete state of one agent session.

    Following Dave Cheney's principle: "Make zero values useful"
    ``AgentState()`` is a valid idle session with a fresh UUIDv7 id.
    """

    session_id: str = field(default_factory=lambda: str(uuid7()))
    status: AgentStatus = AgentStatus.IDLE
    version: int = STATE_VERSION
    task_id: str | None = None
    step_index: int = 0
    plan: PlanRef | None = None
    working_memory: dict[str, Any] = field(default_factory=dict)
    error: AgentError | None = None
    conversation: list[Message] = field(default_factory=list)
    checkpoint_id: str | None = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    history: list[TransitionRecord] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation. Working memory must be JSON-friendly too."""
        return {
            "version": self.version,
            "session_id": self.session_id,
            "status": self.status.value,
            "task_id": self.task_id,
            "step_index": self.step_index,
            "plan": self.plan.to_dict() if self.plan else None,
            "working_memory": dict(self.working_memory),
            "error": self.error.to_dict() if self.error else None,
            "conversation": [m.to_dict() for m in self.conversation],
            "checkpoint_id": self.checkpoint_id,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "history": [h.to_dict() for h in self.history],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentState:
        version = data.get("version", STATE_VERSION)
        if version > STATE_VERSION:
            raise CheckpointError(f"Unsupported state version {version}")
        return cls(
            session_id=data["session_id"],
            status=AgentStatus(data["status"]),
            version=version,
            task_id=data.get("task_id"),
            step_index=data.get("step_index", 0),
            plan=PlanRef.from_dict(data["plan"]) if data.get("plan") else None,
            working_memory=dict(data.get("working_memory") or {}),
            error=AgentError.from_dict(data["error"]) if data.get("error") else None,
            conversation=[Message.from_dict(m) for m in data.get("conversation", [])],
            checkpoint_id=data.get("checkpoint_id"),
            retry_count=data.get("retry_count", 0),
            created_at=_parse_dt(data.get("created_at")) or _now(),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
            history=[TransitionRecord.from_dict(h) for h in data.get("history", [])],
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Checkpoint:
    """
    Durable snapshot of an AgentState.

    The state is kept as pickled bytes so the checksum covers exactly
    what will be restored. Use ``Checkpoint.capture()`` to build one and
    ``checkpoint.load_state()`` to get a verified copy back.
    """

    id: str
    session_id: str
    status: AgentStatus
    state_data: bytes
    checksum: int
    pending_messages: tuple[Message, ...] = ()
    plan: PlanRef | None = None
    name: str | None = None
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def capture(
        cls,
        state: AgentState,
        *,
        pending_messages: tuple[Message, ...] | list[Message] = (),
        name: str | None = None,
        checkpoint_id: str | None = None,
    ) -> Checkpoint:
        data = pickle.dumps(state)
        return cls(
            id=checkpoint_id or str(uuid7()),
            session_id=state.session_id,
            status=state.status,
            state_data=data,
            checksum=state_checksum(data),
            pending_messages=tuple(pending_messages),
            plan=pickle.loads(pickle.dumps(state.plan)) if state.plan else None,
            name=name,
        )

    def verify(self) -> bool:
        return state_checksum(self.state_data) == self.checksum

    def load_state(self) -> AgentState:
        """
        Return a fresh copy of the checkpointed state.

        Raises:
            CheckpointError: If the checksum does not match
        """
        if not self.verify():
            raise CheckpointError(f"Checkpoint {self.id} failed checksum verification")
        return pickle.loads(self.state_data)

    def __str__(self) -> str:
        label = f" '{self.name}'" if self.name else ""
        return f"Checkpoint({self.id}{label}, status={self.status})"
