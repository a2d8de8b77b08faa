"""In-memory checkpoint storage.

Design Pattern: Adapter Pattern
InMemoryCheckpointStorage adapts a dictionary to the CheckpointStorage
interface.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio

from pyconductor.models.agent_state import Checkpoint
from pyconductor.storage.base import CheckpointStorage


class InMemoryCheckpointStorage(CheckpointStorage):
    """In-memory storage for tests and single-process use.

    Can be substituted for SqliteCheckpointStorage without changing client code.

    Usage:
        storage = InMemoryCheckpointStorage()
        machine = AgentStateMachine(storage=storage)
    """

    def __init__(self):
        # Storage: {checkpoint_id: Checkpoint}
        self._checkpoints: dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()
        self.save_count = 0

    def __repr__(self) -> str:
        return f"InMemoryCheckpointStorage(checkpoints={len(self._checkpoints)})"

    def __len__(self) -> int:
        return len(self._checkpoints)

    async def save(self, checkpoint_id: str, checkpoint: Checkpoint) -> None:
        async with self._lock:
            self._checkpoints[checkpoint_id] = checkpoint
            self.save_count += 1

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        async with self._lock:
            return self._checkpoints.get(checkpoint_id)

    async def delete(self, checkpoint_id: str) -> bool:
        async with self._lock:
            return self._checkpoints.pop(checkpoint_id, None) is not None

    async def list(self, session_id: str) -> list[Checkpoint]:
        async with self._lock:
            found = [c for c in self._checkpoints.values() if c.session_id == session_id]
        return sorted(found, key=lambda c: (c.created_at, c.id))

    async def reset(self) -> None:
        async with self._lock:
            self._checkpoints.clear()
            self.save_count = 0

    async def close(self) -> None:
        pass
