"""
CheckpointStorage protocol - Abstract interface for checkpoint backends.

Design Pattern: Adapter Pattern
CheckpointStorage defines the target interface that all storage adapters
implement. Different storage backends (SQLite, Redis, Memory) adapt to
this common interface.

Design Principle: Dependency Inversion (SOLID)
The AgentStateMachine depends on this abstraction, never on a concrete
backend. The core never persists anything by itself.

From Dave Cheney's Practical Go:
"Let functions define the behavior they require" - the state machine
only needs save/load/delete/list, so that is all the interface offers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pyconductor.core.errors import StorageError
from pyconductor.models.agent_state import Checkpoint

__all__ = ["CheckpointStorage", "StorageError"]


class CheckpointStorage(ABC):
    """
    Abstract storage interface for agent checkpoints.

    Pattern Benefits:
    - Open-Closed Principle: Add new backends without modifying the state machine
    - Testability: Easy to substitute InMemoryCheckpointStorage
    - Flexibility: Switch storage at runtime (SQLite <-> Redis <-> Memory)
    """

    @abstractmethod
    async def save(self, checkpoint_id: str, checkpoint: Checkpoint) -> None:
        """
        Store a checkpoint under ``checkpoint_id``, replacing any previous one.

        Raises:
            StorageError: If the backend operation fails
        """
        pass

    @abstractmethod
    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        """
        Fetch a checkpoint.

        Returns:
            The checkpoint, or None if no checkpoint has that id

        Raises:
            StorageError: If the backend operation fails
        """
        pass

    @abstractmethod
    async def delete(self, checkpoint_id: str) -> bool:
        """
        Remove a checkpoint.

        Returns:
            True if a checkpoint was removed
        """
        pass

    @abstractmethod
    async def list(self, session_id: str) -> list[Checkpoint]:
        """All checkpoints of a session, oldest first."""
        pass

    @abstractmethod
    async def reset(self) -> None:
        """
        Clear all data (for testing/demos).

        Warning: Destructive operation - only use in testing!
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close storage connections and clean up resources.

        From Dave Cheney: "Never start a goroutine without knowing when it
        will stop" - storage connections must be explicitly closed, not
        left to garbage collection.
        """
        pass
