"""Checkpoint storage backends.

Provides multiple storage implementations behind a common interface:
    - CheckpointStorage: Abstract interface
    - InMemoryCheckpointStorage: In-memory storage for testing
    - SqliteCheckpointStorage: SQLite-backed storage
    - RedisCheckpointStorage: Redis-backed distributed storage

Design: Adapter Pattern + Dependency Inversion (SOLID)
    The state machine depends on CheckpointStorage, never on a backend.
"""

from pyconductor.storage.base import CheckpointStorage, StorageError

# Backends are imported lazily so that aiosqlite and redis are only
# loaded when their adapter is used


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryCheckpointStorage":
        from pyconductor.storage.memory import InMemoryCheckpointStorage

        return InMemoryCheckpointStorage
    elif name == "RedisCheckpointStorage":
        from pyconductor.storage.redis import RedisCheckpointStorage

        return RedisCheckpointStorage
    elif name == "SqliteCheckpointStorage":
        from pyconductor.storage.sqlite import SqliteCheckpointStorage

        return SqliteCheckpointStorage
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "CheckpointStorage",
    "StorageError",
    "InMemoryCheckpointStorage",
    "SqliteCheckpointStorage",
    "RedisCheckpointStorage",
]
