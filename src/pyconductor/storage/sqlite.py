"""SQLite-backed checkpoint storage.

Design Pattern: Adapter Pattern
SqliteCheckpointStorage adapts a SQLite database to the CheckpointStorage
interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Checkpoints pickled into a BLOB; the xxhash checksum is stored in its
  own column and compared on load
- Index on (session_id, created_at) for list()
"""

from __future__ import annotations

import asyncio
import pickle
from pathlib import Path

import aiosqlite

from pyconductor.models.agent_state import Checkpoint
from pyconductor.storage.base import CheckpointStorage, StorageError


class SqliteCheckpointStorage(CheckpointStorage):
    """SQLite-backed durable checkpoint storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        storage = SqliteCheckpointStorage("agent.db")
        await storage.connect()
        try:
            machine = AgentStateMachine(storage=storage)
            ...
        finally:
            await storage.close()
    """

    def __init__(self, db_path: str):
        """
        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> SqliteCheckpointStorage:
        """
        Create a connected in-memory storage for testing.

        Example:
            storage = await SqliteCheckpointStorage.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteCheckpointStorage(in-memory)"
        return f"SqliteCheckpointStorage({self.db_path})"

    async def connect(self) -> None:
        """Open the connection and create the schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create table and index
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        """Create the checkpoints table.

        Schema design:
        - created_at as INTEGER milliseconds since the epoch
        - status kept outside the blob for inspection with plain SQL
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS checkpoints (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                status TEXT NOT NULL,
                name TEXT,
                checksum INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                data BLOB NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_checkpoints_session
            ON checkpoints(session_id, created_at)
        """)

    async def save(self, checkpoint_id: str, checkpoint: Checkpoint) -> None:
        self._check_connected()

        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT OR REPLACE INTO checkpoints
                        (id, session_id, status, name, checksum, created_at, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        checkpoint_id,
                        checkpoint.session_id,
                        checkpoint.status.value,
                        checkpoint.name,
                        checkpoint.checksum,
                        int(checkpoint.created_at.timestamp() * 1000),
                        pickle.dumps(checkpoint),
                    ),
                )
                await self._connection.commit()
            except Exception as e:
                raise StorageError(f"Failed to save checkpoint {checkpoint_id}: {e}") from e

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        """Returns None when not found (not an error condition)."""
        self._check_connected()

        cursor = await self._connection.execute(
            "SELECT checksum, data FROM checkpoints WHERE id = ?",
            (checkpoint_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()

        if row is None:
            return None
        return self._row_to_checkpoint(checkpoint_id, row)

    async def delete(self, checkpoint_id: str) -> bool:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM checkpoints WHERE id = ?",
                (checkpoint_id,),
            )
            await self._connection.commit()
        return cursor.rowcount > 0

    async def list(self, session_id: str) -> list[Checkpoint]:
        self._check_connected()

        cursor = await self._connection.execute(
            """
            SELECT id, checksum, data FROM checkpoints
            WHERE session_id = ?
            ORDER BY created_at ASC, id ASC
        """,
            (session_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()

        return [self._row_to_checkpoint(row[0], row[1:]) for row in rows]

    async def reset(self) -> None:
        """Clear all data (for testing/demos)."""
        self._check_connected()

        await self._connection.execute("DELETE FROM checkpoints")
        await self._connection.commit()

    async def close(self) -> None:
        """Close the connection. Explicit resource cleanup, not relying on GC."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _row_to_checkpoint(checkpoint_id: str, row: tuple) -> Checkpoint:
        checksum, data = row
        try:
            checkpoint: Checkpoint = pickle.loads(data)
        except (pickle.UnpicklingError, EOFError, AttributeError, TypeError) as e:
            raise StorageError(f"Corrupt checkpoint {checkpoint_id}: {e}") from e
        if checkpoint.checksum != checksum:
            raise StorageError(
                f"Checkpoint {checkpoint_id} checksum column does not match its payload"
            )
        return checkpoint
