"""Redis-based checkpoint storage.

Lets a session checkpointed on one machine resume on another.

Data Structures:
- conductor:checkpoint:{id} (HASH): session_id, status, name, checksum,
  created_at and the pickled checkpoint
- conductor:session:{session_id} (ZSET): checkpoint ids of a session
  (score = created_at in milliseconds)

Key Features:
- Atomic operations: MULTI/EXEC pipelines keep hash and index in step
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements CheckpointStorage for Redis.
"""

from __future__ import annotations

import pickle

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError(
        "redis-py is required for RedisCheckpointStorage. Install with: pip install redis"
    )

from pyconductor.models.agent_state import Checkpoint
from pyconductor.storage.base import CheckpointStorage, StorageError


class RedisCheckpointStorage(CheckpointStorage):
    """Redis checkpoint storage using connection pooling.

    All dependencies (Redis connection) passed explicitly. An existing
    client may be injected with ``client=``; connect() then does nothing.

    Usage:
        storage = RedisCheckpointStorage("redis://localhost:6379")
        await storage.connect()
        machine = AgentStateMachine(storage=storage)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        *,
        client: redis.Redis | None = None,
    ):
        """
        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            client: Already-configured client (decode_responses=False)
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = client

    def __repr__(self) -> str:
        return f"RedisCheckpointStorage({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # Checkpoints are binary
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _checkpoint_key(checkpoint_id: str) -> str:
        return f"conductor:checkpoint:{checkpoint_id}"

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"conductor:session:{session_id}"

    async def save(self, checkpoint_id: str, checkpoint: Checkpoint) -> None:
        self._check_connected()

        created_ms = int(checkpoint.created_at.timestamp() * 1000)
        key = self._checkpoint_key(checkpoint_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.hset(
                    key,
                    mapping={
                        "session_id": checkpoint.session_id,
                        "status": checkpoint.status.value,
                        "name": checkpoint.name or "",
                        "checksum": str(checkpoint.checksum),
                        "created_at": str(created_ms),
                        "data": pickle.dumps(checkpoint),
                    },
                )
                await pipe.zadd(self._session_key(checkpoint.session_id), {checkpoint_id: created_ms})
                await pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"Failed to save checkpoint {checkpoint_id}: {e}") from e

    async def load(self, checkpoint_id: str) -> Checkpoint | None:
        self._check_connected()

        data = await self._redis.hgetall(self._checkpoint_key(checkpoint_id))
        if not data:
            return None
        return self._parse_checkpoint(checkpoint_id, data)

    async def delete(self, checkpoint_id: str) -> bool:
        self._check_connected()

        key = self._checkpoint_key(checkpoint_id)
        session_id = await self._redis.hget(key, "session_id")
        if session_id is None:
            return False

        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.delete(key)
            await pipe.zrem(self._session_key(session_id.decode()), checkpoint_id)
            results = await pipe.execute()
        return bool(results[0])

    async def list(self, session_id: str) -> list[Checkpoint]:
        self._check_connected()

        ids = await self._redis.zrange(self._session_key(session_id), 0, -1)
        checkpoints = []
        for raw_id in ids:
            checkpoint_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            data = await self._redis.hgetall(self._checkpoint_key(checkpoint_id))
            if data:
                checkpoints.append(self._parse_checkpoint(checkpoint_id, data))
        return sorted(checkpoints, key=lambda c: (c.created_at, c.id))

    async def reset(self) -> None:
        """Delete all conductor:* keys. Other Redis data is left alone."""
        self._check_connected()

        keys = []
        async for key in self._redis.scan_iter(match="conductor:*"):
            keys.append(key)

        if keys:
            await self._redis.delete(*keys)

    @staticmethod
    def _parse_checkpoint(checkpoint_id: str, data: dict) -> Checkpoint:
        """Parse a checkpoint HASH. Returns a Checkpoint or raises StorageError."""
        try:
            checksum = int(data[b"checksum"])
            checkpoint: Checkpoint = pickle.loads(data[b"data"])
        except (KeyError, ValueError, pickle.UnpicklingError, EOFError) as e:
            raise StorageError(f"Corrupt checkpoint {checkpoint_id}: {e}") from e
        if checkpoint.checksum != checksum:
            raise StorageError(
                f"Checkpoint {checkpoint_id} checksum field does not match its payload"
            )
        return checkpoint
