"""
Pytest configuration and fixtures for conductor tests.

Provides reusable fixtures for checkpoint storages, a hand-driven clock,
scripted sub-agents and an in-process stand-in for a Redis client.
"""

import asyncio
import fnmatch
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from pyconductor.models.subagent import ChatResponse, SubAgentConfig, TokenUsage
from pyconductor.storage import InMemoryCheckpointStorage, SqliteCheckpointStorage


@pytest.fixture
async def in_memory_storage() -> AsyncGenerator[InMemoryCheckpointStorage, None]:
    """Async in-memory storage fixture with automatic cleanup."""
    storage = InMemoryCheckpointStorage()
    yield storage
    await storage.reset()


@pytest.fixture
async def sqlite_memory_storage() -> AsyncGenerator[SqliteCheckpointStorage, None]:
    """Async SQLite in-memory storage fixture with automatic cleanup."""
    storage = SqliteCheckpointStorage(":memory:")
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "checkpoints.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


# ==============================================================================
# Time
# ==============================================================================


class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """asyncio.sleep replacement that records delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep(fake_clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(fake_clock)


# ==============================================================================
# Sub-agents
# ==============================================================================


class ScriptedAgent:
    """
    Agent whose behaviour is read from its config's metadata.

    metadata keys:
        delay: seconds to sleep before answering
        fail: message of a RuntimeError to raise
        fail_times: raise only on the first N calls
    """

    def __init__(self, config: SubAgentConfig):
        self.config = config
        self.calls: list[tuple[str, dict]] = []

    async def chat(self, input: str, options: dict) -> ChatResponse:
        self.calls.append((input, options))
        meta = self.config.metadata
        delay = meta.get("delay", 0)
        if delay:
            await asyncio.sleep(delay)
        fail = meta.get("fail")
        if fail is not None:
            fail_times = meta.get("fail_times")
            if fail_times is None or len(self.calls) <= fail_times:
                raise RuntimeError(fail)
        return ChatResponse(
            content=f"{self.config.id}: {input}",
            usage=TokenUsage(prompt_tokens=3, completion_tokens=5, total_tokens=8),
        )


class ScriptedAgentFactory:
    """Agent factory that remembers every agent it built."""

    def __init__(self):
        self.built: dict[str, ScriptedAgent] = {}
        self.build_count = 0

    def __call__(self, config: SubAgentConfig) -> ScriptedAgent:
        self.build_count += 1
        agent = ScriptedAgent(config)
        self.built[config.id] = agent
        return agent


@pytest.fixture
def agent_factory() -> ScriptedAgentFactory:
    return ScriptedAgentFactory()


# ==============================================================================
# Redis
# ==============================================================================


def _to_bytes(value) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode()


class FakePipeline:
    """Queues commands and applies them on execute(), like MULTI/EXEC."""

    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._commands: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self._commands.clear()

    async def hset(self, *args, **kwargs) -> "FakePipeline":
        self._commands.append(("hset", args, kwargs))
        return self

    async def zadd(self, *args, **kwargs) -> "FakePipeline":
        self._commands.append(("zadd", args, kwargs))
        return self

    async def zrem(self, *args, **kwargs) -> "FakePipeline":
        self._commands.append(("zrem", args, kwargs))
        return self

    async def delete(self, *args, **kwargs) -> "FakePipeline":
        self._commands.append(("delete", args, kwargs))
        return self

    async def execute(self) -> list:
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._client, name)(*args, **kwargs))
        self._commands.clear()
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisCheckpointStorage."""

    def __init__(self):
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.zsets: dict[str, dict[bytes, float]] = {}
        self.closed = False

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def hset(self, key: str, mapping: dict) -> int:
        fields = self.hashes.setdefault(key, {})
        added = 0
        for field, value in mapping.items():
            added += _to_bytes(field) not in fields
            fields[_to_bytes(field)] = _to_bytes(value)
        return added

    async def hgetall(self, key: str) -> dict[bytes, bytes]:
        return dict(self.hashes.get(key, {}))

    async def hget(self, key: str, field: str) -> bytes | None:
        return self.hashes.get(key, {}).get(_to_bytes(field))

    async def zadd(self, key: str, mapping: dict) -> int:
        members = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            added += _to_bytes(member) not in members
            members[_to_bytes(member)] = score
        return added

    async def zrem(self, key: str, *members) -> int:
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            removed += zset.pop(_to_bytes(member), None) is not None
        return removed

    async def zrange(self, key: str, start: int, end: int) -> list[bytes]:
        members = sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))
        ids = [m for m, _ in members]
        return ids[start:] if end == -1 else ids[start : end + 1]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            key = key.decode() if isinstance(key, bytes) else key
            removed += self.hashes.pop(key, None) is not None
            removed += self.zsets.pop(key, None) is not None
        return removed

    async def scan_iter(self, match: str = "*"):
        for key in list(self.hashes) + list(self.zsets):
            if fnmatch.fnmatch(key, match):
                yield key.encode()

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
