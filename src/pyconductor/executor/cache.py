"""
TTL result cache.

Last-writer-wins, evicted lazily on read and on ``prune()``. Owned by a
single scheduler or manager instance; never shared across instances.
Recomputing a missed entry is always safe, so no locking is needed on
a single event loop.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

CACHE_MISS: Any = object()
"""Returned by ResultCache.get() when no live entry exists (None is a valid value)."""


class ResultCache:
    """
    Key -> value cache with per-entry expiry.

    Example:
        ```python
        cache = ResultCache(ttl_ms=60_000)
        cache.set("task-1", result)
        value = cache.get("task-1")
        if value is CACHE_MISS:
            ...
        ```
    """

    def __init__(self, ttl_ms: float | None = None, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl_ms: Default lifetime of entries. None keeps entries until cleared.
            clock: Monotonic clock in seconds
        """
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: dict[str, tuple[Any, float | None]] = {}

    def __len__(self) -> int:
        self.prune()
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not CACHE_MISS

    def __repr__(self) -> str:
        return f"ResultCache(entries={len(self._entries)}, ttl_ms={self.ttl_ms})"

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return CACHE_MISS
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return CACHE_MISS
        return value

    def set(self, key: str, value: Any, ttl_ms: float | None = None) -> None:
        ttl = ttl_ms if ttl_ms is not None else self.ttl_ms
        expires_at = self._clock() + ttl / 1000.0 if ttl is not None else None
        self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def prune(self) -> int:
        """Drop expired entries. Returns how many were dropped."""
        now = self._clock()
        expired = [k for k, (_, exp) in self._entries.items() if exp is not None and now >= exp]
        for key in expired:
            del self._entries[key]
        return len(expired)
