"""In-process cache backends implementing the Cache protocol.

Values are JSON-compatible dicts so every backend (including Redis) stores
the same shape. The cache is only ever an optimization.
"""

from __future__ import annotations

import logging
import time
from typing import Any

logger = logging.getLogger(__name__)


class NullCache:
    """A cache that never stores anything: every ``get`` is a miss."""

    @property
    def name(self) -> str:
        return "none"

    async def get(self, key: str) -> Any | None:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None


class MemoryCache:
    """Dict-backed TTL cache for a single process."""

    def __init__(self, max_entries: int = 10_000) -> None:
        self._entries: dict[str, tuple[float, Any]] = {}
        self._max_entries = max_entries

    @property
    def name(self) -> str:
        return "memory"

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            self._entries.pop(key, None)
            return
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self._evict()
        self._entries[key] = (time.monotonic() + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> None:
        """Drop expired entries, then the soonest-to-expire if still full."""
        now = time.monotonic()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]
            logger.debug("Cache full, evicted %s", oldest)


def quote_key(symbol: str) -> str:
    return f"quote:{symbol}"


def portfolio_key(user_ref: str) -> str:
    return f"portfolio:{user_ref}"
