"""Redis cache backend -- shares quotes and valuations across processes.

Values are stored as JSON strings with a per-key TTL. Connection errors
propagate to the caller, which treats every cache call as best-effort.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisCache:
    """Implements the Cache protocol on top of ``redis.asyncio``."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        client: Any | None = None,
        prefix: str = "marketarena:",
    ) -> None:
        self._client = client if client is not None else redis.from_url(url, decode_responses=True)
        self._prefix = prefix

    @property
    def name(self) -> str:
        return "redis"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._prefix + key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache entry %s", key)
            await self.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            await self.delete(key)
            return
        await self._client.set(self._prefix + key, json.dumps(value), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._prefix + key)

    async def close(self) -> None:
        await self._client.aclose()
