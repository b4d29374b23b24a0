"""Redis-backed TTL key/value cache for sensor and device snapshots."""

import json
import logging
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Thin JSON wrapper over a Redis client.

    Values are stored as JSON strings; TTLs are whole seconds.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    async def get(self, key: str) -> Any | None:
        raw = await self.client.get(key)
        return self._decode(key, raw)

    async def set(self, key: str, value: Any) -> None:
        await self.client.set(key, json.dumps(value))

    async def setex(self, key: str, ttl_secs: int, value: Any) -> None:
        await self.client.setex(key, int(ttl_secs), json.dumps(value))

    async def mget(self, *keys: str) -> list[Any | None]:
        """Fetch several keys; the result lines up with ``keys``, None where missing."""
        if not keys:
            return []
        raw_values = await self.client.mget(list(keys))
        return [self._decode(key, raw) for key, raw in zip(keys, raw_values, strict=True)]

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def ttl(self, key: str) -> int:
        return await self.client.ttl(key)

    @staticmethod
    def _decode(key: str, raw: str | bytes | None) -> Any | None:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Ignoring undecodable cache value for %s: %s", key, e)
            return None
