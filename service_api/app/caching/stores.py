"""
Durable stores backing the revalidating cache.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as redis

from shared.logging import get_logger


@dataclass(frozen=True)
class StoredValue:
    """A value as persisted, with the time it was computed (epoch seconds)."""

    value: Any
    computed_at: float


class CacheStore(Protocol):
    """Key-value storage consumed by ``RevalidatingCache``."""

    async def read(self, key: str) -> Optional[StoredValue]:
        ...

    async def write(self, key: str, value: Any, computed_at: float) -> None:
        ...


class MemoryStore:
    """Process-local store; entries live until the process exits."""

    def __init__(self):
        self._entries: Dict[str, StoredValue] = {}

    async def read(self, key: str) -> Optional[StoredValue]:
        return self._entries.get(key)

    async def write(self, key: str, value: Any, computed_at: float) -> None:
        self._entries[key] = StoredValue(value=value, computed_at=computed_at)

    def __len__(self) -> int:
        return len(self._entries)


class RedisStore:
    """
    Redis-backed store. Values are JSON-encoded together with their
    computation time; ``retention_seconds`` bounds how long Redis keeps them.
    """

    def __init__(self, redis_url: str, *, prefix: str = "curve-api", retention_seconds: Optional[int] = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self.retention_seconds = retention_seconds
        self.logger = get_logger("api.cache_store")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def read(self, key: str) -> Optional[StoredValue]:
        redis_client = await self._get_redis()
        raw = await redis_client.get(self._make_key(key))
        if raw is None:
            return None

        try:
            payload = json.loads(raw)
            return StoredValue(value=payload["value"], computed_at=float(payload["computed_at"]))
        except (ValueError, KeyError, TypeError) as exc:
            # A corrupt entry is treated as absent and overwritten by the next compute
            self.logger.warning("Discarding unreadable cache entry", key=key, error=str(exc))
            return None

    async def write(self, key: str, value: Any, computed_at: float) -> None:
        redis_client = await self._get_redis()
        payload = json.dumps({"value": value, "computed_at": computed_at})
        await redis_client.set(self._make_key(key), payload, ex=self.retention_seconds)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
