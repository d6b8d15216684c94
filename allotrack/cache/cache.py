"""JSON cache over Valkey with TTLs.

Every operation degrades to a miss (or a no-op) when Valkey is unreachable,
so callers never depend on the cache for correctness.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis

from allotrack.core.logging import get_logger

from .client import ping


logger = get_logger("cache")

CACHE_PREFIX = "allotrack"
CACHE_VERSION = "v1"
DEFAULT_TTL = 300

ClientFactory = Callable[[], Awaitable[Redis]]


def _serialize(value: Any) -> str:
    return json.dumps(value, default=str)


def _deserialize(value: str) -> Any:
    return json.loads(value)


class Cache:
    """Namespaced cache wrapper.

    Keys are stored as ``allotrack:v1:<prefix>:<key>``.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        prefix: str = "cache",
        default_ttl: int = DEFAULT_TTL,
    ):
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._client_factory = client_factory

    def full_key(self, key: str) -> str:
        return f"{CACHE_PREFIX}:{CACHE_VERSION}:{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        full_key = self.full_key(key)
        try:
            client = await self._client_factory()
            value = await client.get(full_key)
        except Exception as e:
            logger.warning(f"Cache get failed: {e}")
            return None
        if value is None:
            logger.debug(f"Cache miss: {full_key}")
            return None
        logger.debug(f"Cache hit: {full_key}")
        return _deserialize(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        full_key = self.full_key(key)
        try:
            client = await self._client_factory()
            await client.set(full_key, _serialize(value), ex=ttl or self.default_ttl)
        except Exception as e:
            logger.warning(f"Cache set failed: {e}")
            return False
        logger.debug(f"Cache set: {full_key}, TTL: {ttl or self.default_ttl}s")
        return True

    async def ping(self) -> bool:
        try:
            client = await self._client_factory()
        except Exception as e:
            logger.warning(f"Cache client unavailable: {e}")
            return False
        return await ping(client)
