"""Valkey connection owned by the worker process.

The worker builds one :class:`ValkeyConnection` from its settings and hands
``connection.client`` to the cache and the broadcaster as their client factory.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from redis.asyncio import ConnectionPool, Redis

from allotrack.core.config import Settings
from allotrack.core.logging import get_logger


logger = get_logger("cache.client")


class ValkeyConnection:
    """Lazily opened pool and client for one Valkey URL."""

    def __init__(
        self,
        url: str,
        max_connections: int = 10,
        timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        self.url = url
        self.max_connections = max_connections
        self.timeout = timeout
        self.health_check_interval = health_check_interval
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ValkeyConnection":
        return cls(settings.valkey_url, max_connections=settings.valkey_max_connections)

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def client(self) -> Redis:
        """The shared client, opening the pool on first use."""
        if self._client is None:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                decode_responses=True,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
                retry_on_timeout=True,
                health_check_interval=self.health_check_interval,
            )
            self._client = Redis(connection_pool=self._pool)
            logger.info(
                "Valkey connection pool initialized",
                extra={"max_connections": self.max_connections},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
            logger.info("Valkey connection pool closed")


async def ping(client: Redis, timeout: float = 5.0) -> bool:
    """Ping Valkey; any error counts as unhealthy."""
    try:
        result = await asyncio.wait_for(client.ping(), timeout=timeout)
    except Exception as e:
        logger.warning(f"Valkey healthcheck failed: {e}")
        return False
    return result is True or result == "PONG"
