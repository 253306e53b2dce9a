"""Async Redis connection pool ownership."""

from __future__ import annotations

from typing import Any

from redis.asyncio import ConnectionPool, Redis

from tgnotify.util.logger import logger


class RedisConnection:
    """Owns one async Redis pool; open on startup, close on shutdown."""

    def __init__(
        self,
        url: str,
        *,
        max_connections: int = 20,
        socket_connect_timeout: float = 5.0,
    ) -> None:
        self.url = url
        self._max_connections = max_connections
        self._socket_connect_timeout = socket_connect_timeout
        self.pool: ConnectionPool | None = None
        self.redis: Redis | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> RedisConnection:
        return cls(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            socket_connect_timeout=settings.redis_socket_connect_timeout_seconds,
        )

    async def open(self) -> Redis:
        """Initialize the pool and verify connectivity (raises when unreachable)."""
        if self.redis is None:
            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self._max_connections,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=True,
            )
            self.redis = Redis(connection_pool=self.pool)

        await self.redis.ping()
        logger.info("Redis pool initialized.")
        return self.redis

    async def close(self) -> None:
        """Close client and pool."""
        if self.redis is not None:
            try:
                await self.redis.aclose()
                logger.info("Redis client closed.")
            except Exception as exc:  # noqa: BLE001
                logger.warning("Redis client close failed: %s", type(exc).__name__)

        if self.pool is not None:
            try:
                await self.pool.disconnect(inuse_connections=True)
                logger.info("Redis pool closed.")
            except Exception as exc:  # noqa: BLE001
                logger.warning("Redis pool disconnect failed: %s", type(exc).__name__)

        self.redis = None
        self.pool = None
