"""Connection pool management.

This module provides a centralized Redis connection pool shared by the
Redis-backed ID registry and container state store.
"""

from typing import Optional
import redis.asyncio as redis
import structlog

from ..config import settings

logger = structlog.get_logger(__name__)


class RedisPool:
    """Centralized async Redis connection pool.

    Usage:
        client = redis_pool.get_client()
        await client.sadd("ide:container-ids", container_id)
    """

    def __init__(self):
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._initialized = False

    def _initialize(self) -> None:
        """Initialize the connection pool lazily."""
        if self._initialized:
            return

        redis_config = settings.redis
        redis_url = redis_config.get_url()
        self._pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=redis_config.redis_max_connections,
            decode_responses=True,
            socket_timeout=float(redis_config.redis_socket_timeout),
            socket_connect_timeout=float(redis_config.redis_socket_connect_timeout),
            retry_on_timeout=True,
        )
        self._client = redis.Redis(connection_pool=self._pool)
        self._initialized = True
        # Don't log password - extract host part only
        safe_url = redis_url.split("@")[-1] if "@" in redis_url else redis_url
        logger.info(
            "Redis connection pool initialized",
            max_connections=redis_config.redis_max_connections,
            url=safe_url,
        )

    def get_client(self) -> redis.Redis:
        """Get an async Redis client from the shared pool."""
        if not self._initialized:
            self._initialize()
        assert self._client is not None, "Redis client not initialized"
        return self._client

    @property
    def pool_stats(self) -> dict:
        """Get connection pool statistics."""
        if not self._pool:
            return {"initialized": False}

        return {
            "initialized": True,
            "max_connections": self._pool.max_connections,
        }

    async def close(self) -> None:
        """Close the connection pool and release all connections."""
        if self._client:
            await self._client.aclose()
            logger.info("Redis connection pool closed")
        self._pool = None
        self._client = None
        self._initialized = False


# Global Redis pool instance
redis_pool = RedisPool()
