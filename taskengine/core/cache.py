"""
Redis keyed store with TTL eviction.

Provides:
- Windowed counters used by the rate limiter
- The shared client used for status pub/sub

Counters live here rather than in process memory so that every API
process and worker sees the same window.
"""

import logging

import redis.asyncio as aioredis

from taskengine.config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """
    Redis-based keyed store.

    Handles:
    - Connection lifecycle
    - Key namespacing
    - TTL management
    """

    def __init__(self) -> None:
        self._client: aioredis.Redis | None = None

    async def init(self, redis_url: str | None = None) -> None:
        """Initialize Redis connection pool."""
        if self._client is not None:
            return

        logger.info("Initializing Redis connection...")

        self._client = aioredis.from_url(
            redis_url or str(settings.redis_url),
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
        )

        await self._client.ping()
        logger.info("Redis connection initialized")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")

    @property
    def client(self) -> aioredis.Redis:
        """Get Redis client."""
        if not self._client:
            raise RuntimeError("Cache not initialized. Call init() first.")
        return self._client

    def _build_key(self, namespace: str, key: str) -> str:
        """
        Build namespaced cache key.

        Format: taskengine:{namespace}:{key}
        Example: taskengine:rl_batch:user_42:batch
        """
        return f"taskengine:{namespace}:{key}"

    async def increment(
        self,
        namespace: str,
        key: str,
        ttl: int | None = None,
    ) -> int:
        """
        Increment a windowed counter.

        The TTL is attached when the counter is created, so the window
        starts at the first hit and is not extended by later ones.

        Returns:
            New counter value
        """
        cache_key = self._build_key(namespace, key)

        try:
            count = await self.client.incr(cache_key)

            if ttl and count == 1:
                await self.client.expire(cache_key, ttl)

            return count

        except Exception as e:
            logger.error(f"Cache increment error: {cache_key} - {e}")
            raise

    async def get_ttl(self, namespace: str, key: str) -> int:
        """Get remaining TTL for a key in seconds."""
        cache_key = self._build_key(namespace, key)

        try:
            return await self.client.ttl(cache_key)
        except Exception as e:
            logger.warning(f"Cache TTL error: {cache_key} - {e}")
            return -1


# Global instance
cache_manager = CacheManager()
