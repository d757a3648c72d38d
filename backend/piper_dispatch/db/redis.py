"""
Redis client for send rate limiting and the Celery broker.
Provides async Redis connection with connection pooling.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis

from piper_dispatch.core.config import settings


class RedisClient:
    """Async Redis client wrapper with connection pooling."""

    def __init__(self):
        self._client: Optional[aioredis.Redis] = None

    async def _get_client(self) -> aioredis.Redis:
        """Get or create Redis client with connection pool."""
        if self._client is None:
            self._client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
        return self._client

    async def incr_with_expiry(self, key: str, seconds: int) -> int:
        """Increment a counter and set its TTL in one round trip."""
        client = await self._get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def close(self):
        """Close the Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            client = await self._get_client()
            return await client.ping()
        except Exception:
            return False


# Singleton instance
redis_client = RedisClient()
