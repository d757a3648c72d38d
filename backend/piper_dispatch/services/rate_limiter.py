"""
Redis-backed per-second send limiter.

A fixed one-second window counter shared by every worker sending campaigns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from piper_dispatch.core.config import settings
from piper_dispatch.db.redis import RedisClient, redis_client

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "piper:send_rate"


class SendRateLimiter:
    """Blocks callers until a send slot is free in the current second.

    A limit of 0 disables limiting entirely.
    """

    def __init__(
        self,
        limit_per_second: Optional[int] = None,
        client: Optional[RedisClient] = None,
        key_prefix: str = RATE_LIMIT_KEY_PREFIX,
    ):
        self.limit_per_second = (
            settings.send_rate_limit_per_second if limit_per_second is None else limit_per_second
        )
        self._client = client or redis_client
        self._key_prefix = key_prefix

    @property
    def enabled(self) -> bool:
        return self.limit_per_second > 0

    async def acquire(self) -> None:
        if not self.enabled:
            return
        while True:
            now = time.time()
            window = int(now)
            count = await self._client.incr_with_expiry(f"{self._key_prefix}:{window}", 2)
            if count <= self.limit_per_second:
                return
            logger.debug("Send rate limit reached (%s/s), waiting", self.limit_per_second)
            await asyncio.sleep(max(window + 1 - now, 0.01))
