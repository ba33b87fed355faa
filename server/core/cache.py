"""Shared-state connection: Redis when enabled, in-process otherwise.

The job queue and the per-tenant concurrency limiter pick their backend from
``CacheService.is_redis_available()``; with Redis disabled both run in memory,
which is sufficient for a single-process deployment.
"""

from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.config import Settings
from core.logging import get_logger

logger = get_logger(__name__)


class CacheService:
    """Async Redis connection holder with an in-memory fallback mode."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)

    async def startup(self):
        """Initialize cache connection."""
        if not self.use_redis:
            logger.info("Using in-memory shared state", redis_enabled=self.settings.redis_enabled)
            return

        try:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
            await self.redis.ping()
            logger.info("Redis cache initialized", url=self.settings.redis_url)

        except (RedisError, OSError) as e:
            logger.warning("Redis connection failed, falling back to memory", error=str(e))
            self.use_redis = False
            self.redis = None

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

    async def ping(self) -> bool:
        if not self.redis:
            return False
        try:
            return bool(await self.redis.ping())
        except (RedisError, OSError):
            return False

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None
