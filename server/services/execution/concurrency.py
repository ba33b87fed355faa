"""Per-tenant concurrency slots.

Redis mode keeps a sorted set of slot holders per owner, scored by lease
expiry, and admits through one atomic Lua script. Memory mode uses an
asyncio.Condition. Slots are keyed by execution id, so a redelivered job
re-enters the slot it already holds instead of taking a second one.
"""

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Set

from redis.exceptions import RedisError

from core.cache import CacheService
from core.logging import get_logger
from .errors import InfrastructureFault

logger = get_logger(__name__)

SLOT_KEY = "concurrency:{owner_id}"

# KEYS[1] = holder set; ARGV = holder, limit, now, lease expiry, ttl seconds
ACQUIRE_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[3])
if redis.call('ZSCORE', KEYS[1], ARGV[1]) then
    redis.call('ZADD', KEYS[1], ARGV[4], ARGV[1])
    return 1
end
if redis.call('ZCARD', KEYS[1]) < tonumber(ARGV[2]) then
    redis.call('ZADD', KEYS[1], ARGV[4], ARGV[1])
    redis.call('EXPIRE', KEYS[1], ARGV[5])
    return 1
end
return 0
"""


class TenantConcurrencyLimiter:
    """Bounds how many executions of one owner run at the same time."""

    def __init__(self, cache: CacheService, lease_seconds: int = 900,
                 poll_interval: float = 0.25):
        self.cache = cache
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self._holders: Dict[str, Set[str]] = defaultdict(set)
        self._condition = asyncio.Condition()
        self._acquire_script = None

    # =========================================================================
    # Redis backend
    # =========================================================================

    async def _try_acquire_redis(self, owner_id: str, holder_id: str, limit: int) -> bool:
        if self._acquire_script is None:
            self._acquire_script = self.cache.redis.register_script(ACQUIRE_SCRIPT)
        now = time.time()
        try:
            acquired = await self._acquire_script(
                keys=[SLOT_KEY.format(owner_id=owner_id)],
                args=[holder_id, limit, now, now + self.lease_seconds, self.lease_seconds * 2],
            )
        except RedisError as e:
            raise InfrastructureFault(f"Concurrency slot unavailable: {e}") from e
        return bool(acquired)

    async def _release_redis(self, owner_id: str, holder_id: str) -> None:
        try:
            await self.cache.redis.zrem(SLOT_KEY.format(owner_id=owner_id), holder_id)
        except RedisError as e:
            # Lease expiry reclaims the slot
            logger.warning("Failed to release concurrency slot", owner_id=owner_id,
                           holder_id=holder_id, error=str(e))

    # =========================================================================
    # Public API
    # =========================================================================

    async def acquire(self, owner_id: str, holder_id: str, limit: int) -> None:
        """Wait until ``holder_id`` holds one of ``limit`` slots for ``owner_id``."""
        if self.cache.is_redis_available():
            waited = False
            while not await self._try_acquire_redis(owner_id, holder_id, limit):
                if not waited:
                    logger.info("Waiting for concurrency slot", owner_id=owner_id, limit=limit)
                    waited = True
                await asyncio.sleep(self.poll_interval)
            return

        async with self._condition:
            holders = self._holders[owner_id]
            if holder_id not in holders and len(holders) >= limit:
                logger.info("Waiting for concurrency slot", owner_id=owner_id, limit=limit)
            await self._condition.wait_for(
                lambda: holder_id in holders or len(holders) < limit
            )
            holders.add(holder_id)

    async def release(self, owner_id: str, holder_id: str) -> None:
        if self.cache.is_redis_available():
            await self._release_redis(owner_id, holder_id)
            return

        async with self._condition:
            self._holders[owner_id].discard(holder_id)
            self._condition.notify_all()

    @asynccontextmanager
    async def slot(self, owner_id: str, holder_id: str, limit: int):
        await self.acquire(owner_id, holder_id, limit)
        try:
            yield
        finally:
            await self.release(owner_id, holder_id)

    async def renew(self, owner_id: str, holder_id: str) -> None:
        """Extend the lease of a held slot; memory slots never expire."""
        if not self.cache.is_redis_available():
            return
        try:
            await self.cache.redis.zadd(SLOT_KEY.format(owner_id=owner_id),
                                        {holder_id: time.time() + self.lease_seconds}, xx=True)
        except RedisError as e:
            logger.warning("Failed to renew concurrency slot", owner_id=owner_id,
                           holder_id=holder_id, error=str(e))

    async def is_held(self, owner_id: str, holder_id: str) -> bool:
        """True while ``holder_id`` holds a slot whose lease has not expired."""
        if self.cache.is_redis_available():
            score = await self.cache.redis.zscore(SLOT_KEY.format(owner_id=owner_id), holder_id)
            return score is not None and float(score) > time.time()
        return holder_id in self._holders.get(owner_id, ())

    async def active(self, owner_id: str) -> int:
        """Number of slots currently held by ``owner_id``."""
        if self.cache.is_redis_available():
            key = SLOT_KEY.format(owner_id=owner_id)
            await self.cache.redis.zremrangebyscore(key, "-inf", time.time())
            return int(await self.cache.redis.zcard(key))
        return len(self._holders.get(owner_id, ()))
