"""
Job Start Rate Limiter
======================

Caps how many order sync jobs may START per time window across all
workers sharing one Redis.

WHY THIS FILE EXISTS
--------------------
A scheduled sweep fans out sync-orders, then batch, then process-order
jobs for every connected workspace at once. ARQ bounds concurrency
(max_jobs) but not throughput, so without this limiter a burst of short
jobs would hammer Shopify and the database.

HOW
---
Sliding window over a Redis sorted set (score = start timestamp):
- Key: "order_sync:job_starts"
- A start is recorded first, then the window is counted; if the window
  is over the limit the start is withdrawn and the caller waits until
  the oldest entry leaves the window.

Recording before counting means concurrent workers can only
under-admit, never over-admit.

RELATED FILES
-------------
- ordersync/workers/order_sync_worker.py: awaits `acquire()` before each job
"""

import asyncio
import logging
import time
import uuid
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY = "order_sync:job_starts"


class JobStartLimiter:
    """
    Redis-backed sliding window limiter for job starts.

    USAGE:
        limiter = JobStartLimiter(redis, limit=10, window_seconds=1.0)
        await limiter.acquire()   # waits until a slot is free
    """

    def __init__(
        self,
        redis: Optional[Redis],
        limit: int = 10,
        window_seconds: float = 1.0,
        key: str = RATE_LIMIT_KEY,
    ):
        self.redis = redis
        self.limit = limit
        self.window_seconds = window_seconds
        self.key = key

    @property
    def enabled(self) -> bool:
        return self.redis is not None and self.limit > 0

    async def try_acquire(self) -> float:
        """Try to take a slot.

        Returns:
            0.0 when a slot was taken, otherwise seconds to wait before retrying.
        """
        if not self.enabled:
            return 0.0

        now = time.time()
        member = f"{now}:{uuid.uuid4().hex}"

        await self.redis.zremrangebyscore(self.key, "-inf", now - self.window_seconds)
        await self.redis.zadd(self.key, {member: now})
        count = await self.redis.zcard(self.key)

        if count <= self.limit:
            await self.redis.expire(self.key, max(1, int(self.window_seconds * 2)))
            return 0.0

        await self.redis.zrem(self.key, member)
        oldest = await self.redis.zrange(self.key, 0, 0, withscores=True)
        if not oldest:
            return self.window_seconds
        oldest_score = float(oldest[0][1])
        return max(0.01, oldest_score + self.window_seconds - now)

    async def acquire(self) -> None:
        """Wait until the job may start."""
        while True:
            wait = await self.try_acquire()
            if wait <= 0:
                return
            logger.debug("[RATE_LIMIT] Job start throttled, waiting %.3fs", wait)
            await asyncio.sleep(wait)
