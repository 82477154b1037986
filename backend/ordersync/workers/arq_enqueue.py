"""Redis connection for the order sync queue.

WHAT:
    - get_redis_settings(): REDIS_URL -> arq RedisSettings (worker + API)
    - get_arq_pool() / reset_arq_pool(): the API process's shared pool,
      used for manual-sync and retry enqueues and for the sync status keys

USAGE:
    from ordersync.workers.arq_enqueue import get_arq_pool

    pool = await get_arq_pool()
"""

from __future__ import annotations

import logging
import os
from typing import Optional
from urllib.parse import urlparse

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379"

_pool: Optional[ArqRedis] = None


def get_redis_settings(redis_url: Optional[str] = None) -> RedisSettings:
    """Translate a redis:// or rediss:// URL (optional auth and /db) into RedisSettings."""
    url = urlparse(redis_url or os.getenv("REDIS_URL", DEFAULT_REDIS_URL))
    tls = url.scheme == "rediss"
    db_path = (url.path or "").strip("/")

    settings = RedisSettings(
        host=url.hostname or "localhost",
        port=url.port or 6379,
        username=url.username or None,
        password=url.password,
        database=int(db_path) if db_path else 0,
        ssl=tls,
        # Managed TLS endpoints present certs the worker image cannot verify
        ssl_cert_reqs="none" if tls else "required",
        conn_timeout=30,
        conn_retries=5,
        conn_retry_delay=1,
    )
    logger.info(
        "[ARQ] Order sync Redis at %s:%s db=%s tls=%s",
        settings.host, settings.port, settings.database, tls,
    )
    return settings


async def get_arq_pool() -> ArqRedis:
    """Return the process-wide pool, connecting on first use."""
    global _pool
    if _pool is None:
        _pool = await create_pool(get_redis_settings())
        logger.info("[ARQ] Order sync pool connected")
    return _pool


async def reset_arq_pool() -> None:
    """Close the process-wide pool; the next get_arq_pool() reconnects."""
    global _pool
    if _pool is None:
        return
    await _pool.close()
    _pool = None
    logger.info("[ARQ] Order sync pool closed")
