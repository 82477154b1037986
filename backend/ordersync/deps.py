"""Dependency providers and settings management."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis / ARQ
    REDIS_URL: str = "redis://localhost:6379/0"
    ORDER_SYNC_QUEUE: str = "arq:order-sync"

    # Shopify
    SHOPIFY_API_VERSION: str = "2024-07"

    # sync-orders
    SYNC_PAGE_LIMIT: int = 250           # Shopify REST max page size
    SYNC_MAX_PAGES: int = 1              # Pages followed per sync-orders job (1 = single page)
    SYNC_BATCH_SIZE: int = 50
    DEFAULT_SYNC_WINDOW_DAYS: int = 7    # Used when caller gives no date bounds
    ENQUEUE_SPACING_SECONDS: float = 0.1

    # scheduled-sync
    SCHEDULED_SYNC_CRON: str = "*/10 * * * *"
    SCHEDULED_SYNC_WINDOW_HOURS: int = 24
    SCHEDULED_SYNC_LIMIT: int = 50

    # process-order
    PROCESS_ORDER_CONCURRENCY: int = 5
    PROCESS_ORDER_MAX_RETRIES: int = 3
    PROCESS_ORDER_RETRY_BASE_SECONDS: float = 30.0
    MATERIALIZE_TIMEOUT_SECONDS: float = 10.0

    # Worker
    WORKER_MAX_JOBS: int = 3
    JOB_START_RATE_LIMIT: int = 10
    JOB_START_RATE_WINDOW_SECONDS: float = 1.0
    JOB_TIMEOUT_SECONDS: int = 300

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


async def get_job_queue():
    """FastAPI dependency returning the ARQ-backed job queue."""
    from ordersync.workers.arq_enqueue import get_arq_pool
    from ordersync.workers.job_queue import ArqJobQueue

    pool = await get_arq_pool()
    return ArqJobQueue(pool, queue_name=get_settings().ORDER_SYNC_QUEUE)


async def get_status_store():
    """FastAPI dependency returning the Redis sync status store."""
    from ordersync.services.sync_status import SyncStatusStore
    from ordersync.workers.arq_enqueue import get_arq_pool

    # ArqRedis is a redis.asyncio.Redis subclass; reuse its connection pool
    pool = await get_arq_pool()
    return SyncStatusStore(pool)
