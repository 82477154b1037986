"""ARQ order sync worker - Shopify order pipeline.

WHAT:
    Job-queue driven state machine that pulls Shopify orders into the
    local order model:

        scheduled-sync ──▶ sync-orders (per workspace, last 24h)
        manual-sync    ──▶ sync-orders (caller filters, higher priority)
        sync-orders    ──▶ fetch page(s) ─▶ dedup ─▶ sync-orders-batch x N
        sync-orders-batch ─▶ dedup again ─▶ process-order x M (5 at a time)
        process-order  ──▶ OrderMaterializer (one transaction)
                           on failure: re-enqueue after base*retry_count
                           at the ceiling: park in the failed list
        retry-failed-orders ─▶ drain failed list ─▶ process-order x K

WHY:
    - Each stage is its own job so one slow shop or one bad order never
      blocks the rest of a sweep
    - Every job type has a payload model and a handler in one table;
      the ARQ entry point only parses and dispatches
    - Dependencies (queue, storage, storefront, status store) are passed
      in, so the whole state machine runs in tests without Redis

USAGE:
    # Start worker
    arq ordersync.workers.order_sync_worker.WorkerSettings

    # Or use the start script
    python -m ordersync.workers.start_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - ordersync/services/order_materializer.py
    - ordersync/services/dedup.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from ordersync.database import SessionLocal
from ordersync.deps import Settings, get_settings
from ordersync.exceptions import ConfigurationError, ConnectionNotFoundError
from ordersync.models import ChannelEnum
from ordersync.services.connection_service import ConnectionRegistry
from ordersync.services.dedup import DedupIndex, chunked, external_id, unique_by_id
from ordersync.services.order_materializer import OrderMaterializer
from ordersync.services.storefront import OrderFilters, ShopifyStorefront, StorefrontClient
from ordersync.services.sync_status import SyncStatusStore
from ordersync.telemetry import capture_exception, capture_message, init_sentry
from ordersync.workers.arq_enqueue import get_redis_settings
from ordersync.workers.job_queue import ArqJobQueue, JobQueue, recurring
from ordersync.workers.jobs import (
    ManualSyncJob,
    ProcessOrderJob,
    RetryFailedOrdersJob,
    ScheduledSyncJob,
    SyncJob,
    SyncOrdersBatchJob,
    SyncOrdersJob,
    parse_job,
)
from ordersync.workers.rate_limiter import JobStartLimiter

logger = logging.getLogger(__name__)

# Lower number = runs first (see job_queue.defer_seconds)
PRIORITY_HIGH = 1
PRIORITY_SCHEDULED = 2


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class OrderSyncOrchestrator:
    """Handlers for every order sync job type.

    Usage:
        orchestrator = OrderSyncOrchestrator(
            queue=ArqJobQueue(pool),
            session_factory=SessionLocal,
            storefront=ShopifyStorefront(),
            status_store=SyncStatusStore(pool),
        )
        await orchestrator.dispatch(parse_job(envelope))
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        session_factory,
        storefront: StorefrontClient,
        status_store: SyncStatusStore,
        registry: Optional[ConnectionRegistry] = None,
        dedup: Optional[DedupIndex] = None,
        materializer: Optional[OrderMaterializer] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings or get_settings()
        self.queue = queue
        self.storefront = storefront
        self.status_store = status_store
        self.registry = registry or ConnectionRegistry(session_factory)
        self.dedup = dedup or DedupIndex(session_factory)
        self.materializer = materializer or OrderMaterializer(
            session_factory,
            timeout_seconds=self.settings.MATERIALIZE_TIMEOUT_SECONDS,
        )
        self._sleep = sleep
        self._clock = clock

        self._handlers: Dict[type, Callable[[Any], Awaitable[Dict[str, Any]]]] = {
            ScheduledSyncJob: self.handle_scheduled_sync,
            ManualSyncJob: self.handle_manual_sync,
            SyncOrdersJob: self.handle_sync_orders,
            SyncOrdersBatchJob: self.handle_sync_orders_batch,
            ProcessOrderJob: self.handle_process_order,
            RetryFailedOrdersJob: self.handle_retry_failed_orders,
        }

    async def dispatch(self, job: SyncJob) -> Dict[str, Any]:
        """Run the handler registered for the job's payload class.

        A missing connection ends the job quietly: the workspace
        disconnected and there is nothing left to sync or retry.
        """
        handler = self._handlers.get(type(job))
        if handler is None:
            raise TypeError(f"No handler registered for {type(job).__name__}")

        try:
            return await handler(job)
        except ConnectionNotFoundError as e:
            logger.warning("[ORDER_SYNC] Discarding %s job: %s", job.type, e)
            return {"status": "discarded", "type": job.type, "reason": str(e)}

    async def _pause(self, index: int) -> None:
        """Spread successive enqueues; no pause before the first one."""
        if index and self.settings.ENQUEUE_SPACING_SECONDS > 0:
            await self._sleep(self.settings.ENQUEUE_SPACING_SECONDS)

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    async def handle_scheduled_sync(self, job: ScheduledSyncJob) -> Dict[str, Any]:
        """Fan out one sync-orders job per connected workspace (last 24h)."""
        connections = await asyncio.to_thread(self.registry.list_active_connections)
        created_at_min = (
            self._clock() - timedelta(hours=self.settings.SCHEDULED_SYNC_WINDOW_HOURS)
        ).isoformat()

        logger.info("[ORDER_SYNC] Scheduled sync: %d connected workspaces", len(connections))

        enqueued = 0
        for index, connection in enumerate(connections):
            await self._pause(index)
            await self.queue.enqueue(
                SyncOrdersJob(
                    workspace_id=connection.workspace_id,
                    filters=OrderFilters(
                        status="any",
                        limit=self.settings.SCHEDULED_SYNC_LIMIT,
                        created_at_min=created_at_min,
                    ),
                ),
                priority=PRIORITY_SCHEDULED,
            )
            enqueued += 1

        return {"status": "completed", "workspaces": len(connections), "enqueued": enqueued}

    async def handle_manual_sync(self, job: ManualSyncJob) -> Dict[str, Any]:
        job_id = await self.queue.enqueue(
            SyncOrdersJob(workspace_id=job.workspace_id, filters=job.filters),
            priority=PRIORITY_HIGH,
        )
        logger.info("[ORDER_SYNC] Manual sync dispatched for workspace %s (job=%s)", job.workspace_id, job_id)
        return {"status": "dispatched", "job_id": job_id}

    # =========================================================================
    # SYNC-ORDERS
    # =========================================================================

    def _effective_filters(self, filters: OrderFilters) -> OrderFilters:
        """Cap the page size and default an unbounded query to the last 7 days."""
        update: Dict[str, Any] = {"limit": min(filters.limit, self.settings.SYNC_PAGE_LIMIT)}
        if not filters.has_date_bounds() and not filters.page_info:
            now = self._clock()
            update["created_at_min"] = (now - timedelta(days=self.settings.DEFAULT_SYNC_WINDOW_DAYS)).isoformat()
            update["created_at_max"] = now.isoformat()
        return filters.model_copy(update=update)

    async def handle_sync_orders(self, job: SyncOrdersJob) -> Dict[str, Any]:
        """Fetch orders, drop known ones, enqueue batch jobs."""
        workspace_id = job.workspace_id
        connection = await asyncio.to_thread(self.registry.get_active_connection, workspace_id)
        filters = self._effective_filters(job.filters)

        await asyncio.to_thread(self.registry.mark_sync_started, connection.id)
        try:
            orders = []
            pages = 0
            page_filters = filters
            while True:
                page = await self.storefront.fetch_orders(connection, page_filters)
                pages += 1
                orders.extend(page.orders)
                if not page.next_page_info or pages >= self.settings.SYNC_MAX_PAGES:
                    break
                page_filters = OrderFilters(limit=filters.limit, page_info=page.next_page_info)

            unique_orders, duplicates = unique_by_id(orders)
            new_ids = await asyncio.to_thread(
                self.dedup.filter_new,
                workspace_id,
                ChannelEnum.shopify,
                [external_id(order) for order in unique_orders],
            )
            new_orders = [order for order in unique_orders if external_id(order) in new_ids]
            batches = chunked(new_orders, self.settings.SYNC_BATCH_SIZE)

            for index, batch in enumerate(batches):
                await self._pause(index)
                await self.queue.enqueue(
                    SyncOrdersBatchJob(
                        workspace_id=workspace_id,
                        orders=batch,
                        batch_index=index,
                        total_batches=len(batches),
                    ),
                    priority=PRIORITY_HIGH,
                )

            last_sync = await self.status_store.set_last_sync(workspace_id, self._clock())
        except Exception as e:
            logger.error("[ORDER_SYNC] sync-orders failed for workspace %s: %s", workspace_id, e)
            capture_exception(e, extra={"job_type": job.type, "workspace_id": workspace_id})
            await asyncio.to_thread(self.registry.mark_sync_finished, connection.id, str(e))
            raise

        await asyncio.to_thread(self.registry.mark_sync_finished, connection.id)

        logger.info(
            "[ORDER_SYNC] Workspace %s: fetched=%d new=%d existing=%d duplicates=%d batches=%d pages=%d",
            workspace_id,
            len(orders),
            len(new_orders),
            len(unique_orders) - len(new_orders),
            duplicates,
            len(batches),
            pages,
        )
        return {
            "status": "completed",
            "fetched": len(orders),
            "new": len(new_orders),
            "skipped": len(orders) - len(new_orders),
            "batches": len(batches),
            "pages": pages,
            "last_sync": last_sync,
        }

    # =========================================================================
    # SYNC-ORDERS-BATCH
    # =========================================================================

    async def handle_sync_orders_batch(self, job: SyncOrdersBatchJob) -> Dict[str, Any]:
        """Re-check dedup for the batch, then fan out process-order jobs.

        Returns synced/skipped/errors/total with synced+skipped+errors == total.
        """
        workspace_id = job.workspace_id
        unique_orders, duplicates = unique_by_id(job.orders)
        new_ids = await asyncio.to_thread(
            self.dedup.filter_new,
            workspace_id,
            ChannelEnum.shopify,
            [external_id(order) for order in unique_orders],
        )
        to_process = [order for order in unique_orders if external_id(order) in new_ids]

        synced = 0
        errors = 0
        skipped = duplicates + (len(unique_orders) - len(to_process))

        for index, group in enumerate(chunked(to_process, self.settings.PROCESS_ORDER_CONCURRENCY)):
            await self._pause(index)
            results = await asyncio.gather(
                *(
                    self.queue.enqueue(
                        ProcessOrderJob(workspace_id=workspace_id, order=order),
                        priority=PRIORITY_HIGH,
                    )
                    for order in group
                ),
                return_exceptions=True,
            )
            for order, result in zip(group, results):
                if isinstance(result, Exception):
                    errors += 1
                    logger.error(
                        "[ORDER_SYNC] Failed to enqueue order %s (workspace=%s): %s",
                        external_id(order),
                        workspace_id,
                        result,
                    )
                    capture_exception(result, extra={
                        "job_type": job.type,
                        "workspace_id": workspace_id,
                        "order_id": external_id(order),
                    })
                elif isinstance(result, BaseException):
                    raise result
                else:
                    synced += 1

        logger.info(
            "[ORDER_SYNC] Batch %d/%d for workspace %s: synced=%d skipped=%d errors=%d",
            job.batch_index + 1,
            job.total_batches,
            workspace_id,
            synced,
            skipped,
            errors,
        )
        return {"synced": synced, "skipped": skipped, "errors": errors, "total": len(job.orders)}

    # =========================================================================
    # PROCESS-ORDER
    # =========================================================================

    async def handle_process_order(self, job: ProcessOrderJob) -> Dict[str, Any]:
        """Materialize one order, retrying with growing delay up to the ceiling."""
        workspace_id = job.workspace_id
        order_id = external_id(job.order)

        connection = await asyncio.to_thread(self.registry.get_active_connection, workspace_id)

        try:
            result = await asyncio.to_thread(self.materializer.materialize, job.order, workspace_id, connection)
        except ConfigurationError as e:
            logger.error("[ORDER_SYNC] Order %s cannot be materialized: %s", order_id, e)
            capture_exception(e, extra={"job_type": job.type, "workspace_id": workspace_id, "order_id": order_id})
            await self.status_store.append_failed_order(workspace_id, job.order)
            raise
        except Exception as e:
            retry_count = job.retry_count + 1
            capture_exception(e, extra={
                "job_type": job.type,
                "workspace_id": workspace_id,
                "order_id": order_id,
                "retry_count": retry_count,
            })

            if retry_count < self.settings.PROCESS_ORDER_MAX_RETRIES:
                delay = self.settings.PROCESS_ORDER_RETRY_BASE_SECONDS * retry_count
                logger.warning(
                    "[ORDER_SYNC] Order %s failed (attempt %d), retrying in %.0fs: %s",
                    order_id,
                    retry_count,
                    delay,
                    e,
                )
                await self.queue.enqueue(
                    ProcessOrderJob(workspace_id=workspace_id, order=job.order, retry_count=retry_count),
                    priority=PRIORITY_HIGH,
                    delay=delay,
                )
                return {"status": "retry_scheduled", "order_id": order_id, "retry_count": retry_count, "delay": delay}

            logger.error(
                "[ORDER_SYNC] Order %s failed %d times, moving to failed list: %s",
                order_id,
                retry_count,
                e,
            )
            await self.status_store.append_failed_order(workspace_id, job.order)
            capture_message(
                f"Order {order_id} moved to failed list after {retry_count} attempts",
                level="warning",
                extra={"workspace_id": workspace_id, "order_id": order_id},
            )
            raise

        return {"status": result.action.value, "order_id": result.order_id, "external_order_id": order_id}

    # =========================================================================
    # RETRY-FAILED-ORDERS
    # =========================================================================

    async def handle_retry_failed_orders(self, job: RetryFailedOrdersJob) -> Dict[str, Any]:
        """Drain the failed list and give every order a fresh set of retries."""
        workspace_id = job.workspace_id
        orders = await self.status_store.drain_failed_orders(workspace_id)

        requeued = 0
        try:
            for index, order in enumerate(orders):
                await self._pause(index)
                await self.queue.enqueue(
                    ProcessOrderJob(workspace_id=workspace_id, order=order, retry_count=0),
                    priority=PRIORITY_HIGH,
                )
                requeued += 1
        except Exception:
            # Put back what was drained but not re-enqueued
            for order in orders[requeued:]:
                await self.status_store.append_failed_order(workspace_id, order)
            raise

        logger.info("[ORDER_SYNC] Re-enqueued %d failed orders for workspace %s", requeued, workspace_id)
        return {"status": "completed", "requeued": requeued}


# =============================================================================
# ARQ ENTRY POINT
# =============================================================================

async def run_order_sync_job(ctx: Dict, envelope: Dict[str, Any]) -> Dict[str, Any]:
    """Single ARQ function for every order sync job type."""
    job = parse_job(envelope)

    limiter: Optional[JobStartLimiter] = ctx.get("limiter")
    if limiter is not None:
        await limiter.acquire()

    orchestrator: OrderSyncOrchestrator = ctx["orchestrator"]
    logger.debug("[ARQ] Running %s (try=%s)", job.type, ctx.get("job_try"))
    return await orchestrator.dispatch(job)


async def startup(ctx: Dict) -> None:
    """Worker startup - build the orchestrator from the worker's Redis pool."""
    import platform

    settings = get_settings()
    init_sentry()

    redis = ctx["redis"]
    ctx["orchestrator"] = OrderSyncOrchestrator(
        queue=ArqJobQueue(redis, queue_name=settings.ORDER_SYNC_QUEUE),
        session_factory=SessionLocal,
        storefront=ShopifyStorefront(api_version=settings.SHOPIFY_API_VERSION),
        status_store=SyncStatusStore(redis),
        settings=settings,
    )
    ctx["limiter"] = JobStartLimiter(
        redis,
        limit=settings.JOB_START_RATE_LIMIT,
        window_seconds=settings.JOB_START_RATE_WINDOW_SECONDS,
    )
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0

    logger.info("=" * 60)
    logger.info("[ARQ] Order sync worker starting up")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {settings.ORDER_SYNC_QUEUE}")
    logger.info(f"[ARQ] Max concurrent jobs: {settings.WORKER_MAX_JOBS}")
    logger.info(f"[ARQ] Job starts: {settings.JOB_START_RATE_LIMIT}/{settings.JOB_START_RATE_WINDOW_SECONDS}s")
    logger.info(f"[ARQ] Scheduled sync: {settings.SCHEDULED_SYNC_CRON}")
    logger.info("=" * 60)


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Order sync worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

_settings = get_settings()


class WorkerSettings:
    """ARQ worker configuration for the order sync queue.

    - max_jobs=3: at most 3 sync jobs run at once per worker
    - retry_jobs=False / max_tries=1: process-order schedules its own
      retries with growing delays; ARQ must not retry on top of that
    - cron_jobs: the scheduled sweep every 10 minutes
    """

    functions = [run_order_sync_job]

    cron_jobs = [
        recurring(ScheduledSyncJob(), _settings.SCHEDULED_SYNC_CRON, run_order_sync_job),
    ]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings(_settings.REDIS_URL)

    max_jobs = _settings.WORKER_MAX_JOBS
    job_timeout = _settings.JOB_TIMEOUT_SECONDS
    keep_result = 3600
    retry_jobs = False
    max_tries = 1
    health_check_interval = 30

    queue_name = _settings.ORDER_SYNC_QUEUE
