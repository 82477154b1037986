"""Tests for the order sync job pipeline

WHAT: Every job handler of OrderSyncOrchestrator against SQLite, a
      recording queue, a fake storefront and an in-memory Redis
WHY: The fan-out rules (windows, priorities, dedup, retry ceiling) are
     where a regression would silently drop or duplicate orders
REFERENCES:
    - ordersync/workers/order_sync_worker.py
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from pydantic import ValidationError

from ordersync.exceptions import PrimaryHubNotFoundError, TransientSyncError
from ordersync.models import Connection, Order
from ordersync.services.storefront import OrderFilters
from ordersync.workers.jobs import (
    ManualSyncJob,
    ProcessOrderJob,
    RetryFailedOrdersJob,
    ScheduledSyncJob,
    SyncOrdersBatchJob,
    SyncOrdersJob,
)
from ordersync.workers.order_sync_worker import run_order_sync_job
from ordersync.workers.rate_limiter import JobStartLimiter


def _orders(make_order, ids):
    return [make_order(order_id) for order_id in ids]


def _order_count(session_factory):
    db = session_factory()
    try:
        return db.query(Order).count()
    finally:
        db.close()


class _FailingMaterializer:
    def __init__(self, exc):
        self.exc = exc
        self.calls = 0

    def materialize(self, order, workspace_id, shop=None):
        self.calls += 1
        raise self.exc


# ============================================================================
# scheduled-sync / manual-sync
# ============================================================================

def test_scheduled_sync_enqueues_last_24h_per_workspace(make_orchestrator, fixed_now, queue, registry, connection, make_workspace):
    other_workspace = make_workspace()
    registry.save_connection(other_workspace, "other.myshopify.com", "shpat_other")
    orchestrator = make_orchestrator()

    result = asyncio.run(orchestrator.dispatch(ScheduledSyncJob()))

    assert result == {"status": "completed", "workspaces": 2, "enqueued": 2}
    calls = queue.jobs_of("sync-orders")
    assert len(calls) == 2
    assert {call.job.workspace_id for call in calls} == {connection.workspace_id, str(other_workspace)}
    for call in calls:
        assert call.priority == 2
        assert call.job.filters.status == "any"
        assert call.job.filters.limit == 50
        assert call.job.filters.created_at_min == (fixed_now - timedelta(hours=24)).isoformat()
        assert call.job.filters.created_at_max is None


def test_scheduled_sync_spaces_enqueues(make_orchestrator, registry, connection, make_workspace, sleeps):
    for name in ("a", "b"):
        registry.save_connection(make_workspace(name=name), f"{name}.myshopify.com", "shpat_x")

    asyncio.run(make_orchestrator(ENQUEUE_SPACING_SECONDS=0.1).dispatch(ScheduledSyncJob()))

    assert sleeps == [0.1, 0.1]


def test_manual_sync_enqueues_high_priority_sync(make_orchestrator, queue, workspace_id):
    filters = OrderFilters(created_at_min="2025-06-01T00:00:00+00:00")

    result = asyncio.run(make_orchestrator().dispatch(ManualSyncJob(workspace_id=workspace_id, filters=filters)))

    assert result == {"status": "dispatched", "job_id": "job-1"}
    (call,) = queue.calls
    assert isinstance(call.job, SyncOrdersJob)
    assert call.job.workspace_id == str(workspace_id)
    assert call.job.filters == filters
    assert call.priority == 1


# ============================================================================
# sync-orders
# ============================================================================

def test_sync_orders_defaults_to_last_7_days(make_orchestrator, fixed_now, storefront, workspace_id, connection):
    asyncio.run(make_orchestrator().dispatch(SyncOrdersJob(workspace_id=workspace_id)))

    (call,) = storefront.calls
    assert call.connection.shop_domain == "demo-store.myshopify.com"
    assert call.filters.created_at_min == (fixed_now - timedelta(days=7)).isoformat()
    assert call.filters.created_at_max == fixed_now.isoformat()
    assert call.filters.limit == 250


def test_sync_orders_keeps_caller_bounds(make_orchestrator, storefront, workspace_id, connection):
    job = SyncOrdersJob(workspace_id=workspace_id, filters=OrderFilters(created_at_min="2025-06-01T00:00:00Z"))

    asyncio.run(make_orchestrator().dispatch(job))

    filters = storefront.calls[0].filters
    assert filters.created_at_min == "2025-06-01T00:00:00Z"
    assert filters.created_at_max is None


def test_sync_orders_fans_out_batches_of_50(
    make_orchestrator, fixed_now, queue, storefront, status_store, workspace_id, connection, make_order, sleeps
):
    storefront.pages = [(_orders(make_order, range(1, 121)), None)]

    result = asyncio.run(
        make_orchestrator(ENQUEUE_SPACING_SECONDS=0.1).dispatch(SyncOrdersJob(workspace_id=workspace_id))
    )

    batches = queue.jobs_of("sync-orders-batch")
    assert [len(call.job.orders) for call in batches] == [50, 50, 20]
    assert [call.job.batch_index for call in batches] == [0, 1, 2]
    assert all(call.job.total_batches == 3 for call in batches)
    assert all(call.priority == 1 for call in batches)
    assert sleeps == [0.1, 0.1]

    assert result["fetched"] == 120
    assert result["new"] == 120
    assert result["batches"] == 3
    assert result["last_sync"] == fixed_now.isoformat()
    assert asyncio.run(status_store.get_last_sync(workspace_id)) == fixed_now.isoformat()


def test_sync_orders_drops_known_and_repeated_orders(
    make_orchestrator, queue, storefront, session_factory, workspace_id, connection, make_order
):
    orchestrator = make_orchestrator()
    orchestrator.materializer.materialize(make_order(9001), workspace_id, connection)
    storefront.pages = [(_orders(make_order, [9001, 9002, 9002, 9003]), None)]

    result = asyncio.run(orchestrator.dispatch(SyncOrdersJob(workspace_id=workspace_id)))

    (call,) = queue.jobs_of("sync-orders-batch")
    assert [o["id"] for o in call.job.orders] == [9002, 9003]
    assert result["fetched"] == 4
    assert result["new"] == 2
    assert result["skipped"] == 2


def test_sync_orders_follows_page_cursor(make_orchestrator, storefront, workspace_id, connection, make_order):
    storefront.pages = [
        (_orders(make_order, [1, 2]), "cursor-2"),
        (_orders(make_order, [3]), None),
    ]

    result = asyncio.run(make_orchestrator(SYNC_MAX_PAGES=5).dispatch(SyncOrdersJob(workspace_id=workspace_id)))

    assert result["pages"] == 2
    assert result["fetched"] == 3
    second = storefront.calls[1].filters
    assert second.page_info == "cursor-2"
    assert second.to_query_params() == {"limit": 250, "page_info": "cursor-2"}


def test_sync_orders_stops_at_page_limit(make_orchestrator, storefront, workspace_id, connection, make_order):
    storefront.pages = [(_orders(make_order, [1]), "cursor-2"), (_orders(make_order, [2]), None)]

    result = asyncio.run(make_orchestrator().dispatch(SyncOrdersJob(workspace_id=workspace_id)))

    assert result["pages"] == 1
    assert len(storefront.calls) == 1


def test_sync_orders_without_connection_is_discarded(make_orchestrator, queue, storefront, workspace_id):
    result = asyncio.run(make_orchestrator().dispatch(SyncOrdersJob(workspace_id=workspace_id)))

    assert result["status"] == "discarded"
    assert storefront.calls == []
    assert queue.calls == []


def test_sync_orders_failure_marks_connection_and_raises(make_orchestrator, storefront, session_factory, workspace_id, connection):
    async def broken_fetch(connection, filters):
        raise TransientSyncError("Shopify API error: 503")

    storefront.fetch_orders = broken_fetch

    with pytest.raises(TransientSyncError):
        asyncio.run(make_orchestrator().dispatch(SyncOrdersJob(workspace_id=workspace_id)))

    db = session_factory()
    try:
        row = db.get(Connection, uuid.UUID(connection.id))
        assert row.sync_status == "error"
        assert "503" in row.last_sync_error
    finally:
        db.close()


# ============================================================================
# sync-orders-batch
# ============================================================================

def test_batch_counts_add_up_to_total(make_orchestrator, queue, workspace_id, connection, make_order):
    orchestrator = make_orchestrator()
    orchestrator.materializer.materialize(make_order(9001), workspace_id, connection)
    orders = _orders(make_order, [9001, 9002, 9002, 9003])

    result = asyncio.run(orchestrator.dispatch(SyncOrdersBatchJob(workspace_id=workspace_id, orders=orders)))

    assert result == {"synced": 2, "skipped": 2, "errors": 0, "total": 4}
    process_jobs = queue.jobs_of("process-order")
    assert [call.job.order["id"] for call in process_jobs] == [9002, 9003]
    assert all(call.job.retry_count == 0 and call.priority == 1 for call in process_jobs)


def test_batch_enqueue_failures_are_counted(make_orchestrator, make_queue, workspace_id, connection, make_order):

    orchestrator = make_orchestrator()
    orchestrator.queue = make_queue(fail_when=lambda job: job.order["id"] == 9003)
    orders = _orders(make_order, [9001, 9002, 9003])

    result = asyncio.run(orchestrator.dispatch(SyncOrdersBatchJob(workspace_id=workspace_id, orders=orders)))

    assert result == {"synced": 2, "skipped": 0, "errors": 1, "total": 3}
    assert result["synced"] + result["skipped"] + result["errors"] == result["total"]


def test_batch_enqueues_in_groups_of_five(make_orchestrator, queue, workspace_id, connection, make_order, sleeps):
    orders = _orders(make_order, range(1, 13))

    asyncio.run(
        make_orchestrator(ENQUEUE_SPACING_SECONDS=0.1).dispatch(
            SyncOrdersBatchJob(workspace_id=workspace_id, orders=orders)
        )
    )

    assert len(queue.jobs_of("process-order")) == 12
    # 3 groups (5, 5, 2): a pause before each group but the first
    assert sleeps == [0.1, 0.1]


def test_overlapping_batches_create_order_once(make_orchestrator, queue, session_factory, workspace_id, connection, make_order):
    orchestrator = make_orchestrator()

    first = asyncio.run(orchestrator.dispatch(
        SyncOrdersBatchJob(workspace_id=workspace_id, orders=_orders(make_order, [9001, 9002]))
    ))
    for call in list(queue.jobs_of("process-order")):
        asyncio.run(orchestrator.dispatch(call.job))

    second = asyncio.run(orchestrator.dispatch(
        SyncOrdersBatchJob(workspace_id=workspace_id, orders=_orders(make_order, [9002, 9003]))
    ))

    assert first["synced"] == 2
    assert second == {"synced": 1, "skipped": 1, "errors": 0, "total": 2}
    assert _order_count(session_factory) == 2


# ============================================================================
# process-order
# ============================================================================

def test_process_order_materializes(make_orchestrator, session_factory, workspace_id, connection, make_order):
    result = asyncio.run(make_orchestrator().dispatch(ProcessOrderJob(workspace_id=workspace_id, order=make_order(9001))))

    assert result["status"] == "created"
    assert result["external_order_id"] == "9001"
    assert _order_count(session_factory) == 1


def test_process_order_schedules_retry_with_growing_delay(make_orchestrator, queue, status_store, workspace_id, connection, make_order):
    materializer = _FailingMaterializer(TransientSyncError("database busy"))
    orchestrator = make_orchestrator(materializer=materializer)

    result = asyncio.run(orchestrator.dispatch(ProcessOrderJob(workspace_id=workspace_id, order=make_order(9001))))

    assert result["status"] == "retry_scheduled"
    assert result["retry_count"] == 1
    (call,) = queue.calls
    assert call.job.retry_count == 1
    assert call.delay == 30.0
    assert call.priority == 1

    result = asyncio.run(orchestrator.dispatch(call.job))
    assert result["delay"] == 60.0
    assert asyncio.run(status_store.failed_orders_count(workspace_id)) == 0


def test_process_order_parks_order_at_retry_ceiling(make_orchestrator, queue, status_store, workspace_id, connection, make_order):
    materializer = _FailingMaterializer(TransientSyncError("database busy"))
    orchestrator = make_orchestrator(materializer=materializer)

    job = ProcessOrderJob(workspace_id=workspace_id, order=make_order(9001))
    attempts = 0
    with pytest.raises(TransientSyncError):
        while True:
            attempts += 1
            asyncio.run(orchestrator.dispatch(job))
            job = queue.calls[-1].job

    assert attempts == 3
    assert materializer.calls == 3
    assert len(queue.calls) == 2
    parked = asyncio.run(status_store.drain_failed_orders(workspace_id))
    assert [o["id"] for o in parked] == [9001]


def test_process_order_configuration_error_is_not_retried(make_orchestrator, queue, status_store, make_workspace, registry, make_order):
    workspace_id = make_workspace(with_hub=False)
    registry.save_connection(workspace_id, "nohub.myshopify.com", "shpat_x")

    with pytest.raises(PrimaryHubNotFoundError):
        asyncio.run(make_orchestrator().dispatch(ProcessOrderJob(workspace_id=workspace_id, order=make_order(9001))))

    assert queue.calls == []
    assert asyncio.run(status_store.failed_orders_count(workspace_id)) == 1


def test_process_order_without_connection_is_discarded(make_orchestrator, queue, status_store, workspace_id, make_order):
    result = asyncio.run(make_orchestrator().dispatch(ProcessOrderJob(workspace_id=workspace_id, order=make_order(9001))))

    assert result["status"] == "discarded"
    assert queue.calls == []
    assert asyncio.run(status_store.failed_orders_count(workspace_id)) == 0


# ============================================================================
# retry-failed-orders
# ============================================================================

def test_retry_failed_orders_requeues_with_fresh_retries(make_orchestrator, queue, status_store, workspace_id, make_order):
    async def seed():
        await status_store.append_failed_order(workspace_id, make_order(9001))
        await status_store.append_failed_order(workspace_id, make_order(9002))

    asyncio.run(seed())

    result = asyncio.run(make_orchestrator().dispatch(RetryFailedOrdersJob(workspace_id=workspace_id)))

    assert result == {"status": "completed", "requeued": 2}
    assert [call.job.order["id"] for call in queue.calls] == [9001, 9002]
    assert all(call.job.retry_count == 0 for call in queue.calls)
    assert asyncio.run(status_store.failed_orders_count(workspace_id)) == 0


def test_retry_failed_orders_puts_back_unqueued_orders(make_orchestrator, make_queue, status_store, workspace_id, make_order):

    async def seed():
        for order_id in (9001, 9002, 9003):
            await status_store.append_failed_order(workspace_id, make_order(order_id))

    asyncio.run(seed())
    orchestrator = make_orchestrator()
    orchestrator.queue = make_queue(fail_when=lambda job: job.order["id"] == 9002)

    with pytest.raises(ConnectionError):
        asyncio.run(orchestrator.dispatch(RetryFailedOrdersJob(workspace_id=workspace_id)))

    remaining = asyncio.run(status_store.drain_failed_orders(workspace_id))
    assert [o["id"] for o in remaining] == [9002, 9003]


# ============================================================================
# ARQ entry point
# ============================================================================

def test_run_order_sync_job_parses_and_dispatches(make_orchestrator, queue, workspace_id):
    ctx = {"orchestrator": make_orchestrator(), "limiter": JobStartLimiter(None), "job_try": 1}

    result = asyncio.run(run_order_sync_job(ctx, {"type": "manual-sync", "workspace_id": str(workspace_id)}))

    assert result["status"] == "dispatched"
    assert queue.calls[0].job.type == "sync-orders"


def test_run_order_sync_job_rejects_unknown_type(make_orchestrator):
    ctx = {"orchestrator": make_orchestrator()}

    with pytest.raises(ValidationError):
        asyncio.run(run_order_sync_job(ctx, {"type": "sync-products", "workspace_id": "ws"}))


def test_dispatch_rejects_unregistered_payload(make_orchestrator):
    with pytest.raises(TypeError):
        asyncio.run(make_orchestrator().dispatch(OrderFilters()))
