"""Order sync trigger endpoints.

WHAT:
    Thin HTTP layer over the order sync queue:
    - POST /sync/{workspace_id}          enqueue manual-sync
    - GET  /sync/{workspace_id}/status   last sync time, failed count, recent orders
    - POST /sync/{workspace_id}/retry    enqueue retry-failed-orders

WHY:
    - Routers only validate and enqueue; all work happens in the worker
    - Failures return a stable message plus an `error` string, never a trace

REFERENCES:
    - ordersync/workers/order_sync_worker.py
    - ordersync/services/sync_status.py
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ordersync.database import get_db
from ordersync.deps import get_job_queue, get_status_store
from ordersync.models import ChannelEnum, Connection, Order, ProviderEnum
from ordersync.services.storefront import OrderFilters
from ordersync.services.sync_status import SyncStatusStore
from ordersync.telemetry import capture_exception
from ordersync.workers.job_queue import JobQueue
from ordersync.workers.jobs import ManualSyncJob, RetryFailedOrdersJob

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================

class ManualSyncRequest(BaseModel):
    """Optional filters for a manual sync (defaults: any status, last 7 days)."""

    status: str = Field(default="any", description="Shopify order status filter")
    created_at_min: Optional[datetime] = Field(default=None, description="Only orders created at/after this time")
    created_at_max: Optional[datetime] = Field(default=None, description="Only orders created at/before this time")
    limit: int = Field(default=250, ge=1, le=250, description="Page size")

    def to_filters(self) -> OrderFilters:
        return OrderFilters(
            status=self.status,
            created_at_min=self.created_at_min.isoformat() if self.created_at_min else None,
            created_at_max=self.created_at_max.isoformat() if self.created_at_max else None,
            limit=self.limit,
        )


class SyncTriggerResponse(BaseModel):
    success: bool
    message: str
    job_id: Optional[str] = None


class RecentOrder(BaseModel):
    id: str
    code: str
    order_number: str
    channel_order_id: str
    payment_method: str
    total_amount: float
    created_at: Optional[datetime] = None


class SyncStatusResponse(BaseModel):
    has_connection: bool
    last_sync_time: Optional[str] = None
    failed_orders_count: int = 0
    recent_orders: List[RecentOrder] = Field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================

def _has_active_connection(db: Session, workspace_id: UUID) -> bool:
    return db.query(Connection.id).filter(
        Connection.workspace_id == workspace_id,
        Connection.provider == ProviderEnum.shopify,
        Connection.status == "active",
    ).first() is not None


def _require_connection(db: Session, workspace_id: UUID) -> None:
    if not _has_active_connection(db, workspace_id):
        raise HTTPException(
            status_code=400,
            detail={"success": False, "message": "Shopify is not connected for this workspace"},
        )


def _failure(message: str, exc: Exception, workspace_id: UUID) -> HTTPException:
    logger.error("[ORDER_SYNC_API] %s (workspace=%s): %s", message, workspace_id, exc)
    capture_exception(exc, extra={"workspace_id": str(workspace_id)})
    return HTTPException(status_code=500, detail={"success": False, "message": message, "error": str(exc)})


# =============================================================================
# Router
# =============================================================================

router = APIRouter(prefix="/sync", tags=["Order Sync"])


@router.post("/{workspace_id}", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(
    workspace_id: UUID,
    request: Optional[ManualSyncRequest] = None,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
) -> SyncTriggerResponse:
    """Enqueue a manual order sync for the workspace."""
    _require_connection(db, workspace_id)
    filters = (request or ManualSyncRequest()).to_filters()

    try:
        job_id = await queue.enqueue(ManualSyncJob(workspace_id=workspace_id, filters=filters), priority=1)
    except Exception as e:
        raise _failure("Failed to start order sync", e, workspace_id)

    logger.info("[ORDER_SYNC_API] Manual sync requested: workspace=%s job=%s", workspace_id, job_id)
    return SyncTriggerResponse(success=True, message="Order sync started", job_id=job_id)


@router.get("/{workspace_id}/status", response_model=SyncStatusResponse)
async def get_sync_status(
    workspace_id: UUID,
    db: Session = Depends(get_db),
    status_store: SyncStatusStore = Depends(get_status_store),
) -> SyncStatusResponse:
    """Last sync time, failed-order count and the 10 most recent synced orders."""
    try:
        last_sync = await status_store.get_last_sync(workspace_id)
        failed_count = await status_store.failed_orders_count(workspace_id)
    except Exception as e:
        raise _failure("Failed to read sync status", e, workspace_id)

    orders = (
        db.query(Order)
        .filter(Order.workspace_id == workspace_id, Order.channel == ChannelEnum.shopify)
        .order_by(Order.created_at.desc())
        .limit(10)
        .all()
    )

    return SyncStatusResponse(
        has_connection=_has_active_connection(db, workspace_id),
        last_sync_time=last_sync,
        failed_orders_count=failed_count,
        recent_orders=[
            RecentOrder(
                id=str(order.id),
                code=order.code,
                order_number=order.order_number,
                channel_order_id=order.channel_order_id,
                payment_method=order.payment_method.value,
                total_amount=float(order.total_amount or Decimal("0")),
                created_at=order.created_at,
            )
            for order in orders
        ],
    )


@router.post("/{workspace_id}/retry", response_model=SyncTriggerResponse, status_code=202)
async def retry_failed_orders(
    workspace_id: UUID,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
) -> SyncTriggerResponse:
    """Enqueue a retry of every order parked in the workspace's failed list."""
    _require_connection(db, workspace_id)

    try:
        job_id = await queue.enqueue(RetryFailedOrdersJob(workspace_id=workspace_id), priority=1)
    except Exception as e:
        raise _failure("Failed to retry failed orders", e, workspace_id)

    logger.info("[ORDER_SYNC_API] Retry of failed orders requested: workspace=%s job=%s", workspace_id, job_id)
    return SyncTriggerResponse(success=True, message="Retry of failed orders started", job_id=job_id)
