"""Per-workspace sync status in Redis.

WHAT:
    - shopify:last_sync:{workspace}      ISO-8601 time of the last sync-orders run
    - shopify:failed_orders:{workspace}  list of JSON order payloads parked
                                         after exhausting retries

WHY:
    Status reads are frequent and cheap; none of this needs to live in the
    relational store. The failed list is drained atomically (LRANGE+DEL in
    one MULTI) so an append racing a retry sweep is never lost.

REFERENCES:
    - ordersync/workers/order_sync_worker.py (writer)
    - ordersync/routers/order_sync.py (reader)
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "shopify:last_sync:{workspace_id}"
FAILED_ORDERS_KEY = "shopify:failed_orders:{workspace_id}"


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else value


class SyncStatusStore:
    """Redis-backed sync status. Accepts any redis.asyncio client (ArqRedis included)."""

    def __init__(self, redis: Redis):
        self.redis = redis

    @staticmethod
    def last_sync_key(workspace_id: str | UUID) -> str:
        return LAST_SYNC_KEY.format(workspace_id=workspace_id)

    @staticmethod
    def failed_orders_key(workspace_id: str | UUID) -> str:
        return FAILED_ORDERS_KEY.format(workspace_id=workspace_id)

    async def set_last_sync(self, workspace_id: str | UUID, when: Optional[datetime] = None) -> str:
        value = (when or datetime.now(timezone.utc)).isoformat()
        await self.redis.set(self.last_sync_key(workspace_id), value)
        return value

    async def get_last_sync(self, workspace_id: str | UUID) -> Optional[str]:
        return _decode(await self.redis.get(self.last_sync_key(workspace_id)))

    async def append_failed_order(self, workspace_id: str | UUID, order: Dict[str, Any]) -> int:
        """Park an order payload for a later retry-failed-orders sweep."""
        length = await self.redis.rpush(self.failed_orders_key(workspace_id), json.dumps(order, default=str))
        logger.warning(
            "[SYNC_STATUS] Parked order %s for workspace %s (failed list size=%d)",
            order.get("id"),
            workspace_id,
            length,
        )
        return length

    async def failed_orders_count(self, workspace_id: str | UUID) -> int:
        return int(await self.redis.llen(self.failed_orders_key(workspace_id)) or 0)

    async def drain_failed_orders(self, workspace_id: str | UUID) -> List[Dict[str, Any]]:
        """Read and clear the failed list in one transaction."""
        key = self.failed_orders_key(workspace_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrange(key, 0, -1)
            pipe.delete(key)
            raw_items, _ = await pipe.execute()

        orders: List[Dict[str, Any]] = []
        for raw in raw_items or []:
            try:
                payload = json.loads(_decode(raw))
            except (TypeError, ValueError):
                logger.error("[SYNC_STATUS] Dropping unreadable failed-order entry for workspace %s", workspace_id)
                continue
            if isinstance(payload, dict):
                orders.append(payload)
        return orders
