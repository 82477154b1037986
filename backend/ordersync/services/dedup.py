"""Dedup index and batching helpers.

WHAT:
    - DedupIndex.filter_new: which external order ids are NOT yet local
    - unique_by_id: first-occurrence-wins dedup inside one page/batch
    - chunked: fixed-size batching

WHY:
    Existence is checked in bulk (one IN query per call, never one query
    per id). The pipeline calls filter_new twice: once per fetched page to
    keep queue volume down, and again in each batch job right before the
    per-order fan-out, since concurrent syncs of the same workspace can
    overlap. The orders unique constraint backs both checks up.

REFERENCES:
    - ordersync/models.py (uq_order_channel_order)
    - ordersync/workers/order_sync_worker.py (callers)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Sequence, Set, Tuple, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ordersync.models import ChannelEnum, Order

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Keeps IN lists well under driver/planner limits
_MAX_IDS_PER_QUERY = 1000


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    """Split items into consecutive lists of at most `size` elements."""
    if size <= 0:
        raise ValueError("Batch size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def external_id(order: Dict[str, Any]) -> str:
    """Stable string form of an external order id ("" when missing)."""
    value = order.get("id") if isinstance(order, dict) else None
    return "" if value is None else str(value)


def unique_by_id(orders: Iterable[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """Drop repeated external ids, keeping the first occurrence.

    Orders without an id are dropped too; they can never be deduplicated.

    Returns:
        (unique orders in input order, number of dropped orders)
    """
    seen: Set[str] = set()
    unique: List[Dict[str, Any]] = []
    dropped = 0
    for order in orders:
        order_id = external_id(order)
        if not order_id or order_id in seen:
            dropped += 1
            continue
        seen.add(order_id)
        unique.append(order)
    return unique, dropped


class DedupIndex:
    """Bulk existence checks against the orders dedup key."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def existing_ids(
        self,
        workspace_id: str | UUID,
        channel: ChannelEnum,
        external_ids: Iterable[str],
    ) -> Set[str]:
        ids = sorted({str(i) for i in external_ids if i})
        if not ids:
            return set()

        ws_id = workspace_id if isinstance(workspace_id, UUID) else UUID(str(workspace_id))
        found: Set[str] = set()
        db = self.session_factory()
        try:
            for chunk in chunked(ids, _MAX_IDS_PER_QUERY):
                rows = db.execute(
                    select(Order.channel_order_id).where(
                        Order.workspace_id == ws_id,
                        Order.channel == channel,
                        Order.channel_order_id.in_(chunk),
                    )
                ).scalars()
                found.update(rows)
        finally:
            db.close()
        return found

    def filter_new(
        self,
        workspace_id: str | UUID,
        channel: ChannelEnum,
        external_ids: Iterable[str],
    ) -> Set[str]:
        """Return the subset of `external_ids` with no local order yet."""
        ids = {str(i) for i in external_ids if i}
        existing = self.existing_ids(workspace_id, channel, ids)
        logger.debug(
            "[DEDUP] workspace=%s checked=%d existing=%d",
            workspace_id,
            len(ids),
            len(existing),
        )
        return ids - existing
