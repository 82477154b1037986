"""Tests for SyncStatusStore (last sync time + failed-order list in Redis)."""

import asyncio
import json
from datetime import datetime, timezone

from ordersync.services.sync_status import SyncStatusStore


def test_last_sync_round_trip(status_store, fake_redis):
    when = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)

    stored = asyncio.run(status_store.set_last_sync("ws-1", when))

    assert stored == "2025-06-10T12:00:00+00:00"
    assert fake_redis.strings["shopify:last_sync:ws-1"] == stored.encode()
    assert asyncio.run(status_store.get_last_sync("ws-1")) == stored
    assert asyncio.run(status_store.get_last_sync("ws-2")) is None


def test_failed_orders_append_count_and_drain(status_store):
    async def scenario():
        await status_store.append_failed_order("ws-1", {"id": 9001})
        size = await status_store.append_failed_order("ws-1", {"id": 9002})
        count = await status_store.failed_orders_count("ws-1")
        drained = await status_store.drain_failed_orders("ws-1")
        return size, count, drained, await status_store.failed_orders_count("ws-1")

    size, count, drained, after = asyncio.run(scenario())

    assert size == 2
    assert count == 2
    assert drained == [{"id": 9001}, {"id": 9002}]
    assert after == 0


def test_failed_lists_are_per_workspace(status_store):
    async def scenario():
        await status_store.append_failed_order("ws-1", {"id": 1})
        return await status_store.failed_orders_count("ws-2")

    assert asyncio.run(scenario()) == 0


def test_drain_skips_unreadable_entries(fake_redis):
    store = SyncStatusStore(fake_redis)
    key = SyncStatusStore.failed_orders_key("ws-1")
    fake_redis.lists[key] = [b"{not json", json.dumps({"id": 7}).encode(), b"[1, 2]"]

    assert asyncio.run(store.drain_failed_orders("ws-1")) == [{"id": 7}]
    assert key not in fake_redis.lists
