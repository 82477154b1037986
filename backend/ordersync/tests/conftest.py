"""Pytest configuration for order sync tests

WHAT: Shared fixtures: file-backed SQLite sessions, a seeded workspace with
      a primary hub and Shopify connection, and in-memory stand-ins for the
      ARQ queue, Redis and the Shopify storefront
WHY: The whole pipeline runs without Redis, Postgres or network access
REFERENCES:
    - ordersync/workers/order_sync_worker.py
    - ordersync/services/order_materializer.py
"""

import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (ordersync.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")


FIXED_NOW = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine(tmp_path):
    db_file = tmp_path / "ordersync.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )
    from ordersync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


def seed_workspace(session_factory, name="Demo Seller", with_hub=True):
    from ordersync.models import Hub, Workspace

    workspace_id = uuid.uuid4()
    db = session_factory()
    try:
        db.add(Workspace(id=workspace_id, name=name))
        if with_hub:
            db.add(Hub(
                workspace_id=workspace_id,
                name="Main Warehouse",
                phone="+919000000001",
                address="Plot 4, Industrial Area",
                pincode="560058",
                city="Bengaluru",
                state="Karnataka",
                is_primary=True,
                is_active=True,
            ))
        db.commit()
    finally:
        db.close()
    return workspace_id


@pytest.fixture
def make_workspace(session_factory):
    """Seed extra workspaces: make_workspace(name=..., with_hub=...)."""
    def _make(name="Other Seller", with_hub=True):
        return seed_workspace(session_factory, name=name, with_hub=with_hub)
    return _make


@pytest.fixture
def workspace_id(session_factory):
    return seed_workspace(session_factory)


@pytest.fixture
def registry(session_factory):
    from ordersync.services.connection_service import ConnectionRegistry
    return ConnectionRegistry(session_factory)


@pytest.fixture
def connection(registry, workspace_id):
    return registry.save_connection(
        workspace_id,
        "demo-store.myshopify.com",
        "shpat_test_token",
        scope="read_orders",
        name="Demo Store",
    )


# ============================================================================
# Payload Fixtures
# ============================================================================

def _base_order(order_id):
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "financial_status": "pending",
        "total_price": "500.00",
        "total_outstanding": "500.00",
        "total_weight": 400,
        "created_at": "2025-06-09T10:00:00+05:30",
        "line_items": [
            {"name": "Widget", "title": "Widget", "quantity": 2, "price": "250.00", "sku": "WID-1", "grams": 200},
        ],
        "shipping_address": {
            "name": "Asha Rao",
            "phone": "+91 98765 43210",
            "address1": "12 MG Road",
            "address2": "Near Metro",
            "city": "Bengaluru",
            "province": "Karnataka",
            "zip": "560001",
            "country": "India",
        },
        "customer": {"email": "asha@example.com", "first_name": "Asha", "last_name": "Rao"},
    }


@pytest.fixture
def make_order():
    """Factory for Shopify REST order payloads; keyword overrides replace top-level keys."""
    def _make(order_id=9001, **overrides):
        order = _base_order(order_id)
        order.update(overrides)
        return order
    return _make


# ============================================================================
# Queue / Redis / Storefront Fakes
# ============================================================================

class RecordingQueue:
    """JobQueue that records enqueues instead of talking to Redis."""

    def __init__(self, fail_when=None):
        self.calls = []
        self._fail_when = fail_when

    async def enqueue(self, job, priority=None, delay=None):
        if self._fail_when is not None and self._fail_when(job):
            raise ConnectionError("redis unavailable")
        self.calls.append(SimpleNamespace(job=job, priority=priority, delay=delay))
        return f"job-{len(self.calls)}"

    def jobs_of(self, job_type):
        return [call for call in self.calls if call.job.type == job_type]


class _FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def lrange(self, key, start, end):
        self._ops.append(("lrange", key, start, end))
        return self

    def delete(self, key):
        self._ops.append(("delete", key))
        return self

    async def execute(self):
        results = []
        for name, *args in self._ops:
            results.append(await getattr(self._redis, name)(*args))
        self._ops = []
        return results


class FakeRedis:
    """Subset of redis.asyncio used by the status store and the limiter.

    Values come back as bytes, like an ArqRedis pool without decode_responses.
    """

    def __init__(self):
        self.strings = {}
        self.lists = {}
        self.zsets = {}
        self.expiries = {}

    @staticmethod
    def _encode(value):
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    async def set(self, key, value):
        self.strings[key] = self._encode(value)
        return True

    async def get(self, key):
        return self.strings.get(key)

    async def rpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        items.extend(self._encode(v) for v in values)
        return len(items)

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start:end + 1])

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.lists, self.zsets):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def zremrangebyscore(self, key, min_score, max_score):
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items() if s <= float(max_score)]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    async def zrange(self, key, start, end, withscores=False):
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        sliced = ordered[start:] if end == -1 else ordered[start:end + 1]
        return sliced if withscores else [m for m, _ in sliced]

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True


class FakeStorefront:
    """StorefrontClient serving pre-seeded pages in order."""

    def __init__(self, pages=None):
        self.pages = list(pages or [])
        self.calls = []

    async def fetch_orders(self, connection, filters):
        from ordersync.services.shopify_client import OrdersPage

        self.calls.append(SimpleNamespace(connection=connection, filters=filters))
        if not self.pages:
            return OrdersPage(orders=[])
        orders, next_page_info = self.pages.pop(0)
        return OrdersPage(orders=orders, next_page_info=next_page_info)


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def make_queue():
    """RecordingQueue factory; fail_when(job) -> True makes that enqueue raise."""
    return RecordingQueue


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def status_store(fake_redis):
    from ordersync.services.sync_status import SyncStatusStore
    return SyncStatusStore(fake_redis)


@pytest.fixture
def storefront():
    return FakeStorefront()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_orchestrator(queue, session_factory, storefront, status_store, sleeps):
    """Build an orchestrator wired to the fakes; keyword args override Settings."""
    from ordersync.deps import Settings
    from ordersync.workers.order_sync_worker import OrderSyncOrchestrator

    async def _record_sleep(seconds):
        sleeps.append(seconds)

    def _make(materializer=None, **settings_overrides):
        settings = Settings(**settings_overrides)
        return OrderSyncOrchestrator(
            queue=queue,
            session_factory=session_factory,
            storefront=storefront,
            status_store=status_store,
            materializer=materializer,
            settings=settings,
            sleep=_record_sleep,
            clock=lambda: FIXED_NOW,
        )
    return _make
