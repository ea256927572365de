import asyncio
import os
from datetime import datetime, timedelta
from uuid import UUID

import pytest

# Settings are read when src.api.main is imported; keep the app away from a real database.
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("REQUIRE_AUTH", "true")
os.environ["QUERY_CACHE_URL"] = ""

from src.query.backends.memory import MemoryBackend  # noqa: E402
from src.query.cache import InMemoryCacheStore  # noqa: E402
from src.query.context import QueryConfig, SecurityContext  # noqa: E402
from src.query.engine import QueryEngine  # noqa: E402
from src.query.expressions import FieldType  # noqa: E402
from src.query.field_types import StaticFieldTypeProvider  # noqa: E402
from src.repositories.inventory import ENTITIES  # noqa: E402

TENANT_A = UUID("11111111-1111-4111-8111-111111111111")
TENANT_B = UUID("22222222-2222-4222-8222-222222222222")
BASE_TIME = datetime(2026, 1, 1, 8, 0, 0)

_COMMON = {
    "id": FieldType.REFERENCE,
    "tenant_id": FieldType.REFERENCE,
    "created_at": FieldType.DATE,
    "updated_at": FieldType.DATE,
    "is_deleted": FieldType.BOOLEAN,
}

FIELD_TYPES = StaticFieldTypeProvider(
    {
        "location": {
            **_COMMON,
            "code": FieldType.STRING,
            "name": FieldType.STRING,
            "type": FieldType.STRING,
            "parent_id": FieldType.REFERENCE,
        },
        "lot": {
            **_COMMON,
            "lot_no": FieldType.STRING,
            "item_sku": FieldType.STRING,
            "uom": FieldType.STRING,
            "status": FieldType.STRING,
            "quantity_on_hand": FieldType.NUMBER,
            "expiration_date": FieldType.DATE,
            "location_id": FieldType.REFERENCE,
        },
        "inventory_transaction": {
            **_COMMON,
            "lot_id": FieldType.REFERENCE,
            "from_location_id": FieldType.REFERENCE,
            "to_location_id": FieldType.REFERENCE,
            "quantity": FieldType.NUMBER,
            "reason_code": FieldType.STRING,
            "ref_type": FieldType.STRING,
        },
    }
)


def rid(n: int) -> UUID:
    """Deterministic identifier; string order matches numeric order."""
    return UUID(int=n)


def make_location(n, tenant=TENANT_A, **overrides):
    record = {
        "id": rid(1000 + n),
        "tenant_id": tenant,
        "code": f"WH-{n:02d}",
        "name": f"Warehouse {n}",
        "type": "warehouse",
        "parent_id": None,
        "created_at": BASE_TIME + timedelta(minutes=n),
        "is_deleted": False,
    }
    record.update(overrides)
    return record


def make_lot(n, tenant=TENANT_A, **overrides):
    record = {
        "id": rid(n),
        "tenant_id": tenant,
        "lot_no": f"LOT-{n:03d}",
        "item_sku": "SKU-RED" if n % 2 else "SKU-BLUE",
        "uom": "kg",
        "status": ("available", "quarantine", "expired")[n % 3],
        "quantity_on_hand": float(n),
        "expiration_date": BASE_TIME + timedelta(days=n),
        "location_id": rid(1001),
        "attributes": {"color": "red" if n % 2 else "blue", "grade": n % 4},
        "created_at": BASE_TIME + timedelta(hours=n),
        "is_deleted": False,
    }
    record.update(overrides)
    return record


class CountingExecutor:
    """Delegates to another executor and records every datastore call."""

    def __init__(self, inner, entity, calls):
        self.inner = inner
        self.entity = entity
        self.calls = calls

    async def find(self, filter, sort, projection, skip, limit):
        self.calls.append((self.entity, "find"))
        return await self.inner.find(filter, sort, projection, skip, limit)

    async def count(self, filter):
        self.calls.append((self.entity, "count"))
        return await self.inner.count(filter)

    async def aggregate(self, stages):
        self.calls.append((self.entity, "aggregate"))
        return await self.inner.aggregate(stages)


class CountingBackend:
    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def executor_for(self, entity):
        return CountingExecutor(self.inner.executor_for(entity), entity, self.calls)


class SlowExecutor:
    """Executor whose calls never finish in time."""

    def __init__(self, delay):
        self.delay = delay

    async def find(self, filter, sort, projection, skip, limit):
        await asyncio.sleep(self.delay)
        return []

    async def count(self, filter):
        await asyncio.sleep(self.delay)
        return 0

    async def aggregate(self, stages):
        await asyncio.sleep(self.delay)
        return []


class SlowBackend:
    def __init__(self, delay=1.0):
        self.delay = delay

    def executor_for(self, entity):
        return SlowExecutor(self.delay)


@pytest.fixture()
def security():
    return SecurityContext(tenant_id=TENANT_A, actor_id="user-1")


@pytest.fixture()
def memory_backend():
    locations = [make_location(n) for n in range(1, 4)]
    locations.append(make_location(9, tenant=TENANT_B, code="WH-B"))
    lots = [make_lot(n) for n in range(1, 26)]
    lots.append(make_lot(90, tenant=TENANT_B, lot_no="LOT-B"))
    lots.append(make_lot(91, lot_no="LOT-GONE", is_deleted=True))
    transactions = [
        {
            "id": rid(5000 + n),
            "tenant_id": TENANT_A,
            "lot_id": rid(n),
            "from_location_id": rid(1001),
            "to_location_id": rid(1002),
            "quantity": float(n),
            "uom": "kg",
            "reason_code": "move" if n % 2 else "adjust",
            "ref_type": "transfer",
            "created_at": BASE_TIME + timedelta(minutes=n),
            "is_deleted": False,
        }
        for n in range(1, 8)
    ]
    return MemoryBackend({"location": locations, "lot": lots, "inventory_transaction": transactions})


@pytest.fixture()
def backend(memory_backend):
    return CountingBackend(memory_backend)


@pytest.fixture()
def cache_store():
    return InMemoryCacheStore(max_entries=100)


@pytest.fixture()
def config():
    return QueryConfig(max_limit=100, default_limit=10, max_or_clauses=20, timeout=5.0)


@pytest.fixture()
def engine(backend, config):
    return QueryEngine(backend, FIELD_TYPES, ENTITIES, cache=None, config=config)


@pytest.fixture()
def cached_engine(backend, config, cache_store):
    return QueryEngine(backend, FIELD_TYPES, ENTITIES, cache=cache_store, config=config)
