from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.query.cache import (
    CacheEntry,
    InMemoryCacheStore,
    RedisCacheStore,
    cache_key,
    create_cache_store,
    decode_entry,
    encode_entry,
)
from src.query.context import QueryConfig, QueryOptions, SecurityContext
from src.query.engine import QueryEngine
from src.query.expressions import Constraint, Match, Operator, eq
from src.query.ordering import SortKey
from src.query.pagination import (
    CursorPage,
    OffsetPage,
    cursor_constraint,
    cursor_meta,
    cursor_sort,
    offset_meta,
    offset_page,
    paginate,
)
from src.repositories.inventory import ENTITIES, LOT
from tests.conftest import FIELD_TYPES, TENANT_A, TENANT_B, CountingBackend


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


CONFIG = QueryConfig(max_limit=100, default_limit=20)


# Offset pagination

@pytest.mark.parametrize(
    "spec, expected",
    [
        ({}, OffsetPage(page=1, limit=20, skip=0)),
        ({"page": "3", "limit": "5"}, OffsetPage(page=3, limit=5, skip=10)),
        ({"page": "0"}, OffsetPage(page=1, limit=20, skip=0)),
        ({"page": "-4"}, OffsetPage(page=1, limit=20, skip=0)),
        ({"page": "two"}, OffsetPage(page=1, limit=20, skip=0)),
    ],
)
def test_offset_page(spec, expected):
    assert offset_page(spec, CONFIG) == expected


def test_offset_meta():
    meta = offset_meta(OffsetPage(page=2, limit=10, skip=10), 25)
    assert (meta.total, meta.pages, meta.has_next, meta.has_prev) == (25, 3, True, True)

    empty = offset_meta(OffsetPage(page=1, limit=10, skip=0), 0)
    assert (empty.pages, empty.has_next, empty.has_prev) == (0, False, False)

    unknown = offset_meta(OffsetPage(page=1, limit=10, skip=0), None)
    assert unknown.total is None
    assert unknown.has_next is None


# Cursor pagination

def test_cursor_without_value_degrades_to_first_page():
    state = paginate("cursor", {"page": "4", "limit": "5"}, CONFIG, LOT, FIELD_TYPES)
    assert state == OffsetPage(page=1, limit=5, skip=0)


def test_cursor_value_is_coerced_by_field_type():
    state = paginate(
        "keyset",
        {"cursor": "12.5", "cursorField": "quantity_on_hand"},
        CONFIG,
        LOT,
        FIELD_TYPES,
        (SortKey("quantity_on_hand"), SortKey("id")),
    )
    assert isinstance(state, CursorPage)
    assert state.cursor_value == 12.5
    assert state.descending is False
    assert cursor_constraint(state) == Match({"quantity_on_hand": (Constraint(Operator.GT, 12.5),)})


def test_cursor_defaults_to_identifier_descending():
    state = paginate("cursor", {"lastId": "00000000-0000-0000-0000-000000000007"}, CONFIG, LOT, FIELD_TYPES)
    assert state.cursor_field == "id"
    assert state.descending is True
    assert cursor_constraint(state).constraints_for("id")[0].op is Operator.LT


def test_unknown_strategy():
    with pytest.raises(ValueError):
        paginate("random", {}, CONFIG, LOT, FIELD_TYPES)


def test_cursor_sort():
    assert cursor_sort("created_at", True, "id") == (SortKey("created_at", True), SortKey("id", True))
    assert cursor_sort("id", False, "id") == (SortKey("id"),)


def test_cursor_meta_next_cursor_only_on_full_page():
    state = CursorPage(cursor_field="created_at", cursor_value=None, raw_cursor="c", limit=2)
    rows = [{"created_at": datetime(2026, 1, 2)}, {"created_at": datetime(2026, 1, 1)}]
    meta = cursor_meta(state, rows, "created_at")
    assert meta.next_cursor == "2026-01-01T00:00:00"
    assert meta.has_next is True
    assert meta.cursor == "c"

    short = cursor_meta(state, rows[:1], "created_at")
    assert short.next_cursor is None
    assert short.has_next is False


def test_cursor_meta_for_first_page():
    meta = cursor_meta(OffsetPage(page=1, limit=1, skip=0), [{"id": 9}], "id")
    assert meta.strategy == "cursor"
    assert meta.cursor_field == "id"
    assert meta.next_cursor == "9"
    assert meta.has_prev is False


# Cache store

@pytest.mark.asyncio
async def test_cache_entries_expire():
    clock = FakeClock()
    store = InMemoryCacheStore(clock=clock)
    await store.set_with_ttl("k", b"v", 10)
    assert await store.get("k") == b"v"

    clock.now += 10
    assert await store.get("k") is None
    assert store.stats() == {"hits": 1, "misses": 1, "entries": 0, "max_entries": 10_000}


@pytest.mark.asyncio
async def test_cache_evicts_least_recently_used():
    store = InMemoryCacheStore(max_entries=2)
    await store.set_with_ttl("a", b"1", 60)
    await store.set_with_ttl("b", b"2", 60)
    await store.get("a")
    await store.set_with_ttl("c", b"3", 60)
    assert await store.get("b") is None
    assert await store.get("a") == b"1"
    assert await store.get("c") == b"3"


@pytest.mark.asyncio
async def test_cache_close_drops_entries():
    store = InMemoryCacheStore()
    await store.set_with_ttl("a", b"1", 60)
    await store.close()
    assert await store.get("a") is None


def test_cache_entry_round_trip_serializes_values():
    entry = CacheEntry(
        data=[{"id": TENANT_A, "at": datetime(2026, 1, 1, tzinfo=timezone.utc)}],
        pagination={"strategy": "offset", "limit": 10},
        cached_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        ttl=300,
    )
    decoded = decode_entry(encode_entry(entry))
    assert decoded.data == [{"id": str(TENANT_A), "at": "2026-01-01T00:00:00Z"}]
    assert decoded.ttl == 300


# Cache keys

def _key(spec, security=None, base=Match(), pagination="offset", extra=None):
    return cache_key("lot", spec, base, security or SecurityContext(tenant_id=TENANT_A), pagination, extra)


def test_cache_key_ignores_parameter_order():
    assert _key({"status": "a", "sort": "lot_no"}) == _key({"sort": "lot_no", "status": "a"})
    assert _key({}).startswith("query:lot:")


@pytest.mark.parametrize(
    "other",
    [
        {"spec": {"status": "b"}},
        {"security": SecurityContext(tenant_id=TENANT_B)},
        {"security": SecurityContext(tenant_id=TENANT_A, actor_id="someone")},
        {"base": eq("item_sku", "SKU-RED")},
        {"pagination": "cursor"},
        {"extra": {"execution": "aggregate"}},
    ],
)
def test_cache_key_changes_with_query_identity(other):
    baseline = _key({"status": "a"})
    args = {"spec": {"status": "a"}, **other}
    assert _key(**args) != baseline


def test_cache_key_keeps_list_order():
    assert _key({"status": ["a", "b"]}) != _key({"status": ["b", "a"]})


# Redis-backed store

class FakeRedis:
    """Stands in for redis.asyncio.Redis; one instance is the shared server."""

    def __init__(self, fail=False):
        self.values = {}
        self.ttls = {}
        self.fail = fail
        self.closed = False

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.values[key] = value
        self.ttls[key] = ttl

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_redis_store_reads_and_writes_with_ttl():
    client = FakeRedis()
    store = RedisCacheStore(client)
    assert await store.get("k") is None
    await store.set_with_ttl("k", b"payload", 120)
    assert await store.get("k") == b"payload"
    assert client.ttls == {"k": 120}
    assert store.stats() == {"hits": 1, "misses": 1}
    await store.close()
    assert client.closed is True


@pytest.mark.asyncio
async def test_redis_errors_degrade_to_cache_miss():
    store = RedisCacheStore(FakeRedis(fail=True))
    await store.set_with_ttl("k", b"payload", 60)
    assert await store.get("k") is None
    assert store.stats()["misses"] == 1


@pytest.mark.asyncio
async def test_workers_sharing_redis_hit_datastore_once(memory_backend, config, security):
    server = FakeRedis()
    backend = CountingBackend(memory_backend)
    worker_a = QueryEngine(backend, FIELD_TYPES, ENTITIES, cache=RedisCacheStore(server), config=config)
    worker_b = QueryEngine(backend, FIELD_TYPES, ENTITIES, cache=RedisCacheStore(server), config=config)
    options = QueryOptions(pagination="cursor")

    first = await worker_a.build_and_execute({"status": "expired"}, "lot", security, options)
    second = await worker_b.build_and_execute({"status": "expired"}, "lot", security, options)

    assert len(backend.calls) == 1
    assert second.metadata.from_cache is True
    assert [row["lot_no"] for row in second.data] == [row["lot_no"] for row in first.data]
    (key,) = server.ttls
    assert key.startswith("query:lot:")
    assert server.ttls[key] == config.cache_ttl


@pytest.mark.asyncio
async def test_create_cache_store_picks_backend():
    assert isinstance(create_cache_store(None, max_entries=5), InMemoryCacheStore)
    assert isinstance(create_cache_store("", max_entries=5), InMemoryCacheStore)
    store = create_cache_store("redis://localhost:6379/0")
    assert isinstance(store, RedisCacheStore)
    await store.close()
