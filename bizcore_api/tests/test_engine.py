import pytest

from src.query.context import QueryConfig, QueryOptions, SecurityContext
from src.query.engine import QueryEngine
from src.query.errors import QueryTimeout, ValidationError
from src.query.expressions import Constraint, Operator, eq, top_level_match
from src.repositories.inventory import ENTITIES, LOT, LOT_STATUS_PIPELINE, LotRepository
from tests.conftest import FIELD_TYPES, TENANT_A, TENANT_B, SlowBackend, rid


def _ids(result):
    return [row["id"] for row in result.data]


# Operator allowlist

@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["status[where]", "lot_no[function]", "quantity_on_hand[size]", "item_sku[elemMatch]"])
async def test_disallowed_operator_rejected_before_datastore(engine, backend, security, key):
    with pytest.raises(ValidationError) as exc:
        await engine.build_and_execute({key: "x"}, "lot", security)
    assert "not allowed" in exc.value.message
    assert backend.calls == []


@pytest.mark.asyncio
async def test_operator_allowlist_comes_from_config(backend, security):
    config = QueryConfig(allowed_operators=("eq", "in"))
    engine = QueryEngine(backend, FIELD_TYPES, ENTITIES, config=config)
    with pytest.raises(ValidationError):
        await engine.build_and_execute({"lot_no[regex]": "^LOT"}, "lot", security)
    assert backend.calls == []

    result = await engine.build_and_execute({"status[in]": "expired"}, "lot", security)
    assert {row["status"] for row in result.data} == {"expired"}


# Tenant isolation

@pytest.mark.parametrize(
    "spec",
    [
        {},
        {"status": "available"},
        {"status[or]": "available,expired", "search": "LOT"},
        {"quantity_on_hand[gte]": "3", "attributes.color": "red"},
        {"lot_no[ne]": "LOT-001", "expiration_date[lt]": "2026-01-20"},
    ],
)
def test_compiled_filter_always_carries_caller_tenant(engine, security, spec):
    query = engine.build(spec, "lot", security).compile()
    assert Constraint(Operator.EQ, TENANT_A) in top_level_match(query.filter).constraints_for("tenant_id")


@pytest.mark.asyncio
async def test_listing_returns_only_callers_tenant(engine, security):
    result = await engine.build_and_execute({"limit": "100"}, "lot", security)
    assert result.pagination.total == 25
    assert all(str(row["tenant_id"]) == str(TENANT_A) for row in result.data)

    other = await engine.build_and_execute({}, "lot", SecurityContext(tenant_id=TENANT_B))
    assert [row["lot_no"] for row in other.data] == ["LOT-B"]


@pytest.mark.asyncio
async def test_cross_tenant_filter_rejected(engine, backend, security):
    with pytest.raises(ValidationError):
        await engine.build_and_execute({"tenant_id": str(TENANT_B)}, "lot", security)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_matching_tenant_filter_is_accepted(engine, security):
    result = await engine.build_and_execute({"tenant_id": str(TENANT_A)}, "lot", security)
    assert result.pagination.total == 25


@pytest.mark.asyncio
async def test_tenant_override_requires_server_side_option(engine, security):
    options = QueryOptions(allow_tenant_override=True)
    result = await engine.build_and_execute({"tenant_id": str(TENANT_B)}, "lot", security, options)
    assert [row["lot_no"] for row in result.data] == ["LOT-B"]


# Soft delete

@pytest.mark.asyncio
async def test_soft_deleted_records_hidden_by_default(engine, security):
    result = await engine.build_and_execute({"lot_no": "LOT-GONE"}, "lot", security)
    assert result.data == []
    assert result.pagination.total == 0


@pytest.mark.asyncio
async def test_include_deleted_parameter(engine, security):
    result = await engine.build_and_execute({"lot_no": "LOT-GONE", "includeDeleted": "true"}, "lot", security)
    assert [row["lot_no"] for row in result.data] == ["LOT-GONE"]


@pytest.mark.asyncio
async def test_include_deleted_option(engine, security):
    result = await engine.build_and_execute({"limit": "100"}, "lot", security, QueryOptions(include_deleted=True))
    assert result.pagination.total == 26


# OR cap

@pytest.mark.asyncio
async def test_or_list_over_cap_rejected(engine, backend, security):
    values = ",".join(f"LOT-{n:03d}" for n in range(1, 22))
    with pytest.raises(ValidationError) as exc:
        await engine.build_and_execute({"lot_no[or]": values}, "lot", security)
    assert exc.value.details == {"field": "lot_no", "provided": 21}
    assert backend.calls == []


@pytest.mark.asyncio
async def test_or_list_at_cap_accepted(engine, security):
    values = ",".join(f"LOT-{n:03d}" for n in range(1, 21))
    result = await engine.build_and_execute({"lot_no[or]": values, "limit": "50"}, "lot", security)
    assert result.pagination.total == 20


# Pagination math

@pytest.mark.asyncio
async def test_offset_page_two_of_three(engine, backend, security):
    result = await engine.build_and_execute({"sort": "lot_no", "page": "2", "limit": "10"}, "lot", security)
    assert [row["lot_no"] for row in result.data] == [f"LOT-{n:03d}" for n in range(11, 21)]
    meta = result.pagination
    assert (meta.total, meta.pages, meta.page, meta.skip) == (25, 3, 2, 10)
    assert meta.has_next is True
    assert meta.has_prev is True
    assert result.metadata.query_count == 2
    assert backend.calls == [("lot", "find"), ("lot", "count")]


@pytest.mark.asyncio
async def test_last_page_has_no_next(engine, security):
    result = await engine.build_and_execute({"sort": "lot_no", "page": "3", "limit": "10"}, "lot", security)
    assert len(result.data) == 5
    assert result.pagination.has_next is False


@pytest.mark.asyncio
async def test_limit_above_maximum_rejected(engine, backend, security):
    with pytest.raises(ValidationError) as exc:
        await engine.build_and_execute({"limit": "101"}, "lot", security)
    assert exc.value.details == {"requested": 101, "allowed": 100}
    assert backend.calls == []


# Sort stability

@pytest.mark.asyncio
async def test_sort_on_non_unique_field_is_deterministic(engine, security):
    spec = {"sort": "status", "limit": "100"}
    first = await engine.build_and_execute(spec, "lot", security)
    second = await engine.build_and_execute(spec, "lot", security)
    assert _ids(first) == _ids(second)

    # Equal statuses fall back to the identifier in the primary key's direction.
    available = [row["id"] for row in first.data if row["status"] == "available"]
    assert available == sorted(available, key=str)


@pytest.mark.asyncio
async def test_pages_of_non_unique_sort_neither_overlap_nor_skip(engine, security):
    everything = await engine.build_and_execute({"sort": "-status", "limit": "100"}, "lot", security)
    paged = []
    for page in ("1", "2", "3"):
        result = await engine.build_and_execute({"sort": "-status", "limit": "10", "page": page}, "lot", security)
        paged.extend(_ids(result))
    assert paged == _ids(everything)


@pytest.mark.asyncio
async def test_sort_field_outside_allowlist_rejected(engine, backend, security):
    with pytest.raises(ValidationError) as exc:
        await engine.build_and_execute({"sort": "attributes"}, "lot", security)
    assert exc.value.details["invalid"] == ["attributes"]
    assert backend.calls == []


# Cache

@pytest.mark.asyncio
async def test_identical_requests_hit_datastore_once(cached_engine, backend, security):
    options = QueryOptions(pagination="cursor")
    first = await cached_engine.build_and_execute({"status": "available"}, "lot", security, options)
    second = await cached_engine.build_and_execute({"status": "available"}, "lot", security, options)

    assert len(backend.calls) == 1
    assert first.metadata.from_cache is False
    assert second.metadata.from_cache is True
    assert second.metadata.cache_hit is True
    assert second.metadata.query_count == 0
    assert second.metadata.cached_at is not None
    assert [row["lot_no"] for row in second.data] == [row["lot_no"] for row in first.data]


@pytest.mark.asyncio
async def test_cache_hit_keeps_offset_pagination(cached_engine, backend, security):
    spec = {"sort": "lot_no", "page": "2", "limit": "10"}
    await cached_engine.build_and_execute(spec, "lot", security)
    hit = await cached_engine.build_and_execute(spec, "lot", security)
    assert backend.calls == [("lot", "find"), ("lot", "count")]
    assert hit.pagination.total == 25
    assert hit.pagination.page == 2


@pytest.mark.asyncio
async def test_cache_is_partitioned_by_tenant(cached_engine, backend, security):
    await cached_engine.build_and_execute({}, "lot", security)
    other = await cached_engine.build_and_execute({}, "lot", SecurityContext(tenant_id=TENANT_B))
    assert other.metadata.from_cache is False
    assert [row["lot_no"] for row in other.data] == ["LOT-B"]


@pytest.mark.asyncio
async def test_use_cache_false_bypasses_store(cached_engine, backend, security, cache_store):
    options = QueryOptions(use_cache=False)
    await cached_engine.build_and_execute({}, "lot", security, options)
    await cached_engine.build_and_execute({}, "lot", security, options)
    assert len(backend.calls) == 4
    assert cache_store.stats()["entries"] == 0


@pytest.mark.asyncio
async def test_transform_applies_on_hit_and_miss(cached_engine, security):
    def lowercase(rows):
        return [{**row, "lot_no": row["lot_no"].lower()} for row in rows]

    options = QueryOptions(transform=lowercase)
    miss = await cached_engine.build_and_execute({"lot_no": "LOT-001"}, "lot", security, options)
    hit = await cached_engine.build_and_execute({"lot_no": "LOT-001"}, "lot", security, options)
    assert miss.data[0]["lot_no"] == "lot-001"
    assert hit.metadata.from_cache is True
    assert hit.data[0]["lot_no"] == "lot-001"


# Cursor continuation

@pytest.mark.asyncio
async def test_cursor_page_two_matches_offset_slice(engine, security):
    options = QueryOptions(pagination="cursor")
    page_one = await engine.build_and_execute({"limit": "10"}, "lot", security, options)
    assert _ids(page_one) == [rid(n) for n in range(25, 15, -1)]
    cursor = page_one.pagination.next_cursor
    assert cursor == str(rid(16))

    page_two = await engine.build_and_execute({"limit": "10", "cursor": cursor}, "lot", security, options)
    assert all(str(i) < cursor for i in map(str, _ids(page_two)))
    assert page_two.pagination.cursor == cursor
    assert page_two.metadata.query_count == 1

    offset = await engine.build_and_execute({"sort": "-id", "limit": "10", "page": "2"}, "lot", security)
    assert _ids(page_two) == _ids(offset)


@pytest.mark.asyncio
async def test_cursor_ascending_when_sort_names_cursor_field(engine, security):
    options = QueryOptions(pagination="cursor")
    spec = {"sort": "id", "limit": "5", "lastId": str(rid(5))}
    result = await engine.build_and_execute(spec, "lot", security, options)
    assert _ids(result) == [rid(n) for n in range(6, 11)]
    assert result.pagination.next_cursor == str(rid(10))


@pytest.mark.asyncio
async def test_cursor_on_custom_field(engine, security):
    options = QueryOptions(pagination="keyset")
    first = await engine.build_and_execute(
        {"cursorField": "quantity_on_hand", "sort": "quantity_on_hand", "limit": "4"}, "lot", security, options
    )
    assert [row["quantity_on_hand"] for row in first.data] == [1.0, 2.0, 3.0, 4.0]
    following = await engine.build_and_execute(
        {
            "cursorField": "quantity_on_hand",
            "sort": "quantity_on_hand",
            "limit": "4",
            "cursor": first.pagination.next_cursor,
        },
        "lot",
        security,
        options,
    )
    assert [row["quantity_on_hand"] for row in following.data] == [5.0, 6.0, 7.0, 8.0]


@pytest.mark.asyncio
async def test_cursor_field_obeys_sort_allowlist(engine, backend, security):
    options = QueryOptions(pagination="cursor")
    with pytest.raises(ValidationError):
        await engine.build_and_execute({"cursorField": "uom", "cursor": "kg"}, "lot", security, options)
    assert backend.calls == []


# Sanitization

@pytest.mark.asyncio
async def test_where_token_stripped_from_values(engine, security):
    result = await engine.build_and_execute({"lot_no": "LOT-00$where1"}, "lot", security)
    assert [row["lot_no"] for row in result.data] == ["LOT-001"]


def test_where_token_never_reaches_compiled_filter(engine, security):
    plan = engine.explain({"lot_no[or]": "$whereLOT-001,LOT-$function002", "search": "$expr"}, "lot", security)
    assert "$where" not in str(plan["filter"])
    assert "$function" not in str(plan["filter"])
    assert "$expr" not in str(plan["filter"])


# Timeout

@pytest.mark.asyncio
async def test_timeout_reports_stage_trace(security):
    engine = QueryEngine(SlowBackend(delay=1.0), FIELD_TYPES, ENTITIES, config=QueryConfig(timeout=0.05))
    with pytest.raises(QueryTimeout) as exc:
        await engine.build_and_execute({}, "lot", security)
    assert exc.value.status_code == 504
    assert exc.value.details["stage"] == "find"
    stages = {entry["stage"]: entry for entry in exc.value.details["trace"]}
    assert stages["find"]["extra"]["timed_out"] is True
    assert "filter" in stages


# Metadata, explain, aggregate

@pytest.mark.asyncio
async def test_metadata_and_performance(engine, security):
    options = QueryOptions(request_id="req-42")
    result = await engine.build_and_execute({"search": "lot-00"}, "lot", security, options)
    assert result.metadata.request_id == "req-42"
    assert result.metadata.entity == "lot"
    assert result.metadata.execution == "find"
    assert result.metadata.search_strategies == ["regex"]
    assert result.pagination.total == 9
    stages = [timing.stage for timing in result.performance]
    assert stages[:7] == ["sanitize", "filter", "search", "sort", "select", "paginate", "populate_parse"]
    assert "find" in stages and "count" in stages


@pytest.mark.asyncio
async def test_base_filter_is_merged(engine, security):
    options = QueryOptions(base_filter=eq("item_sku", "SKU-RED"))
    result = await engine.build_and_execute({"status": "expired", "limit": "50"}, "lot", security, options)
    assert result.data
    assert all(row["item_sku"] == "SKU-RED" and row["status"] == "expired" for row in result.data)


def test_explain_describes_plan_without_datastore(engine, backend, security):
    plan = engine.explain({"status": "available", "fields": "lot_no", "populate": "location"}, LOT, security)
    assert backend.calls == []
    assert plan["execution"] == "find"
    assert plan["sort"] == ["-created_at", "-id"]
    assert plan["projection"] == ["id", "lot_no"]
    assert plan["pagination"]["limit"] == 10
    assert plan["populate"] == {"location": {}}
    assert plan["filter"]["tenant_id"] == [{"$eq": str(TENANT_A)}]
    assert plan["filter"]["is_deleted"] == [{"$ne": True}]
    assert plan["cache_key"].startswith("query:lot:")


@pytest.mark.asyncio
async def test_aggregate_pipeline_groups_scoped_rows(engine, backend, security):
    result = await LotRepository(engine).status_breakdown({}, security)
    assert backend.calls == [("lot", "aggregate")]
    assert result.metadata.execution == "aggregate"
    assert result.metadata.query_count == 1
    assert result.pagination.total is None
    assert [(row["status"], row["count"]) for row in result.data] == [
        ("quarantine", 9),
        ("available", 8),
        ("expired", 8),
    ]
    assert result.data[0]["total_quantity"] == 117.0


@pytest.mark.asyncio
async def test_aggregate_accepts_listing_filters(engine, security):
    result = await LotRepository(engine).status_breakdown({"item_sku": "SKU-RED"}, security)
    assert sum(row["count"] for row in result.data) == 13


def test_aggregate_explain_lists_pipeline(engine, security):
    plan = engine.explain({"fields": "status"}, "lot", security, QueryOptions(pipeline=LOT_STATUS_PIPELINE))
    assert plan["execution"] == "aggregate"
    assert plan["projection"] is None
    names = [next(iter(stage)) for stage in plan["pipeline"]]
    assert names == ["$match", "$group", "$sort", "$limit"]


def test_unknown_entity(engine, security):
    with pytest.raises(ValueError):
        engine.build({}, "invoice", security)
