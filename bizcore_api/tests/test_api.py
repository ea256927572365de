import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from src.api.main import app
from src.core.deps import get_cache_store, get_query_engine
from src.core.security import create_access_token
from src.query.context import QueryConfig
from src.query.engine import QueryEngine
from src.repositories.inventory import ENTITIES
from tests.conftest import FIELD_TYPES, TENANT_A, TENANT_B, SlowBackend


def _headers(tenant=TENANT_A, subject="user-1", token_tenant=None):
    token = create_access_token(subject, str(token_tenant or tenant))
    return {"X-Tenant-ID": str(tenant), "Authorization": f"Bearer {token}"}


@pytest.fixture()
def client(memory_backend):
    def memory_engine(cache=Depends(get_cache_store)):
        return QueryEngine(memory_backend, FIELD_TYPES, ENTITIES, cache, QueryConfig(max_limit=100, default_limit=10))

    app.dependency_overrides[get_query_engine] = memory_engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/api/v1/health")
    assert r.status_code == 200
    assert r.json()["message"] == "Healthy"
    assert r.headers["X-Correlation-ID"]


def test_caller_echo(client):
    r = client.get("/api/v1/health/caller", headers=_headers())
    assert r.status_code == 200
    assert r.json() == {"tenant_id": str(TENANT_A), "actor_id": "user-1"}


def test_missing_tenant_header(client):
    r = client.get("/api/v1/inventory/lots")
    assert r.status_code == 400
    body = r.json()
    assert body["error"]["type"] == "http_error"
    assert body["path"] == "/api/v1/inventory/lots"


def test_missing_token_rejected(client):
    r = client.get("/api/v1/inventory/lots", headers={"X-Tenant-ID": str(TENANT_A)})
    assert r.status_code == 401


def test_invalid_token_rejected(client):
    headers = {"X-Tenant-ID": str(TENANT_A), "Authorization": "Bearer not-a-jwt"}
    assert client.get("/api/v1/inventory/lots", headers=headers).status_code == 401


def test_token_for_other_tenant_rejected(client):
    r = client.get("/api/v1/inventory/lots", headers=_headers(tenant=TENANT_A, token_tenant=TENANT_B))
    assert r.status_code == 403


def test_list_lots(client):
    r = client.get(
        "/api/v1/inventory/lots",
        params={"status": "available", "sort": "lot_no", "limit": "3", "page": "2"},
        headers={**_headers(), "X-Correlation-ID": "corr-1"},
    )
    assert r.status_code == 200
    body = r.json()
    assert [row["lot_no"] for row in body["data"]] == ["LOT-012", "LOT-015", "LOT-018"]
    assert body["pagination"]["total"] == 8
    assert body["pagination"]["pages"] == 3
    assert body["metadata"]["request_id"] == "corr-1"
    assert body["metadata"]["query_count"] == 2
    assert r.headers["X-Correlation-ID"] == "corr-1"


def test_repeated_query_keys_become_membership(client):
    r = client.get(
        "/api/v1/inventory/lots",
        params=[("lot_no", "LOT-001"), ("lot_no", "LOT-002"), ("sort", "lot_no")],
        headers=_headers(),
    )
    assert [row["lot_no"] for row in r.json()["data"]] == ["LOT-001", "LOT-002"]


def test_second_request_served_from_cache(client):
    params = {"item_sku": "SKU-RED", "limit": "5"}
    first = client.get("/api/v1/inventory/lots", params=params, headers=_headers())
    second = client.get("/api/v1/inventory/lots", params=params, headers=_headers())
    assert first.json()["metadata"]["from_cache"] is False
    assert second.json()["metadata"]["from_cache"] is True
    assert second.json()["data"] == first.json()["data"]

    stats = client.get("/api/v1/health/cache").json()
    assert stats["enabled"] is True
    assert stats["backend"] == "memory"
    assert stats["hits"] == 1
    assert stats["entries"] == 1


def test_query_validation_error_envelope(client):
    r = client.get("/api/v1/inventory/lots", params={"status[where]": "1"}, headers=_headers())
    assert r.status_code == 400
    body = r.json()
    assert body["error"]["type"] == "query_validation_error"
    assert body["error"]["details"] == {"field": "status", "operator": "where"}
    assert body["tenant_id"] == str(TENANT_A)


def test_limit_too_large(client):
    r = client.get("/api/v1/inventory/lots", params={"limit": "500"}, headers=_headers())
    assert r.status_code == 400
    assert r.json()["error"]["details"] == {"requested": 500, "allowed": 100}


def test_lots_populate_location(client):
    r = client.get(
        "/api/v1/inventory/lots", params={"lot_no": "LOT-001", "populate": "location"}, headers=_headers()
    )
    (row,) = r.json()["data"]
    assert row["location"]["code"] == "WH-01"


def test_locations_default_order(client):
    r = client.get("/api/v1/inventory/locations", headers=_headers())
    assert [row["code"] for row in r.json()["data"]] == ["WH-01", "WH-02", "WH-03"]


def test_transactions_cursor_pagination(client):
    first = client.get("/api/v1/inventory/transactions", params={"limit": "4"}, headers=_headers()).json()
    assert first["pagination"]["strategy"] == "cursor"
    assert [row["quantity"] for row in first["data"]] == [7.0, 6.0, 5.0, 4.0]

    cursor = first["pagination"]["next_cursor"]
    second = client.get(
        "/api/v1/inventory/transactions", params={"limit": "4", "cursor": cursor}, headers=_headers()
    ).json()
    assert [row["quantity"] for row in second["data"]] == [3.0, 2.0, 1.0]
    assert second["pagination"]["next_cursor"] is None
    assert second["metadata"]["query_count"] == 1


def test_lots_switch_to_cursor_when_cursor_given(client):
    r = client.get("/api/v1/inventory/lots", params={"cursorField": "lot_no", "limit": "2"}, headers=_headers())
    body = r.json()
    assert body["pagination"]["strategy"] == "cursor"
    assert body["pagination"]["cursor_field"] == "lot_no"
    assert [row["lot_no"] for row in body["data"]] == ["LOT-025", "LOT-024"]
    assert body["pagination"]["next_cursor"] == "LOT-024"


def test_lot_stats(client):
    r = client.get("/api/v1/inventory/lots/stats", headers=_headers())
    assert r.status_code == 200
    body = r.json()
    assert body["total_lots"] == 25
    assert body["statuses"][0] == {"status": "quarantine", "count": 9, "total_quantity": 117.0}
    assert body["metadata"]["execution"] == "aggregate"


def test_explain_lots(client):
    r = client.get(
        "/api/v1/inventory/lots/explain", params={"search": "LOT-01", "sort": "-quantity_on_hand"}, headers=_headers()
    )
    assert r.status_code == 200
    plan = r.json()
    assert plan["sort"] == ["-quantity_on_hand", "-id"]
    assert "$and" in plan["filter"]
    assert plan["pagination"]["strategy"] == "offset"


def test_timeout_maps_to_504():
    def slow_engine():
        return QueryEngine(SlowBackend(delay=1.0), FIELD_TYPES, ENTITIES, None, QueryConfig(timeout=0.05))

    app.dependency_overrides[get_query_engine] = slow_engine
    try:
        with TestClient(app) as test_client:
            r = test_client.get("/api/v1/inventory/locations", headers=_headers())
    finally:
        app.dependency_overrides.clear()
    assert r.status_code == 504
    body = r.json()
    assert body["error"]["type"] == "query_timeout"
    assert body["error"]["details"]["stage"] == "find"
