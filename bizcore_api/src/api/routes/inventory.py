from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from src.core.deps import get_query_engine, get_request_id, get_security_context
from src.query.context import QueryOptions, SecurityContext
from src.query.engine import QueryEngine
from src.query.result import QueryResult
from src.query.sanitize import QuerySpec, to_query_spec
from src.repositories.inventory import (
    InventoryTransactionRepository,
    LocationRepository,
    LotRepository,
)
from src.schemas.inventory import LotStatsResponse, LotStatusCount

router = APIRouter(prefix="/inventory", tags=["Inventory"])

_CURSOR_KEYS = ("cursor", "lastId", "cursorField")

LISTING_HELP = (
    "Query parameters: `field=value`, `field[op]=value` (eq, ne, gt, gte, lt, lte, in, nin, "
    "regex, exists), `field[or]=a,b`, `field[and]=a,b`, `a.b=value`, `search`, `sort=-field`, "
    "`fields=a,b`, `page`, `limit`, `cursor`/`lastId`, `cursorField`, `populate=rel`, "
    "`includeDeleted=true`."
)


def _query_spec(request: Request) -> QuerySpec:
    return to_query_spec(request.query_params.multi_items())


def _pagination_for(spec: QuerySpec, default: str = "offset") -> str:
    return "cursor" if any(k in spec for k in _CURSOR_KEYS) else default


# PUBLIC_INTERFACE
@router.get(
    "/locations",
    response_model=QueryResult,
    summary="List inventory locations",
    description="List the tenant's inventory locations ordered by code. " + LISTING_HELP,
)
async def list_locations(
    request: Request,
    security: SecurityContext = Depends(get_security_context),
    engine: QueryEngine = Depends(get_query_engine),
    request_id: Optional[str] = Depends(get_request_id),
) -> QueryResult:
    """
    Return tenant-scoped inventory locations.

    Returns:
        QueryResult: records, pagination, metadata and stage timings.
    """
    spec = _query_spec(request)
    options = QueryOptions(pagination=_pagination_for(spec), request_id=request_id)
    return await LocationRepository(engine).list(spec, security, options)


# PUBLIC_INTERFACE
@router.get(
    "/lots",
    response_model=QueryResult,
    summary="List inventory lots",
    description="List lots (batches), newest first. `populate=location` expands the location. " + LISTING_HELP,
)
async def list_lots(
    request: Request,
    security: SecurityContext = Depends(get_security_context),
    engine: QueryEngine = Depends(get_query_engine),
    request_id: Optional[str] = Depends(get_request_id),
) -> QueryResult:
    """Return tenant-scoped lots with filtering, search, sorting and pagination."""
    spec = _query_spec(request)
    options = QueryOptions(pagination=_pagination_for(spec), request_id=request_id)
    return await LotRepository(engine).list(spec, security, options)


# PUBLIC_INTERFACE
@router.get(
    "/lots/explain",
    response_model=Dict[str, Any],
    summary="Explain a lot listing query",
    description="Compile a lot listing query and return the plan without executing it.",
)
async def explain_lots(
    request: Request,
    security: SecurityContext = Depends(get_security_context),
    engine: QueryEngine = Depends(get_query_engine),
) -> Dict[str, Any]:
    """
    Return the compiled filter, sort, projection, pagination and cache key.

    Validation errors are reported exactly as the listing endpoint would report them.
    """
    spec = _query_spec(request)
    return LotRepository(engine).explain(spec, security, QueryOptions(pagination=_pagination_for(spec)))


# PUBLIC_INTERFACE
@router.get(
    "/lots/stats",
    response_model=LotStatsResponse,
    summary="Lot status breakdown",
    description="Number of lots and quantity on hand per status. Accepts the listing filters.",
)
async def lot_stats(
    request: Request,
    security: SecurityContext = Depends(get_security_context),
    engine: QueryEngine = Depends(get_query_engine),
    request_id: Optional[str] = Depends(get_request_id),
) -> LotStatsResponse:
    """Aggregate the tenant's lots by status."""
    result = await LotRepository(engine).status_breakdown(_query_spec(request), security, request_id)
    statuses = [
        LotStatusCount(
            status=row.get("status"),
            count=int(row.get("count") or 0),
            total_quantity=float(row.get("total_quantity") or 0),
        )
        for row in result.data
    ]
    return LotStatsResponse(
        statuses=statuses,
        total_lots=sum(s.count for s in statuses),
        generated_at=datetime.now(timezone.utc),
        metadata=result.metadata,
        performance=result.performance,
    )


# PUBLIC_INTERFACE
@router.get(
    "/transactions",
    response_model=QueryResult,
    summary="List inventory transactions",
    description=(
        "List inventory transactions with keyset pagination, ordered by `cursorField` (default `id`), "
        "descending unless `sort` names that field ascending. Pass the returned "
        "`pagination.next_cursor` as `cursor` to read the next page. " + LISTING_HELP
    ),
)
async def list_inventory_transactions(
    request: Request,
    security: SecurityContext = Depends(get_security_context),
    engine: QueryEngine = Depends(get_query_engine),
    request_id: Optional[str] = Depends(get_request_id),
) -> QueryResult:
    """Return tenant-scoped inventory transactions using cursor pagination."""
    spec = _query_spec(request)
    options = QueryOptions(pagination="cursor", request_id=request_id)
    return await InventoryTransactionRepository(engine).list(spec, security, options)
