from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from src.query.coercion import coerce
from src.query.context import EntityDescriptor, QueryConfig
from src.query.expressions import Constraint, Match, Operator
from src.query.field_types import FieldTypeProvider
from src.query.ordering import SortKey
from src.query.sanitize import QueryValue, first, requested_limit


@dataclass(frozen=True)
class OffsetPage:
    page: int
    limit: int
    skip: int
    strategy: str = "offset"


@dataclass(frozen=True)
class CursorPage:
    cursor_field: str
    cursor_value: Any
    raw_cursor: str
    limit: int
    descending: bool = True
    strategy: str = "cursor"


PaginationState = Union[OffsetPage, CursorPage]


class PaginationMeta(BaseModel):
    """Pagination section of a query result."""
    strategy: str = Field(..., description="offset or cursor")
    limit: int = Field(..., description="Page size actually applied")
    page: Optional[int] = Field(default=None, description="1-based page number (offset)")
    skip: Optional[int] = Field(default=None, description="Records skipped (offset)")
    total: Optional[int] = Field(default=None, description="Total matching records (offset, find)")
    pages: Optional[int] = Field(default=None, description="Total pages (offset, find)")
    has_next: Optional[bool] = Field(default=None)
    has_prev: Optional[bool] = Field(default=None)
    cursor: Optional[str] = Field(default=None, description="Cursor the page was read after")
    cursor_field: Optional[str] = Field(default=None)
    next_cursor: Optional[str] = Field(default=None, description="Pass as `cursor` to read the next page")


def _effective_limit(spec: Mapping[str, QueryValue], config: QueryConfig) -> int:
    requested = requested_limit(spec, config)
    return min(requested or config.default_limit, config.max_limit)


# PUBLIC_INTERFACE
def offset_page(spec: Mapping[str, QueryValue], config: QueryConfig) -> OffsetPage:
    """Compute page/limit/skip; malformed page numbers fall back to page 1."""
    try:
        page = max(1, int(first(spec, "page") or 1))
    except ValueError:
        page = 1
    limit = _effective_limit(spec, config)
    return OffsetPage(page=page, limit=limit, skip=(page - 1) * limit)


def cursor_ordering(
    spec: Mapping[str, QueryValue],
    entity: EntityDescriptor,
    sort_keys: Sequence[SortKey] = (),
) -> Tuple[str, bool]:
    """Cursor field and direction: descending unless the sort asks otherwise."""
    cursor_field = first(spec, "cursorField") or entity.id_field
    for key in sort_keys:
        if key.field == cursor_field:
            return cursor_field, key.descending
    return cursor_field, True


# PUBLIC_INTERFACE
def cursor_page(
    spec: Mapping[str, QueryValue],
    config: QueryConfig,
    entity: EntityDescriptor,
    field_types: FieldTypeProvider,
    sort_keys: Sequence[SortKey] = (),
) -> PaginationState:
    """
    Compute a keyset page from `cursor` (or `lastId`) and `cursorField`.

    Without a cursor value this degrades to the first offset page.
    """
    raw_cursor = first(spec, "cursor") or first(spec, "lastId")
    if not raw_cursor:
        return offset_page({k: v for k, v in spec.items() if k != "page"}, config)

    cursor_field, descending = cursor_ordering(spec, entity, sort_keys)
    value = coerce(raw_cursor, field_types.get_field_type(entity.name, cursor_field))
    return CursorPage(
        cursor_field=cursor_field,
        cursor_value=value,
        raw_cursor=raw_cursor,
        limit=_effective_limit(spec, config),
        descending=descending,
    )


# PUBLIC_INTERFACE
def paginate(
    strategy: str,
    spec: Mapping[str, QueryValue],
    config: QueryConfig,
    entity: EntityDescriptor,
    field_types: FieldTypeProvider,
    sort_keys: Sequence[SortKey] = (),
) -> PaginationState:
    """Dispatch to a pagination strategy; keyset is an alias of cursor."""
    name = (strategy or "offset").lower()
    if name in ("cursor", "keyset"):
        return cursor_page(spec, config, entity, field_types, sort_keys)
    if name == "offset":
        return offset_page(spec, config)
    raise ValueError(f"Unknown pagination strategy: {strategy}")


def cursor_constraint(state: CursorPage) -> Match:
    """Strictly-beyond-the-cursor condition in the page's direction."""
    op = Operator.LT if state.descending else Operator.GT
    return Match({state.cursor_field: (Constraint(op, state.cursor_value),)})


def cursor_sort(cursor_field: str, descending: bool, tie_break_field: str) -> Tuple[SortKey, ...]:
    """Keyset ordering: the cursor field, then the tie-break in the same direction."""
    keys = [SortKey(cursor_field, descending)]
    if cursor_field != tie_break_field:
        keys.append(SortKey(tie_break_field, descending))
    return tuple(keys)


def _cursor_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def offset_meta(state: OffsetPage, total: Optional[int]) -> PaginationMeta:
    meta = PaginationMeta(
        strategy=state.strategy,
        limit=state.limit,
        page=state.page,
        skip=state.skip,
        has_prev=state.page > 1,
    )
    if total is not None:
        pages = math.ceil(total / state.limit) if state.limit else 0
        meta.total = total
        meta.pages = pages
        meta.has_next = state.page < pages
    return meta


def cursor_meta(
    state: PaginationState,
    records: List[Dict[str, Any]],
    cursor_field: str,
    total: Optional[int] = None,
) -> PaginationMeta:
    """Metadata for the cursor strategy, including a degraded first page."""
    if isinstance(state, OffsetPage):
        meta = offset_meta(state, total)
        meta.strategy = "cursor"
        meta.cursor_field = cursor_field
    else:
        meta = PaginationMeta(
            strategy="cursor",
            limit=state.limit,
            cursor=state.raw_cursor,
            cursor_field=state.cursor_field,
            has_prev=True,
            has_next=len(records) >= state.limit,
        )
    if records and len(records) >= meta.limit:
        meta.next_cursor = _cursor_text(records[-1].get(meta.cursor_field or cursor_field))
    return meta
