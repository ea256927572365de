from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from src.query.context import QueryConfig
from src.query.errors import ValidationError

QueryValue = Union[str, List[str]]
QuerySpec = Mapping[str, QueryValue]

# Server-side evaluation operators that must never reach a datastore verbatim.
DANGEROUS_TOKENS: Tuple[str, ...] = ("$where", "$function", "$expr")

RESERVED_KEYS = frozenset(
    {
        "page",
        "limit",
        "sort",
        "fields",
        "select",
        "search",
        "populate",
        "cursor",
        "lastId",
        "lastDate",
        "cursorField",
        "include",
        "exclude",
        "group",
        "distinct",
        "includeDeleted",
    }
)


def _strip(value: str) -> str:
    # Removing one token can join the text around it into another ("$wh$whereere").
    while any(token in value for token in DANGEROUS_TOKENS):
        for token in DANGEROUS_TOKENS:
            value = value.replace(token, "")
    return value


# PUBLIC_INTERFACE
def to_query_spec(items: Iterable[Tuple[str, str]]) -> Dict[str, QueryValue]:
    """
    Fold (key, value) pairs from a query string into a QuerySpec.

    Repeated keys become lists in arrival order.
    """
    spec: Dict[str, QueryValue] = {}
    for key, value in items:
        if key in spec:
            current = spec[key]
            spec[key] = (current if isinstance(current, list) else [current]) + [value]
        else:
            spec[key] = value
    return spec


# PUBLIC_INTERFACE
def sanitize(raw: Optional[Mapping[str, Any]]) -> Dict[str, QueryValue]:
    """
    Return a sanitized copy of a raw QuerySpec.

    Dangerous server-side operator tokens are removed from every string value
    (including list members). The input mapping is never modified.
    """
    clean: Dict[str, QueryValue] = {}
    for key, value in (raw or {}).items():
        if isinstance(value, str):
            clean[key] = _strip(value)
        elif isinstance(value, (list, tuple)):
            clean[key] = [_strip(v) if isinstance(v, str) else str(v) for v in value]
        elif value is None:
            continue
        else:
            clean[key] = str(value)
    return clean


def first(spec: Mapping[str, QueryValue], key: str) -> Optional[str]:
    """Return the first value for a key (lists keep their first element)."""
    value = spec.get(key)
    if isinstance(value, list):
        return value[0] if value else None
    return value


# PUBLIC_INTERFACE
def requested_limit(spec: Mapping[str, QueryValue], config: QueryConfig) -> Optional[int]:
    """
    Validate the client's `limit` parameter.

    Raises:
        ValidationError: limit is not a positive integer or exceeds max_limit.
    Returns:
        The requested limit, or None when the client did not ask for one.
    """
    raw = first(spec, "limit")
    if raw is None or raw.strip() == "":
        return None
    try:
        limit = int(raw)
    except ValueError:
        raise ValidationError("Limit must be an integer", {"requested": raw})
    if limit < 1:
        raise ValidationError("Limit must be at least 1", {"requested": limit})
    if limit > config.max_limit:
        raise ValidationError(
            f"Limit cannot exceed {config.max_limit}",
            {"requested": limit, "allowed": config.max_limit},
        )
    return limit
