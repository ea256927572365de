from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from src.query.errors import ValidationError

SAFE_SELECT_FIELDS = ("id", "created_at", "updated_at")
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


@dataclass(frozen=True)
class SortKey:
    field: str
    descending: bool = False

    def token(self) -> str:
        return f"-{self.field}" if self.descending else self.field


def _tokens(raw: str) -> List[str]:
    return [t.strip() for t in raw.split(",") if t.strip()]


# PUBLIC_INTERFACE
def compile_sort(
    sort: str,
    allowed_fields: Sequence[str] = (),
    tie_break_field: Optional[str] = "id",
) -> Tuple[SortKey, ...]:
    """
    Parse "field,-other" into sort keys and append a unique tie-break.

    The tie-break follows the primary key's direction so that rows sharing the
    primary value always come back in the same order, page after page.
    Pass tie_break_field=None for rows without an identifier (grouped rows).

    Raises:
        ValidationError: a field is malformed or not in the allowlist.
    """
    keys: List[SortKey] = []
    seen = set()
    for token in _tokens(sort):
        descending = token.startswith("-")
        name = token.lstrip("-+").strip()
        if not _FIELD_RE.match(name):
            raise ValidationError(f"Invalid sort field: {token}")
        if name in seen:
            continue
        seen.add(name)
        keys.append(SortKey(name, descending))

    if allowed_fields:
        invalid = [k.field for k in keys if k.field not in allowed_fields and k.field != tie_break_field]
        if invalid:
            raise ValidationError(
                f"Invalid sort fields: {', '.join(invalid)}",
                {"invalid": invalid, "allowed": list(allowed_fields)},
            )

    if tie_break_field and tie_break_field not in seen:
        primary_desc = keys[0].descending if keys else False
        keys.append(SortKey(tie_break_field, primary_desc))
    return tuple(keys)


# PUBLIC_INTERFACE
def compile_projection(
    fields: Optional[str],
    allowed_fields: Sequence[str] = (),
    id_field: str = "id",
) -> Optional[Tuple[str, ...]]:
    """
    Parse a comma-separated field list into a projection.

    With an allowlist, only allowlisted and always-safe fields survive; other
    requested fields are dropped silently. None means "no projection".
    """
    if not fields:
        return None
    requested = [f for f in _tokens(fields) if _FIELD_RE.match(f)]
    if allowed_fields:
        safe = set(SAFE_SELECT_FIELDS) | {id_field}
        requested = [f for f in requested if f in allowed_fields or f in safe]
    if not requested:
        return None
    projection = [id_field] + [f for f in requested if f != id_field]
    return tuple(dict.fromkeys(projection))
