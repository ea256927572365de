"""
In-process Query Executor over lists of dict records.

Useful for development, demos and tests. Records are never handed out by
reference: every result row is a fresh dict.
"""
from __future__ import annotations

import functools
import re
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from src.query.backends.base import Record
from src.query.expressions import And, CompiledFilter, Constraint, FilterNode, Match, Operator, Or
from src.query.ordering import SortKey
from src.query.pipeline import (
    GroupStage,
    LimitStage,
    MatchStage,
    PipelineStage,
    ProjectStage,
    SkipStage,
    SortStage,
)

_MISSING = object()


def _resolve(record: Mapping[str, Any], path: str) -> Any:
    if path in record:
        return record[path]
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _norm(value: Any) -> Any:
    return str(value) if isinstance(value, UUID) else value


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is None
    if isinstance(actual, (list, tuple)) and not isinstance(expected, (list, tuple)):
        return any(_equals(item, expected) for item in actual)
    return _norm(actual) == _norm(expected)


def _ordered(actual: Any, expected: Any, op: Operator) -> bool:
    if actual is _MISSING or actual is None:
        return False
    a, b = _norm(actual), _norm(expected)
    try:
        if op is Operator.GT:
            return a > b
        if op is Operator.GTE:
            return a >= b
        if op is Operator.LT:
            return a < b
        return a <= b
    except TypeError:
        return False


def _satisfies(actual: Any, constraint: Constraint) -> bool:
    op, expected = constraint.op, constraint.value
    if op is Operator.EQ:
        return _equals(actual, expected)
    if op is Operator.NE:
        return not _equals(actual, expected)
    if op in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
        return _ordered(actual, expected, op)
    if op is Operator.IN:
        return any(_equals(actual, v) for v in expected)
    if op is Operator.NIN:
        return not any(_equals(actual, v) for v in expected)
    if op is Operator.REGEX:
        pattern = expected if isinstance(expected, re.Pattern) else re.compile(str(expected))
        return isinstance(actual, str) and pattern.search(actual) is not None
    if op is Operator.EXISTS:
        present = actual is not _MISSING and actual is not None
        return present is bool(expected)
    raise ValueError(f"Unsupported operator {op}")


# PUBLIC_INTERFACE
def matches(node: FilterNode, record: Mapping[str, Any]) -> bool:
    """Evaluate a compiled filter against one record."""
    if isinstance(node, Match):
        return all(
            _satisfies(_resolve(record, path), c)
            for path, constraints in node.conditions.items()
            for c in constraints
        )
    if isinstance(node, Or):
        return any(matches(child, record) for child in node.children)
    if isinstance(node, And):
        return all(matches(child, record) for child in node.children)
    raise TypeError(f"Unknown filter node {node!r}")


def _compare_values(a: Any, b: Any) -> int:
    a_none = a is _MISSING or a is None
    b_none = b is _MISSING or b is None
    if a_none or b_none:
        return (0 if a_none and b_none else -1 if a_none else 1)
    a, b = _norm(a), _norm(b)
    try:
        return (a > b) - (a < b)
    except TypeError:
        return (str(a) > str(b)) - (str(a) < str(b))


def sort_records(records: List[Record], keys: Sequence[SortKey]) -> List[Record]:
    def cmp(left: Record, right: Record) -> int:
        for key in keys:
            result = _compare_values(_resolve(left, key.field), _resolve(right, key.field))
            if result:
                return -result if key.descending else result
        return 0

    return sorted(records, key=functools.cmp_to_key(cmp))


def _project(record: Record, fields: Optional[Tuple[str, ...]]) -> Record:
    if not fields:
        return dict(record)
    out: Record = {}
    for name in fields:
        value = _resolve(record, name)
        if value is not _MISSING:
            out[name] = value
    return out


def _accumulate(func: str, values: List[Any]) -> Any:
    present = [v for v in values if v is not _MISSING and v is not None]
    if func == "count":
        return len(values)
    if func == "sum":
        return sum(present) if present else 0
    if func == "avg":
        return (sum(present) / len(present)) if present else None
    if not present:
        return None
    return min(present) if func == "min" else max(present)


def _group(records: List[Record], stage: GroupStage) -> List[Record]:
    buckets: "OrderedDict[tuple, List[Record]]" = OrderedDict()
    for record in records:
        key = tuple(_norm(_resolve(record, f)) for f in stage.by)
        buckets.setdefault(key, []).append(record)
    out: List[Record] = []
    for key, rows in buckets.items():
        row: Record = {f: (None if v is _MISSING else v) for f, v in zip(stage.by, key)}
        for name, (func, source) in stage.accumulators.items():
            values = [_resolve(r, source) if source else 1 for r in rows]
            row[name] = _accumulate(func, values)
        out.append(row)
    return out


class MemoryQueryExecutor:
    """Query Executor over one in-memory collection."""

    def __init__(self, records: List[Record]) -> None:
        self._records = records

    async def find(
        self,
        filter: CompiledFilter,
        sort: Sequence[SortKey],
        projection: Optional[Tuple[str, ...]],
        skip: int,
        limit: int,
    ) -> List[Record]:
        rows = [r for r in self._records if matches(filter, r)]
        rows = sort_records(rows, sort)
        return [_project(r, projection) for r in rows[skip : skip + limit]]

    async def count(self, filter: CompiledFilter) -> int:
        return sum(1 for r in self._records if matches(filter, r))

    async def aggregate(self, stages: Sequence[PipelineStage]) -> List[Record]:
        rows: List[Record] = [dict(r) for r in self._records]
        for stage in stages:
            if isinstance(stage, MatchStage):
                rows = [r for r in rows if matches(stage.filter, r)]
            elif isinstance(stage, GroupStage):
                rows = _group(rows, stage)
            elif isinstance(stage, SortStage):
                rows = sort_records(rows, stage.keys)
            elif isinstance(stage, ProjectStage):
                rows = [_project(r, stage.fields) for r in rows]
            elif isinstance(stage, SkipStage):
                rows = rows[stage.count :]
            elif isinstance(stage, LimitStage):
                rows = rows[: stage.count]
            else:
                raise TypeError(f"Unsupported pipeline stage {stage!r}")
        return rows


class MemoryBackend:
    """Named in-memory collections, one executor per entity."""

    def __init__(self, collections: Optional[Mapping[str, Iterable[Record]]] = None) -> None:
        self._collections: Dict[str, List[Record]] = {
            name: [dict(r) for r in rows] for name, rows in (collections or {}).items()
        }

    def insert(self, entity: str, records: Iterable[Record]) -> None:
        self._collections.setdefault(entity, []).extend(dict(r) for r in records)

    def executor_for(self, entity: str) -> MemoryQueryExecutor:
        return MemoryQueryExecutor(self._collections.setdefault(entity, []))
