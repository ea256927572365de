"""
Query Executor backed by async SQLAlchemy (Postgres).

Compiled filters become WHERE clauses over the mapped class's columns. Dotted
paths whose first segment is a JSON/JSONB column are resolved as JSON paths.
Statements are built by the build_* methods and executed on the injected
AsyncSession; building never touches the database.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Integer,
    Numeric,
    Select,
    String,
    Text,
    Uuid,
    and_,
    cast,
    false,
    func,
    or_,
    select,
    true,
)
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from src.query.backends.base import Record
from src.query.errors import ValidationError
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

_AGGREGATES = {
    "count": lambda col: func.count(),
    "sum": lambda col: func.coalesce(func.sum(col), 0),
    "min": func.min,
    "max": func.max,
    "avg": func.avg,
}


class _FieldRef:
    """A resolved field: a column expression plus an optional JSON sub-path."""

    def __init__(self, expr: Any, json_path: Tuple[str, ...] = ()) -> None:
        self.expr = expr
        self.json_path = json_path

    def operand(self, samples: Sequence[Any] = ()) -> Any:
        if not self.json_path:
            return self.expr
        element = self.expr[self.json_path]
        present = [v for v in samples if v is not None]
        if present and all(isinstance(v, bool) for v in present):
            return element.as_boolean()
        if present and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in present):
            return element.as_float()
        return element.as_string()

    def bind(self, value: Any) -> Any:
        """Adapt a coerced value to the column type (dates, aware timestamps)."""
        if self.json_path or not isinstance(value, datetime):
            return value
        col_type = getattr(self.expr, "type", None)
        if isinstance(col_type, DateTime):
            if col_type.timezone and value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value
        if isinstance(col_type, Date):
            return value.date()
        return value

    def comparable(self, values: Sequence[Any]) -> Tuple[Any, List[Any]]:
        """
        Return the left operand and the bind values for a comparison.

        Values the column cannot hold (a word against a date column, a non-UUID
        against a UUID column, a timestamp against JSON text) are compared as text,
        so a bad filter value matches nothing instead of failing in the database.
        """
        bound = [self.bind(v) for v in values]
        col = self.operand(bound)
        if self.json_path:
            if isinstance(getattr(col, "type", None), (String, Text)):
                return col, [_as_text(v) for v in bound]
            return col, bound
        if all(_fits(getattr(col, "type", None), v) for v in bound):
            return col, bound
        return cast(col, Text), [_as_text(v) for v in bound]


def _fits(col_type: Any, value: Any) -> bool:
    if value is None or col_type is None:
        return True
    if isinstance(col_type, JSON):
        return False
    if isinstance(col_type, Boolean):
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if isinstance(col_type, DateTime):
        return isinstance(value, datetime)
    if isinstance(col_type, Date):
        return isinstance(value, date)
    if isinstance(col_type, (Numeric, Integer)):
        return isinstance(value, (int, float))
    if isinstance(col_type, Uuid):
        return isinstance(value, UUID)
    if isinstance(col_type, String):
        return isinstance(value, str)
    return True


def _as_text(value: Any) -> Any:
    """Render a bind value the way Postgres renders the column as text."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        # Date-only input ("2026-01-01") parses to naive midnight.
        if value.tzinfo is None and value.time() == time():
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _resolver(columns: Mapping[str, Any]):
    def resolve(path: str) -> _FieldRef:
        head, _, rest = path.partition(".")
        if head not in columns:
            raise ValidationError(f"Unknown field: {path}", {"field": path})
        expr = columns[head]
        if not rest:
            return _FieldRef(expr)
        if not isinstance(getattr(expr, "type", None), JSON):
            raise ValidationError(f"Field {head} has no nested paths", {"field": path})
        return _FieldRef(expr, tuple(rest.split(".")))

    return resolve


def _constraint_clause(ref: _FieldRef, constraint: Constraint) -> ColumnElement:
    op, value = constraint.op, constraint.value
    if op in (Operator.IN, Operator.NIN):
        col, values = ref.comparable(value)
        if op is Operator.IN:
            return col.in_(values)
        return or_(col.not_in(values), col.is_(None))
    if op is Operator.EXISTS:
        col = ref.operand()
        return col.is_not(None) if value else col.is_(None)
    if op is Operator.REGEX:
        col = ref.operand()
        if not isinstance(getattr(col, "type", None), (String, Text)):
            col = cast(col, Text)
        pattern = value if isinstance(value, re.Pattern) else re.compile(str(value))
        flags = "i" if pattern.flags & re.IGNORECASE else None
        return col.regexp_match(pattern.pattern, flags=flags)

    col, (bound,) = ref.comparable([value])
    if op is Operator.EQ:
        return col.is_(None) if bound is None else col == bound
    if op is Operator.NE:
        return col.is_not(None) if bound is None else or_(col != bound, col.is_(None))
    if op is Operator.GT:
        return col > bound
    if op is Operator.GTE:
        return col >= bound
    if op is Operator.LT:
        return col < bound
    if op is Operator.LTE:
        return col <= bound
    raise ValueError(f"Unsupported operator {op}")


# PUBLIC_INTERFACE
def compile_filter(node: FilterNode, columns: Mapping[str, Any]) -> ColumnElement:
    """Translate a compiled filter into a SQLAlchemy boolean expression."""
    resolve = _resolver(columns)

    def walk(current: FilterNode) -> ColumnElement:
        if isinstance(current, Match):
            clauses = [
                _constraint_clause(resolve(path), c)
                for path, constraints in current.conditions.items()
                for c in constraints
            ]
            return and_(*clauses) if clauses else true()
        if isinstance(current, Or):
            return or_(*[walk(c) for c in current.children]) if current.children else false()
        if isinstance(current, And):
            return and_(*[walk(c) for c in current.children]) if current.children else true()
        raise TypeError(f"Unknown filter node {current!r}")

    return walk(node)


def _order_by(keys: Sequence[SortKey], columns: Mapping[str, Any]) -> List[Any]:
    resolve = _resolver(columns)
    clauses = []
    for key in keys:
        col = resolve(key.field).operand()
        # NULLs sort lowest, matching the in-memory executor.
        clauses.append(col.desc().nulls_last() if key.descending else col.asc().nulls_first())
    return clauses


class SqlAlchemyQueryExecutor:
    """Query Executor for one mapped class."""

    def __init__(self, session: AsyncSession, model: type) -> None:
        self.session = session
        self.model = model
        mapper = sa_inspect(model)
        self.columns: Dict[str, Any] = {attr.key: attr.columns[0] for attr in mapper.column_attrs}

    def _projected(self, projection: Optional[Tuple[str, ...]]) -> List[Any]:
        names = projection or tuple(self.columns)
        resolve = _resolver(self.columns)
        return [resolve(name).operand().label(name) for name in names]

    def build_find_statement(
        self,
        filter: CompiledFilter,
        sort: Sequence[SortKey],
        projection: Optional[Tuple[str, ...]],
        skip: int,
        limit: int,
    ) -> Select:
        return (
            select(*self._projected(projection))
            .where(compile_filter(filter, self.columns))
            .order_by(*_order_by(sort, self.columns))
            .offset(skip)
            .limit(limit)
        )

    def build_count_statement(self, filter: CompiledFilter) -> Select:
        return select(func.count()).select_from(self.model).where(compile_filter(filter, self.columns))

    def build_aggregate_statement(self, stages: Sequence[PipelineStage]) -> Select:
        exprs: Dict[str, Any] = dict(self.columns)
        stmt: Select = select(*[c.label(k) for k, c in exprs.items()])
        # Set once a stage makes further filtering ambiguous (GROUP BY/LIMIT/OFFSET).
        sealed = False

        def wrap() -> None:
            nonlocal stmt, exprs, sealed
            sub = stmt.subquery()
            exprs = {name: sub.c[name] for name in exprs}
            stmt = select(*[sub.c[name] for name in exprs])
            sealed = False

        for stage in stages:
            if isinstance(stage, MatchStage):
                if sealed:
                    wrap()
                stmt = stmt.where(compile_filter(stage.filter, exprs))
            elif isinstance(stage, GroupStage):
                if sealed:
                    wrap()
                resolve = _resolver(exprs)
                keys = {name: resolve(name).operand() for name in stage.by}
                grouped: Dict[str, Any] = dict(keys)
                for name, (fn, source) in stage.accumulators.items():
                    source_col = resolve(source).operand((0,)) if source else None
                    grouped[name] = _AGGREGATES[fn](source_col)
                stmt = stmt.with_only_columns(
                    *[e.label(n) for n, e in grouped.items()], maintain_column_froms=True
                ).group_by(*keys.values())
                exprs = grouped
                sealed = True
            elif isinstance(stage, SortStage):
                stmt = stmt.order_by(*_order_by(stage.keys, exprs))
            elif isinstance(stage, ProjectStage):
                resolve = _resolver(exprs)
                exprs = {name: resolve(name).operand() for name in stage.fields}
                stmt = stmt.with_only_columns(
                    *[e.label(n) for n, e in exprs.items()], maintain_column_froms=True
                )
            elif isinstance(stage, SkipStage):
                stmt = stmt.offset(stage.count)
                sealed = True
            elif isinstance(stage, LimitStage):
                stmt = stmt.limit(stage.count)
                sealed = True
            else:
                raise TypeError(f"Unsupported pipeline stage {stage!r}")
        return stmt

    async def find(
        self,
        filter: CompiledFilter,
        sort: Sequence[SortKey],
        projection: Optional[Tuple[str, ...]],
        skip: int,
        limit: int,
    ) -> List[Record]:
        result = await self.session.execute(self.build_find_statement(filter, sort, projection, skip, limit))
        return [dict(row) for row in result.mappings().all()]

    async def count(self, filter: CompiledFilter) -> int:
        result = await self.session.execute(self.build_count_statement(filter))
        return int(result.scalar_one())

    async def aggregate(self, stages: Sequence[PipelineStage]) -> List[Record]:
        result = await self.session.execute(self.build_aggregate_statement(stages))
        return [dict(row) for row in result.mappings().all()]


class SqlAlchemyBackend:
    """Session-bound backend mapping entity names to mapped classes."""

    def __init__(self, session: AsyncSession, models: Mapping[str, type]) -> None:
        self.session = session
        self.models = dict(models)

    def executor_for(self, entity: str) -> SqlAlchemyQueryExecutor:
        model = self.models.get(entity)
        if model is None:
            raise ValueError(f"No mapped class registered for entity {entity!r}")
        return SqlAlchemyQueryExecutor(self.session, model)
