"""
Execution strategies.

A query runs either as a plain find (with optional count and population) or as
an aggregate pipeline. The strategy is chosen once when the builder is created;
both are driven through the same ExecutionStrategy interface.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, List, Mapping, Optional, Tuple, TypeVar

from src.query.backends.base import QueryBackend, Record
from src.query.context import EntityDescriptor, SecurityContext
from src.query.errors import QueryTimeout
from src.query.expressions import CompiledFilter, and_all
from src.query.ordering import SortKey
from src.query.pagination import (
    CursorPage,
    OffsetPage,
    PaginationMeta,
    PaginationState,
    cursor_constraint,
    cursor_meta,
    offset_meta,
)
from src.query.pipeline import LimitStage, MatchStage, PipelineStage, ProjectStage, SkipStage, SortStage
from src.query.population import PopulateTree, PopulationResolver
from src.query.trace import ExecutionTrace

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CompiledQuery:
    """Everything a strategy needs; produced by QueryBuilder.compile()."""

    entity: EntityDescriptor
    filter: CompiledFilter
    sort: Tuple[SortKey, ...]
    projection: Optional[Tuple[str, ...]]
    pagination: PaginationState
    pagination_strategy: str
    cursor_field: Optional[str] = None
    populate: PopulateTree = field(default_factory=dict)
    pipeline: Tuple[PipelineStage, ...] = ()


@dataclass
class ExecutionOutcome:
    data: List[Record]
    pagination: PaginationMeta
    query_count: int


class TimedRunner:
    """Runs datastore awaitables under the configured timeout, recording each in the trace."""

    def __init__(self, trace: ExecutionTrace, timeout: Optional[float]) -> None:
        self.trace = trace
        self.timeout = timeout

    async def __call__(self, stage: str, awaitable: Awaitable[T], **extra: Any) -> T:
        with self.trace.stage(stage, **extra) as details:
            try:
                if self.timeout is None:
                    return await awaitable
                return await asyncio.wait_for(awaitable, timeout=self.timeout)
            except asyncio.TimeoutError:
                details["timed_out"] = True
                logger.warning("Query stage %s exceeded %.3fs", stage, self.timeout)
        # Raised after the stage block closes so the timed-out stage is in the trace.
        raise QueryTimeout(
            "Query timeout exceeded",
            {"stage": stage, "timeout_seconds": self.timeout, "trace": self.trace.as_dicts()},
        )


class ExecutionStrategy(ABC):
    """One way of turning a CompiledQuery into records plus pagination metadata."""

    name: str = ""

    @abstractmethod
    async def run(
        self,
        query: CompiledQuery,
        backend: QueryBackend,
        security: SecurityContext,
        entities: Mapping[str, EntityDescriptor],
        runner: TimedRunner,
    ) -> ExecutionOutcome:
        raise NotImplementedError


class FindExecution(ExecutionStrategy):
    """Filtered, sorted, projected find; offset pagination adds a count query."""

    name = "find"

    async def run(self, query, backend, security, entities, runner):
        executor = backend.executor_for(query.entity.name)
        state = query.pagination
        flt, skip = query.filter, 0
        if isinstance(state, CursorPage):
            flt = and_all([flt, cursor_constraint(state)])
        else:
            skip = state.skip

        rows = await runner("find", executor.find(flt, query.sort, query.projection, skip, state.limit))
        issued = 1

        total = None
        # Data and count share one session, so they run one after the other.
        if query.pagination_strategy == "offset":
            total = await runner("count", executor.count(query.filter))
            issued += 1

        if query.populate and rows:
            resolver = PopulationResolver(backend, entities, security)
            issued += await runner("populate", resolver.resolve(query.entity, rows, query.populate))

        if query.pagination_strategy == "offset":
            meta = offset_meta(state, total)
        else:
            meta = cursor_meta(state, rows, query.cursor_field or query.entity.id_field)
        return ExecutionOutcome(data=rows, pagination=meta, query_count=issued)


class AggregateExecution(ExecutionStrategy):
    """
    Pipeline execution: the compiled filter becomes the leading match stage,
    followed by the caller's stages and then sort, projection and paging.

    No count query runs and relations are never populated.
    """

    name = "aggregate"

    def stages(self, query: CompiledQuery) -> List[PipelineStage]:
        state = query.pagination
        leading = query.filter
        if isinstance(state, CursorPage):
            leading = and_all([leading, cursor_constraint(state)])
        stages: List[PipelineStage] = [MatchStage(leading), *query.pipeline]
        if query.sort:
            stages.append(SortStage(query.sort))
        if query.projection:
            stages.append(ProjectStage(query.projection))
        if isinstance(state, OffsetPage) and state.skip:
            stages.append(SkipStage(state.skip))
        stages.append(LimitStage(state.limit))
        return stages

    async def run(self, query, backend, security, entities, runner):
        executor = backend.executor_for(query.entity.name)
        rows = await runner("aggregate", executor.aggregate(self.stages(query)))
        state = query.pagination
        if isinstance(state, OffsetPage) and query.pagination_strategy == "offset":
            meta = offset_meta(state, None)
        else:
            meta = cursor_meta(state, rows, query.cursor_field or query.entity.id_field)
        return ExecutionOutcome(data=rows, pagination=meta, query_count=1)


def select_strategy(aggregate: bool) -> ExecutionStrategy:
    return AggregateExecution() if aggregate else FindExecution()
