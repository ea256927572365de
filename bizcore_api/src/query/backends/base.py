from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from src.query.expressions import CompiledFilter
from src.query.ordering import SortKey
from src.query.pipeline import PipelineStage

Record = Dict[str, Any]


class QueryExecutor(Protocol):
    """
    Datastore access for one entity.

    Implementations only translate and run already-validated queries; they hold
    no per-request state beyond their datastore handle.
    """

    async def find(
        self,
        filter: CompiledFilter,
        sort: Sequence[SortKey],
        projection: Optional[Tuple[str, ...]],
        skip: int,
        limit: int,
    ) -> List[Record]:
        ...

    async def aggregate(self, stages: Sequence[PipelineStage]) -> List[Record]:
        ...

    async def count(self, filter: CompiledFilter) -> int:
        ...


class QueryBackend(Protocol):
    """Hands out the executor for a named entity."""

    def executor_for(self, entity: str) -> QueryExecutor:
        ...
