"""
Aggregate pipeline stages understood by every Query Executor.

Stages run in order; each consumes the rows produced by the previous one.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from src.query.expressions import FilterNode, to_document
from src.query.ordering import SortKey

ACCUMULATORS = ("count", "sum", "min", "max", "avg")


@dataclass(frozen=True)
class MatchStage:
    filter: FilterNode


@dataclass(frozen=True)
class GroupStage:
    """
    Group rows by `by` fields. accumulators maps an output name to
    (function, source field); count ignores the source field.
    """

    by: Tuple[str, ...]
    accumulators: Dict[str, Tuple[str, Optional[str]]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name, (func, _source) in self.accumulators.items():
            if func not in ACCUMULATORS:
                raise ValueError(f"Unsupported accumulator {func} for {name}")


@dataclass(frozen=True)
class SortStage:
    keys: Tuple[SortKey, ...]


@dataclass(frozen=True)
class ProjectStage:
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class SkipStage:
    count: int


@dataclass(frozen=True)
class LimitStage:
    count: int


PipelineStage = Union[MatchStage, GroupStage, SortStage, ProjectStage, SkipStage, LimitStage]


def describe(stages: List[PipelineStage]) -> List[Dict[str, Any]]:
    """JSON-compatible rendering of a pipeline for explain output."""
    out: List[Dict[str, Any]] = []
    for stage in stages:
        if isinstance(stage, MatchStage):
            out.append({"$match": to_document(stage.filter)})
        elif isinstance(stage, GroupStage):
            out.append({"$group": {"by": list(stage.by), **{k: list(v) for k, v in stage.accumulators.items()}}})
        elif isinstance(stage, SortStage):
            out.append({"$sort": [k.token() for k in stage.keys]})
        elif isinstance(stage, ProjectStage):
            out.append({"$project": list(stage.fields)})
        elif isinstance(stage, SkipStage):
            out.append({"$skip": stage.count})
        elif isinstance(stage, LimitStage):
            out.append({"$limit": stage.count})
    return out
