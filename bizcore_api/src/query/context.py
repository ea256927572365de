from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.query.expressions import Match, Operator

DEFAULT_ALLOWED_OPERATORS: Tuple[str, ...] = tuple(op.value for op in Operator)


@dataclass(frozen=True)
class SecurityContext:
    """Caller identity used for tenant isolation and cache partitioning."""

    tenant_id: Optional[UUID] = None
    actor_id: Optional[str] = None


@dataclass(frozen=True)
class RelationDescriptor:
    """
    A populatable reference from one entity to another.

    local_field holds the referenced value on the parent record; the related
    records are matched on foreign_field (usually the related identifier).
    """

    entity: str
    local_field: str
    foreign_field: str = "id"
    select: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EntityDescriptor:
    """Everything the engine needs to know about a listable entity."""

    name: str
    id_field: str = "id"
    tenant_field: Optional[str] = "tenant_id"
    soft_delete_field: Optional[str] = None
    default_sort: str = "-created_at"
    search_fields: Tuple[str, ...] = ()
    allowed_sort_fields: Tuple[str, ...] = ()
    allowed_select_fields: Tuple[str, ...] = ()
    relations: Dict[str, RelationDescriptor] = field(default_factory=dict)


class QueryConfig(BaseModel):
    """Engine limits and feature switches. Built from AppSettings by get_query_config()."""

    model_config = ConfigDict(frozen=True)

    max_limit: int = Field(default=1000, ge=1)
    default_limit: int = Field(default=50, ge=1)
    max_or_clauses: int = Field(default=20, ge=1)
    max_nested_depth: int = Field(default=3, ge=1)
    enable_cache: bool = Field(default=True)
    cache_ttl: int = Field(default=300, ge=1, description="Cache entry TTL in seconds")
    timeout: Optional[float] = Field(default=30.0, gt=0, description="Per-query timeout in seconds")
    allowed_operators: Tuple[str, ...] = Field(default=DEFAULT_ALLOWED_OPERATORS)

    @model_validator(mode="after")
    def _check_limits(self) -> "QueryConfig":
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit cannot exceed max_limit")
        unknown = set(self.allowed_operators) - set(DEFAULT_ALLOWED_OPERATORS)
        if unknown:
            raise ValueError(f"Unsupported operators in allowlist: {sorted(unknown)}")
        return self


@dataclass
class QueryOptions:
    """Per-call knobs supplied by the repository or route, never by the client."""

    base_filter: Match = field(default_factory=Match)
    include_deleted: bool = False
    allow_tenant_override: bool = False
    use_cache: bool = True
    pagination: str = "offset"
    search_strategies: Sequence[str] = ("regex",)
    pipeline: Optional[List[Any]] = None
    transform: Optional[Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]]] = None
    request_id: Optional[str] = None

    @property
    def aggregate(self) -> bool:
        return self.pipeline is not None
