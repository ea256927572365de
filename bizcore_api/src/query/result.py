from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.query.pagination import PaginationMeta
from src.query.trace import StageTiming


class QueryMetadata(BaseModel):
    """Execution details returned alongside every query result."""
    request_id: str = Field(..., description="Request identifier (X-Request-ID or generated)")
    entity: str = Field(..., description="Entity the query ran against")
    execution: str = Field(..., description="Execution strategy: find or aggregate")
    from_cache: bool = Field(default=False, description="Result served from the cache")
    cache_hit: bool = Field(default=False)
    cached_at: Optional[datetime] = Field(default=None, description="When the cached entry was written")
    ttl: Optional[int] = Field(default=None, description="Cache TTL in seconds")
    query_count: int = Field(default=0, description="Datastore queries issued for this result")
    execution_time_ms: float = Field(default=0.0)
    search_strategies: List[str] = Field(default_factory=list, description="Search strategies applied")
    timestamp: datetime = Field(..., description="When the result was assembled (UTC)")


class QueryResult(BaseModel):
    """Records plus pagination, metadata and the stage trace."""
    data: List[Dict[str, Any]] = Field(default_factory=list)
    pagination: PaginationMeta
    metadata: QueryMetadata
    performance: List[StageTiming] = Field(default_factory=list)
