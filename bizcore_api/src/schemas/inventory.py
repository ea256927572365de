from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from src.query.result import QueryMetadata
from src.query.trace import StageTiming


class LotStatusCount(BaseModel):
    """Lots sharing one status."""
    status: Optional[str] = Field(None, description="Lot status (null for lots without one)")
    count: int = Field(..., description="Number of lots")
    total_quantity: float = Field(0.0, description="Summed quantity on hand")


class LotStatsResponse(BaseModel):
    """Per-status breakdown of the tenant's lots."""
    statuses: List[LotStatusCount] = Field(default_factory=list)
    total_lots: int = Field(..., description="Lots across all listed statuses")
    generated_at: datetime = Field(..., description="When the breakdown was computed (UTC)")
    metadata: QueryMetadata
    performance: List[StageTiming] = Field(default_factory=list)
