from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class MessageResponse(BaseModel):
    """Standard message response."""
    message: str = Field(..., description="Human readable message")
    details: Optional[dict] = Field(default=None, description="Optional extra data")


class CallerEcho(BaseModel):
    """Resolved caller context (tenant from X-Tenant-ID, actor from the bearer token)."""
    tenant_id: UUID = Field(..., description="Tenant ID extracted from request header")
    actor_id: Optional[str] = Field(default=None, description="Token subject; null for anonymous callers")


class CacheStats(BaseModel):
    """Counters of the query cache as seen by this worker."""
    enabled: bool = Field(..., description="Whether query caching is enabled")
    backend: Optional[str] = Field(default=None, description="memory or redis")
    hits: int = Field(default=0)
    misses: int = Field(default=0)
    entries: Optional[int] = Field(default=None, description="Live entries held by a process-local cache")
    max_entries: Optional[int] = Field(default=None)


class ErrorInfo(BaseModel):
    """Structured error description."""
    type: str = Field(..., description="Machine-readable error type code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Any] = Field(
        default=None, description="Optional error details (validation issues, rejected query parameters, stage trace)"
    )


# PUBLIC_INTERFACE
class ErrorResponse(BaseModel):
    """Standardized API error envelope returned by exception handlers."""
    status: int = Field(..., description="HTTP status code")
    error: ErrorInfo = Field(..., description="Error details")
    correlation_id: Optional[str] = Field(default=None, description="Request correlation ID")
    tenant_id: Optional[str] = Field(default=None, description="Tenant ID (if available)")
    path: Optional[str] = Field(default=None, description="Request path")
    method: Optional[str] = Field(default=None, description="HTTP method")
    timestamp: datetime = Field(..., description="Error timestamp (UTC)")
