"""
Public Pydantic schemas used by FastAPI routes and tests.

Listing endpoints return src.query.result.QueryResult directly; the models here
cover the standard error envelope and endpoint-specific responses.
"""

from .common import ErrorResponse, MessageResponse  # noqa: F401
