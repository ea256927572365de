from __future__ import annotations

from typing import Any, Optional


class QueryEngineError(Exception):
    """
    Base class for errors raised by the query engine.

    Carries an HTTP status code and a machine-readable error type so the API layer
    can render the standard ErrorResponse envelope without knowing engine internals.
    """

    status_code: int = 500
    error_type: str = "query_error"

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(QueryEngineError):
    """Query parameters were rejected before any datastore access."""

    status_code = 400
    error_type = "query_validation_error"


class QueryTimeout(QueryEngineError):
    """Execution exceeded the configured timeout. Details carry the stage trace."""

    status_code = 504
    error_type = "query_timeout"


class RateLimitError(QueryEngineError):
    """Reserved for request throttling; not raised by the engine itself."""

    status_code = 429
    error_type = "rate_limited"
