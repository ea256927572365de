from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.routes.inventory import router as inventory_router
from src.core.deps import get_cache_store, get_security_context
from src.core.logging import actor_id_var, configure_logging, correlation_id_var, tenant_id_var
from src.core.settings import get_app_settings
from src.db.run_migrations import main as run_alembic
from src.db.session import dispose_engine
from src.query.cache import CacheStore, InMemoryCacheStore, RedisCacheStore, create_cache_store
from src.query.context import SecurityContext
from src.query.errors import QueryEngineError
from src.schemas.common import CacheStats, CallerEcho, ErrorInfo, ErrorResponse, MessageResponse

settings = get_app_settings()

# Configure structured logging once at import
configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Liveness probes and caller/cache diagnostics."},
    {"name": "Inventory", "description": "Inventory locations, lots, transactions."},
]

app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    openapi_tags=openapi_tags,
)

# CORS - avoid wildcard with credentials
cors_allow_credentials = settings.CORS_ALLOW_CREDENTIALS
if settings.CORS_ORIGINS == ["*"] and cors_allow_credentials:
    logger.warning("CORS_ALLOW_CREDENTIALS=True with '*' origins is not permitted; disabling credentials.")
    cors_allow_credentials = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=cors_allow_credentials,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """
    Enrich request context with correlation_id and tenant_id for logging and error responses.
    Adds 'X-Correlation-ID' to every response.
    """
    corr = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID") or str(uuid4())
    tenant = request.headers.get("X-Tenant-ID")
    token_corr = correlation_id_var.set(corr)
    token_tenant = tenant_id_var.set(tenant)
    token_actor = actor_id_var.set(None)
    request.state.correlation_id = corr
    request.state.tenant_id = tenant

    logger.info("Incoming request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
    finally:
        correlation_id_var.reset(token_corr)
        tenant_id_var.reset(token_tenant)
        actor_id_var.reset(token_actor)

    response.headers["X-Correlation-ID"] = corr
    return response


def _build_error_response(
    request: Request,
    status_code: int,
    error_type: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    """Build a standardized ErrorResponse JSONResponse."""
    err = ErrorResponse(
        status=status_code,
        error=ErrorInfo(type=error_type, message=message, details=details),
        correlation_id=getattr(request.state, "correlation_id", None),
        tenant_id=getattr(request.state, "tenant_id", None),
        path=request.url.path,
        method=request.method,
        timestamp=datetime.now(tz=timezone.utc),
    )
    return JSONResponse(status_code=status_code, content=err.model_dump(mode="json"))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Global handler for HTTPException to produce a standardized error envelope.
    """
    detail = exc.detail if isinstance(exc.detail, str) else "HTTP Error"
    return _build_error_response(
        request=request,
        status_code=exc.status_code,
        error_type="http_error",
        message=str(detail),
        details=None if isinstance(exc.detail, str) else exc.detail,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Global handler for request validation errors with a standard structure.
    """
    return _build_error_response(
        request=request,
        status_code=422,
        error_type="validation_error",
        message="Request validation failed",
        details=exc.errors(),
    )


@app.exception_handler(QueryEngineError)
async def query_engine_exception_handler(request: Request, exc: QueryEngineError):
    """
    Map query engine errors (rejected parameters, timeouts) onto the error envelope.

    The status code and error type come from the exception class.
    """
    if exc.status_code >= 500:
        logger.warning("Query failed: %s", exc.message)
    return _build_error_response(
        request=request,
        status_code=exc.status_code,
        error_type=exc.error_type,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Catch-all handler to avoid leaking stack traces and to return a structured error.
    """
    logger.exception("Unhandled error processing request")
    return _build_error_response(
        request=request,
        status_code=500,
        error_type="internal_error",
        message="An unexpected error occurred",
        details=None,
    )


@app.on_event("startup")
async def on_startup() -> None:
    """
    Create the shared query cache and run migrations.

    Migration failures are logged and do not stop the service; listings will
    report database errors until the schema is in place.
    """
    app.state.query_cache = None
    if settings.QUERY_CACHE_ENABLED:
        app.state.query_cache = create_cache_store(settings.QUERY_CACHE_URL, settings.QUERY_CACHE_MAX_ENTRIES)

    if settings.RUN_MIGRATIONS_ON_STARTUP:
        try:
            logger.info("Running Alembic migrations: upgrade head")
            # Alembic's env.py drives its own event loop, so it runs in a worker thread.
            await asyncio.to_thread(run_alembic, ["upgrade", "head"])
            logger.info("Migrations completed.")
        except Exception as exc:
            logger.exception("Migration step failed: %s", exc)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    """Close the query cache and release pooled database connections."""
    cache: Optional[CacheStore] = getattr(app.state, "query_cache", None)
    if cache is not None:
        await cache.close()
        app.state.query_cache = None
    await dispose_engine()


# Build API v1 router and include sub-routers
api_v1 = APIRouter(prefix="/api/v1")


# PUBLIC_INTERFACE
@api_v1.get(
    "/health",
    response_model=MessageResponse,
    summary="Health Check",
    tags=["Health"],
)
def health_check() -> MessageResponse:
    """
    Basic liveness health check endpoint.

    Returns:
        MessageResponse: Simple confirmation that the service is running.
    """
    return MessageResponse(message="Healthy")


# PUBLIC_INTERFACE
@api_v1.get(
    "/health/caller",
    response_model=CallerEcho,
    summary="Caller Echo",
    description="Echoes the resolved tenant and actor to verify header and token handling.",
    tags=["Health"],
)
async def caller_echo(security: SecurityContext = Depends(get_security_context)) -> CallerEcho:
    """
    Echo the caller's security context.

    Parameters:
        X-Tenant-ID (header): UUID of the tenant.
        Authorization (header): Bearer token whose tenant claim matches X-Tenant-ID.
    Returns:
        CallerEcho: tenant_id and actor_id used to scope queries.
    """
    return CallerEcho(tenant_id=security.tenant_id, actor_id=security.actor_id)


# PUBLIC_INTERFACE
@api_v1.get(
    "/health/cache",
    response_model=CacheStats,
    summary="Query cache statistics",
    tags=["Health"],
)
def cache_stats(cache: Optional[CacheStore] = Depends(get_cache_store)) -> CacheStats:
    """Return hit/miss counters of this worker's query cache."""
    enabled = settings.QUERY_CACHE_ENABLED and cache is not None
    if isinstance(cache, InMemoryCacheStore):
        return CacheStats(enabled=enabled, backend="memory", **cache.stats())
    if isinstance(cache, RedisCacheStore):
        return CacheStats(enabled=enabled, backend="redis", **cache.stats())
    return CacheStats(enabled=enabled)


api_v1.include_router(inventory_router)

# Attach api_v1 to app
app.include_router(api_v1)
