"""
Async engine, sessions and the tenant GUC used by Row-Level Security.

The engine is created on first use and disposed at application shutdown.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional, Union
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

_ENGINE: Optional[AsyncEngine] = None
_SESSION_MAKER: Optional[async_sessionmaker[AsyncSession]] = None

_SET_TENANT = text("SELECT set_config('app.tenant_id', :tenant_id, false)")


def _engine_options(settings: Settings) -> Dict[str, Any]:
    server_settings = {"application_name": settings.DB_APPLICATION_NAME}
    if settings.DB_STATEMENT_TIMEOUT_MS:
        server_settings["statement_timeout"] = str(settings.DB_STATEMENT_TIMEOUT_MS)
    return {
        "echo": settings.SQL_ECHO,
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE_SECONDS,
        # asyncpg applies these to every pooled connection.
        "connect_args": {"server_settings": server_settings},
    }


def _session_maker() -> async_sessionmaker[AsyncSession]:
    global _ENGINE, _SESSION_MAKER
    if _SESSION_MAKER is None:
        settings = get_settings()
        _ENGINE = create_async_engine(settings.async_database_url, **_engine_options(settings))
        _SESSION_MAKER = async_sessionmaker(bind=_ENGINE, expire_on_commit=False, autoflush=False)
        logger.info("Database engine created (pool_size=%d)", settings.DB_POOL_SIZE)
    return _SESSION_MAKER


# PUBLIC_INTERFACE
def get_engine() -> AsyncEngine:
    """Return the process-wide AsyncEngine, creating it if needed."""
    _session_maker()
    assert _ENGINE is not None
    return _ENGINE


# PUBLIC_INTERFACE
async def dispose_engine() -> None:
    """Close pooled connections and forget the engine. Safe to call when never initialized."""
    global _ENGINE, _SESSION_MAKER
    engine, _ENGINE, _SESSION_MAKER = _ENGINE, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")


# PUBLIC_INTERFACE
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one AsyncSession per request."""
    async with _session_maker()() as session:
        yield session


# PUBLIC_INTERFACE
async def set_current_tenant(session: AsyncSession, tenant_id: Union[str, UUID, None]) -> None:
    """
    Set the `app.tenant_id` GUC read by the RLS policies.

    Parameters:
        session: active AsyncSession
        tenant_id: tenant to scope to; None clears the setting, which matches no rows
    """
    await session.execute(_SET_TENANT, {"tenant_id": "" if tenant_id is None else str(tenant_id)})


# PUBLIC_INTERFACE
@asynccontextmanager
async def tenant_context(
    session: AsyncSession, tenant_id: Union[str, UUID]
) -> AsyncGenerator[AsyncSession, None]:
    """
    Scope a session to one tenant for the duration of the block.

    RLS is a second line of defence: the query engine already injects the tenant
    constraint into every statement it builds.
    """
    await set_current_tenant(session, tenant_id)
    try:
        yield session
    finally:
        await set_current_tenant(session, None)
