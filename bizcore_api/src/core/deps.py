from __future__ import annotations

import logging
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import actor_id_var
from src.core.security import decode_token
from src.core.settings import get_app_settings, get_query_config
from src.db.session import get_async_session, tenant_context
from src.query.backends.sqlalchemy import SqlAlchemyBackend
from src.query.cache import CacheStore
from src.query.context import SecurityContext
from src.query.engine import QueryEngine
from src.query.field_types import SqlAlchemyFieldTypeProvider
from src.repositories.inventory import ENTITIES, ENTITY_MODELS

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

# Column introspection is cached per (entity, path), so one provider serves every request.
_FIELD_TYPES = SqlAlchemyFieldTypeProvider(ENTITY_MODELS)


# PUBLIC_INTERFACE
async def get_tenant_id(x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID")) -> UUID:
    """
    Extract and validate the tenant id from the X-Tenant-ID header.

    Raises:
        HTTPException: 400 Bad Request if header missing or invalid UUID.
    Returns:
        UUID: tenant identifier
    """
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required.",
        )
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header must be a valid UUID string.",
        )


# PUBLIC_INTERFACE
async def get_security_context(
    tenant_id: UUID = Depends(get_tenant_id),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> SecurityContext:
    """
    Resolve the caller's tenant and actor.

    The bearer token's tenant claim must match the X-Tenant-ID header; its
    subject becomes the actor id. Without a token the request is rejected
    unless REQUIRE_AUTH is disabled, in which case the actor is anonymous.
    """
    actor_id: Optional[str] = None
    if credentials is None:
        if get_app_settings().REQUIRE_AUTH:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    else:
        try:
            payload = decode_token(credentials.credentials)
        except JWTError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

        tok_tenant = payload.get("tenant_id")
        if not tok_tenant or str(tok_tenant) != str(tenant_id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant mismatch")

        actor_id = payload.get("sub")
        if not actor_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    actor_id_var.set(actor_id)
    return SecurityContext(tenant_id=tenant_id, actor_id=actor_id)


# PUBLIC_INTERFACE
async def get_tenant_session(
    tenant_id: UUID = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_async_session),
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an AsyncSession with Row-Level Security (RLS) configured for the given tenant.

    This dependency ensures the Postgres session GUC `app.tenant_id` is set to the
    provided tenant_id while the session is in use, then reset after use.
    """
    async with tenant_context(session, tenant_id):
        yield session


# PUBLIC_INTERFACE
def get_cache_store(request: Request) -> Optional[CacheStore]:
    """Return the process-wide query cache created at startup (None before startup)."""
    return getattr(request.app.state, "query_cache", None)


# PUBLIC_INTERFACE
async def get_query_engine(
    session: AsyncSession = Depends(get_tenant_session),
    cache: Optional[CacheStore] = Depends(get_cache_store),
) -> QueryEngine:
    """Build a QueryEngine bound to the request's tenant-scoped session."""
    return QueryEngine(
        backend=SqlAlchemyBackend(session, ENTITY_MODELS),
        field_types=_FIELD_TYPES,
        entities=ENTITIES,
        cache=cache,
        config=get_query_config(),
    )


# PUBLIC_INTERFACE
def get_request_id(request: Request) -> Optional[str]:
    """Correlation id assigned by the request context middleware."""
    return getattr(request.state, "correlation_id", None)
