from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from src.query.context import EntityDescriptor, QueryOptions, SecurityContext
from src.query.engine import QueryEngine
from src.query.result import QueryResult


class BaseRepository:
    """
    Base class for listing repositories.

    Subclasses declare the EntityDescriptor they serve; every listing goes
    through the shared QueryEngine so filtering, tenant scoping, pagination and
    caching behave the same for every entity.

    Note:
      When the engine runs on the SQLAlchemy backend, Postgres RLS (the
      `app.tenant_id` GUC set by tenant_context) applies on top of the tenant
      constraint the engine injects.
    """

    descriptor: EntityDescriptor

    def __init__(self, engine: QueryEngine) -> None:
        self.engine = engine

    # PUBLIC_INTERFACE
    async def list(
        self,
        params: Optional[Mapping[str, Any]],
        security: SecurityContext,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        """Run a listing query for this repository's entity."""
        return await self.engine.build_and_execute(params, self.descriptor, security, options)

    # PUBLIC_INTERFACE
    def explain(
        self,
        params: Optional[Mapping[str, Any]],
        security: SecurityContext,
        options: Optional[QueryOptions] = None,
    ) -> Dict[str, Any]:
        """Return the compiled plan of a listing query without running it."""
        return self.engine.explain(params, self.descriptor, security, options)
