from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Union

from src.query.backends.base import QueryBackend
from src.query.cache import CacheStore
from src.query.builder import QueryBuilder
from src.query.context import EntityDescriptor, QueryConfig, QueryOptions, SecurityContext
from src.query.field_types import FieldTypeProvider
from src.query.result import QueryResult


class QueryEngine:
    """
    Entry point used by repositories and routes.

    Holds the long-lived collaborators (backend, field types, entity registry,
    cache store, configuration) and hands out one QueryBuilder per request.
    """

    def __init__(
        self,
        backend: QueryBackend,
        field_types: FieldTypeProvider,
        entities: Mapping[str, EntityDescriptor],
        cache: Optional[CacheStore] = None,
        config: Optional[QueryConfig] = None,
    ) -> None:
        self.backend = backend
        self.field_types = field_types
        self.entities: Dict[str, EntityDescriptor] = dict(entities)
        self.cache = cache
        self.config = config or QueryConfig()

    def descriptor(self, entity: Union[str, EntityDescriptor]) -> EntityDescriptor:
        if isinstance(entity, EntityDescriptor):
            return entity
        try:
            return self.entities[entity]
        except KeyError:
            raise ValueError(f"Unknown entity: {entity}")

    # PUBLIC_INTERFACE
    def build(
        self,
        raw_spec: Optional[Mapping[str, Any]],
        entity: Union[str, EntityDescriptor],
        security: SecurityContext,
        options: Optional[QueryOptions] = None,
    ) -> QueryBuilder:
        """
        Create a builder for one request.

        Raises:
            ValidationError: the limit parameter is invalid.
        """
        return QueryBuilder(
            raw_spec,
            self.descriptor(entity),
            security,
            backend=self.backend,
            field_types=self.field_types,
            entities=self.entities,
            cache=self.cache,
            config=self.config,
            options=options,
        )

    # PUBLIC_INTERFACE
    async def build_and_execute(
        self,
        raw_spec: Optional[Mapping[str, Any]],
        entity: Union[str, EntityDescriptor],
        security: SecurityContext,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        """Compile every stage and execute in one call."""
        builder = self.build(raw_spec, entity, security, options)
        return await builder.filter().search().sort().select().paginate().populate().execute()

    # PUBLIC_INTERFACE
    def explain(
        self,
        raw_spec: Optional[Mapping[str, Any]],
        entity: Union[str, EntityDescriptor],
        security: SecurityContext,
        options: Optional[QueryOptions] = None,
    ) -> Dict[str, Any]:
        """Return the compiled plan for a query without executing it."""
        return self.build(raw_spec, entity, security, options).explain()
