"""
Tenant-scoped query engine.

Turns untrusted listing parameters (filters, search, sort, projection,
pagination, population) into validated, tenant-scoped datastore queries with
caching and per-stage timing. Datastore access goes through a QueryBackend;
schema knowledge comes from a FieldTypeProvider.
"""
from .builder import QueryBuilder
from .cache import CacheStore, InMemoryCacheStore, cache_key
from .context import EntityDescriptor, QueryConfig, QueryOptions, RelationDescriptor, SecurityContext
from .engine import QueryEngine
from .errors import QueryEngineError, QueryTimeout, RateLimitError, ValidationError
from .expressions import FieldType
from .result import QueryMetadata, QueryResult

__all__ = [
    "QueryBuilder",
    "CacheStore",
    "InMemoryCacheStore",
    "cache_key",
    "EntityDescriptor",
    "QueryConfig",
    "QueryOptions",
    "RelationDescriptor",
    "SecurityContext",
    "QueryEngine",
    "QueryEngineError",
    "QueryTimeout",
    "RateLimitError",
    "ValidationError",
    "FieldType",
    "QueryMetadata",
    "QueryResult",
]
