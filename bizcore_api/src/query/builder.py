"""
QueryBuilder: per-request compilation state.

A builder is created for one request and discarded afterwards. Each stage
method (filter, search, sort, select, paginate, populate) compiles one part of
the query from the sanitized QuerySpec and records its timing; execute() runs
any stage not yet called, consults the cache, then delegates to the execution
strategy chosen at construction time.

Typical use:

    builder = QueryBuilder(params, LOT, security, backend=..., field_types=..., entities=...)
    result = await builder.filter().search().sort().select().paginate().populate().execute()
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from src.query.backends.base import QueryBackend, Record
from src.query.cache import CacheEntry, CacheStore, cache_key, decode_entry, encode_entry
from src.query.context import EntityDescriptor, QueryConfig, QueryOptions, SecurityContext
from src.query.errors import QueryEngineError
from src.query.execution import CompiledQuery, ExecutionOutcome, TimedRunner, select_strategy
from src.query.expressions import FilterNode, Match, and_all, to_document
from src.query.field_types import FieldTypeProvider
from src.query.filters import FilterCompiler
from src.query.ordering import SortKey, compile_projection, compile_sort
from src.query.pagination import PaginationMeta, PaginationState, cursor_ordering, cursor_sort, paginate
from src.query.pipeline import describe
from src.query.population import PopulateTree, parse_populate
from src.query.result import QueryMetadata, QueryResult
from src.query.sanitize import first, requested_limit, sanitize
from src.query.search import apply_search
from src.query.trace import ExecutionTrace

logger = logging.getLogger(__name__)

_STAGE_ORDER = ("filter", "search", "sort", "select", "paginate", "populate")


def _strategy_name(raw: str) -> str:
    name = (raw or "offset").lower()
    return "cursor" if name == "keyset" else name


class QueryBuilder:
    """Compiles and executes one listing query for one entity and caller."""

    def __init__(
        self,
        raw_spec: Optional[Mapping[str, Any]],
        entity: EntityDescriptor,
        security: SecurityContext,
        *,
        backend: QueryBackend,
        field_types: FieldTypeProvider,
        entities: Mapping[str, EntityDescriptor],
        cache: Optional[CacheStore] = None,
        config: Optional[QueryConfig] = None,
        options: Optional[QueryOptions] = None,
    ) -> None:
        self.entity = entity
        self.security = security
        self.backend = backend
        self.field_types = field_types
        self.entities = entities
        self.cache = cache
        self.config = config or QueryConfig()
        self.options = options or QueryOptions()
        self.trace = ExecutionTrace()
        self.request_id = self.options.request_id or uuid4().hex

        with self.trace.stage("sanitize"):
            self.spec = sanitize(raw_spec)
            requested_limit(self.spec, self.config)

        self.pagination_strategy = _strategy_name(self.options.pagination)
        self.strategy = select_strategy(self.options.aggregate)

        self._done: set = set()
        self._filter: FilterNode = Match()
        self._search: Optional[FilterNode] = None
        self._search_applied: List[str] = []
        self._sort: Tuple[SortKey, ...] = ()
        self._projection: Optional[Tuple[str, ...]] = None
        self._pagination: Optional[PaginationState] = None
        self._cursor_field: Optional[str] = None
        self._populate: PopulateTree = {}
        self._cache_key: Optional[str] = None

    # Stages -----------------------------------------------------------------

    # PUBLIC_INTERFACE
    def filter(self) -> "QueryBuilder":
        """Compile field filters, then inject tenant and soft-delete scoping."""
        with self.trace.stage("filter") as details:
            compiler = FilterCompiler(self.entity, self.field_types, self.security, self.config, self.options)
            self._filter = compiler.compile(self.spec)
            details["or_groups"] = compiler.or_groups
        self._done.add("filter")
        return self

    # PUBLIC_INTERFACE
    def search(self) -> "QueryBuilder":
        """AND a search group over the entity's search fields onto the filter."""
        with self.trace.stage("search") as details:
            group, applied = apply_search(
                first(self.spec, "search"), self.entity.search_fields, self.options.search_strategies
            )
            self._search = group
            self._search_applied = applied
            details["applied"] = applied
            skipped = [s for s in self.options.search_strategies if s not in applied]
            if group is not None and skipped:
                details["skipped"] = skipped
        self._done.add("search")
        return self

    # PUBLIC_INTERFACE
    def sort(self) -> "QueryBuilder":
        """
        Compile the requested ordering.

        Find queries fall back to the entity's default sort and always get the
        identifier tie-break. Cursor pagination orders by the cursor field.
        Aggregate queries sort only when asked to, and without a tie-break.
        """
        with self.trace.stage("sort") as details:
            requested = first(self.spec, "sort")
            if self.options.aggregate:
                self._sort = compile_sort(requested, tie_break_field=None) if requested else ()
            else:
                keys = compile_sort(
                    requested or self.entity.default_sort,
                    self.entity.allowed_sort_fields,
                    self.entity.id_field,
                )
                if self.pagination_strategy == "cursor":
                    self._cursor_field, descending = cursor_ordering(self.spec, self.entity, keys)
                    # cursorField obeys the same allowlist as sort.
                    compile_sort(self._cursor_field, self.entity.allowed_sort_fields, self.entity.id_field)
                    keys = cursor_sort(self._cursor_field, descending, self.entity.id_field)
                self._sort = keys
            details["sort"] = [k.token() for k in self._sort]
        self._done.add("sort")
        return self

    # PUBLIC_INTERFACE
    def select(self) -> "QueryBuilder":
        """Compile the `fields` (or `select`) projection. Aggregate rows are shaped by their pipeline."""
        requested = first(self.spec, "fields") or first(self.spec, "select")
        if self.options.aggregate:
            if requested:
                self.trace.record("select", 0.0, skipped="aggregate")
            self._done.add("select")
            return self
        with self.trace.stage("select") as details:
            self._projection = compile_projection(
                requested, self.entity.allowed_select_fields, self.entity.id_field
            )
            details["fields"] = list(self._projection or ())
        self._done.add("select")
        return self

    # PUBLIC_INTERFACE
    def paginate(self) -> "QueryBuilder":
        """Compute the page to read. Needs the sort, which is compiled first if missing."""
        if "sort" not in self._done:
            self.sort()
        with self.trace.stage("paginate", strategy=self.pagination_strategy) as details:
            self._pagination = paginate(
                self.pagination_strategy, self.spec, self.config, self.entity, self.field_types, self._sort
            )
            details["limit"] = self._pagination.limit
        self._done.add("paginate")
        return self

    # PUBLIC_INTERFACE
    def populate(self) -> "QueryBuilder":
        """Parse requested relations. Aggregate queries never populate."""
        raw = first(self.spec, "populate")
        if self.options.aggregate:
            if raw:
                self.trace.record("populate", 0.0, skipped="aggregate")
        else:
            with self.trace.stage("populate_parse") as details:
                self._populate = parse_populate(raw, self.entity, self.entities, self.config.max_nested_depth)
                details["relations"] = sorted(self._populate)
        self._done.add("populate")
        return self

    # Compilation --------------------------------------------------------------

    # PUBLIC_INTERFACE
    def compile(self) -> CompiledQuery:
        """Run every stage not yet called and return the compiled query."""
        for name in _STAGE_ORDER:
            if name not in self._done:
                getattr(self, name)()
        return CompiledQuery(
            entity=self.entity,
            filter=and_all([self._filter, self._search]),
            sort=self._sort,
            projection=self._projection,
            pagination=self._pagination,
            pagination_strategy=self.pagination_strategy,
            cursor_field=self._cursor_field,
            populate=self._populate,
            pipeline=tuple(self.options.pipeline or ()),
        )

    @property
    def cache_key(self) -> str:
        """Computed once per builder."""
        if self._cache_key is None:
            extra: Dict[str, Any] = {
                "execution": self.strategy.name,
                "include_deleted": self.options.include_deleted,
                "allow_tenant_override": self.options.allow_tenant_override,
                "search_strategies": list(self.options.search_strategies),
            }
            if self.options.pipeline is not None:
                extra["pipeline"] = describe(list(self.options.pipeline))
            self._cache_key = cache_key(
                self.entity.name,
                self.spec,
                self.options.base_filter,
                self.security,
                self.pagination_strategy,
                extra,
            )
        return self._cache_key

    # PUBLIC_INTERFACE
    def explain(self) -> Dict[str, Any]:
        """
        Describe the compiled query without touching the datastore.

        Returns:
            dict with the filter document, sort, projection, pagination, relations,
            the aggregate pipeline (aggregate only), the cache key and stage timings.
        """
        query = self.compile()
        state = query.pagination
        plan: Dict[str, Any] = {
            "entity": self.entity.name,
            "execution": self.strategy.name,
            "filter": to_document(query.filter),
            "sort": [k.token() for k in query.sort],
            "projection": list(query.projection) if query.projection else None,
            "pagination": {
                "strategy": self.pagination_strategy,
                "limit": state.limit,
                "skip": getattr(state, "skip", None),
                "cursor_field": getattr(state, "cursor_field", None),
                "cursor": getattr(state, "raw_cursor", None),
            },
            "populate": query.populate,
            "cache_key": self.cache_key,
            "performance": self.trace.as_dicts(),
        }
        if self.options.aggregate:
            plan["pipeline"] = describe(self.strategy.stages(query))
        return plan

    # Execution ----------------------------------------------------------------

    def _use_cache(self) -> bool:
        return self.cache is not None and self.config.enable_cache and self.options.use_cache

    def _transform(self, data: List[Record]) -> List[Record]:
        if self.options.transform is None:
            return data
        with self.trace.stage("transform"):
            return self.options.transform(data)

    def _result(
        self,
        data: List[Record],
        pagination: PaginationMeta,
        started: float,
        query_count: int,
        entry: Optional[CacheEntry] = None,
    ) -> QueryResult:
        metadata = QueryMetadata(
            request_id=self.request_id,
            entity=self.entity.name,
            execution=self.strategy.name,
            from_cache=entry is not None,
            cache_hit=entry is not None,
            cached_at=entry.cached_at if entry else None,
            ttl=entry.ttl if entry else None,
            query_count=query_count,
            execution_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
            search_strategies=self._search_applied,
            timestamp=datetime.now(timezone.utc),
        )
        return QueryResult(
            data=self._transform(data),
            pagination=pagination,
            metadata=metadata,
            performance=self.trace.stages,
        )

    # PUBLIC_INTERFACE
    async def execute(self) -> QueryResult:
        """
        Compile (if needed) and run the query.

        The cache is read first; a hit returns without touching the datastore.
        On a miss the selected strategy runs under the configured timeout and the
        result is written back with the configured TTL.

        Raises:
            ValidationError: the query was rejected during compilation.
            QueryTimeout: a datastore call exceeded the timeout.
        """
        started = time.perf_counter()
        try:
            query = self.compile()
            use_cache = self._use_cache()

            if use_cache:
                with self.trace.stage("cache_read") as details:
                    raw = await self.cache.get(self.cache_key)
                    details["hit"] = raw is not None
                if raw is not None:
                    entry = decode_entry(raw)
                    logger.info("Query cache hit entity=%s key=%s", self.entity.name, self.cache_key)
                    return self._result(
                        entry.data, PaginationMeta.model_validate(entry.pagination), started, 0, entry
                    )
                logger.info("Query cache miss entity=%s key=%s", self.entity.name, self.cache_key)

            runner = TimedRunner(self.trace, self.config.timeout)
            outcome: ExecutionOutcome = await self.strategy.run(
                query, self.backend, self.security, self.entities, runner
            )

            if use_cache:
                entry = CacheEntry(
                    data=outcome.data,
                    pagination=outcome.pagination.model_dump(mode="json"),
                    cached_at=datetime.now(timezone.utc),
                    ttl=self.config.cache_ttl,
                    request_id=self.request_id,
                )
                with self.trace.stage("cache_write"):
                    await self.cache.set_with_ttl(self.cache_key, encode_entry(entry), self.config.cache_ttl)

            return self._result(outcome.data, outcome.pagination, started, outcome.query_count)
        except QueryEngineError:
            raise
        except Exception:
            logger.exception(
                "Query execution failed entity=%s tenant=%s actor=%s request_id=%s spec=%s",
                self.entity.name,
                self.security.tenant_id,
                self.security.actor_id,
                self.request_id,
                self.spec,
            )
            raise
