from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.query.context import SecurityContext
from src.query.expressions import FilterNode, to_document

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    """Shared cache used by the engine. Values are opaque bytes."""

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        ...

    async def close(self) -> None:
        ...


class CacheEntry(BaseModel):
    """What is stored for one cached query result."""
    data: List[Dict[str, Any]] = Field(default_factory=list)
    pagination: Dict[str, Any] = Field(default_factory=dict)
    cached_at: datetime = Field(..., description="When the entry was written (UTC)")
    ttl: int = Field(..., description="Entry TTL in seconds")
    request_id: Optional[str] = Field(default=None, description="Request that populated the entry")


class InMemoryCacheStore:
    """
    Process-local TTL cache with LRU eviction.

    Expired entries are dropped lazily on read. Writes for the same key are last
    write wins; entries are re-derivable so no coordination is attempted.
    """

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, bytes]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[bytes]:
        item = self._entries.get(key)
        if item is None:
            self.misses += 1
            return None
        expires_at, value = item
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full; evicted %s", evicted)

    async def close(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": len(self._entries),
            "max_entries": self.max_entries,
        }


class RedisCacheStore:
    """
    Cache store shared by every worker through Redis.

    Entries expire server-side via SETEX. Redis errors are logged and treated as
    a miss (reads) or a skipped write.
    """

    def __init__(self, client: Redis) -> None:
        self._client = client
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        """Build a store from a redis:// or rediss:// URL."""
        return cls(Redis.from_url(url))

    async def get(self, key: str) -> Optional[bytes]:
        try:
            value = await self._client.get(key)
        except RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            value = None
        if value is None:
            self.misses += 1
            return None
        self.hits += 1
        return value

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self._client.setex(key, ttl_seconds, value)
        except RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    async def close(self) -> None:
        await self._client.aclose()

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses}


# PUBLIC_INTERFACE
def create_cache_store(url: Optional[str] = None, max_entries: int = 10_000) -> CacheStore:
    """
    Create the query cache store for the application.

    Parameters:
        url: Redis URL; when empty the cache is process-local.
        max_entries: capacity of the process-local store.
    Returns:
        RedisCacheStore when a URL is given, otherwise InMemoryCacheStore.
    """
    if url:
        logger.info("Query cache backed by Redis")
        return RedisCacheStore.from_url(url)
    logger.info("Query cache is process-local (max_entries=%d)", max_entries)
    return InMemoryCacheStore(max_entries=max_entries)


# PUBLIC_INTERFACE
def cache_key(
    entity: str,
    spec: Mapping[str, Any],
    base_filter: FilterNode,
    security: SecurityContext,
    pagination: str,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Derive a deterministic cache key for a logical query.

    Keys are serialized with sorted keys, so parameter insertion order never
    changes the digest; list values keep their order.
    """
    payload = {
        "entity": entity,
        "query": dict(spec),
        "filter": to_document(base_filter),
        "tenant": str(security.tenant_id) if security.tenant_id is not None else None,
        # Entries are per caller, not only per tenant.
        "actor": security.actor_id,
        "pagination": pagination,
        "extra": dict(extra or {}),
    }
    encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
    return f"query:{entity}:{digest}"


def encode_entry(entry: CacheEntry) -> bytes:
    return entry.model_dump_json().encode("utf-8")


def decode_entry(raw: bytes) -> CacheEntry:
    return CacheEntry.model_validate_json(raw)
