"""
Get-or-fetch entity cache.

Lookup order for every entity:
1. Fresh cache entry -> source "cache"
2. Live upstream fetch, written through -> source "upstream"
3. Upstream failed but an entry exists (stale or not) -> source "stale-fallback"
4. Nothing at all -> NotAvailable

A 429 from upstream is retried exactly once after the provider's
Retry-After (or a default), so a request can never stall in a retry loop.
Cache store failures degrade to a miss on read and are logged on write.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx

from label_mirror.cache_store import CacheEntry, CacheStore, TTLClass
from label_mirror.errors import (
    CacheStoreError,
    LabelMirrorError,
    NotAvailable,
    RateLimited,
    TransientError,
    UpstreamError,
)
from label_mirror.label_index import LabelIndex
from label_mirror.upstream import EntityType, UpstreamClient

log = logging.getLogger(__name__)

FetchFn = Callable[[str], Awaitable[Any]]

DEFAULT_TTL_CLASSES: dict[str, TTLClass] = {
    EntityType.TRACK: TTLClass.LONG,
    EntityType.ALBUM: TTLClass.LONG,
    EntityType.RELEASE: TTLClass.LONG,
    EntityType.ARTIST: TTLClass.MEDIUM,
    "search": TTLClass.SHORT,
}


class Source(StrEnum):
    """Where a returned value came from."""

    CACHE = "cache"
    UPSTREAM = "upstream"
    STALE_FALLBACK = "stale-fallback"


@dataclass(frozen=True)
class CachedValue:
    """A value plus its provenance."""

    value: Any
    source: Source
    cached_at: float | None = None

    @property
    def degraded(self) -> bool:
        """True when served from cache because upstream failed."""
        return self.source == Source.STALE_FALLBACK


@dataclass(frozen=True)
class FetchFailure:
    """Per-ID failure slot in a batch result."""

    error: LabelMirrorError


class EntityCacheManager:
    """Per-entity-type get-or-fetch over a CacheStore and an UpstreamClient."""

    def __init__(
        self,
        store: CacheStore,
        client: UpstreamClient | None = None,
        index: LabelIndex | None = None,
        fetch_timeout_s: float = 30.0,
        default_retry_after_s: float = 3.0,
        max_backoff_s: float = 30.0,
        ttl_classes: dict[str, TTLClass] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            store: Cache store (shared, the only mutable shared resource)
            client: Upstream client; None means cache-only (every miss fails)
            index: Label index fed on write-through, optional
            fetch_timeout_s: Hard bound on one fetch attempt
            default_retry_after_s: Backoff when a 429 carries no Retry-After
            max_backoff_s: Cap on any single backoff sleep
            ttl_classes: Overrides for the per-entity-type TTL class
            sleep: Injectable sleep (tests record instead of waiting)
        """
        self.store = store
        self.client = client
        self.index = index
        self.fetch_timeout_s = fetch_timeout_s
        self.default_retry_after_s = default_retry_after_s
        self.max_backoff_s = max_backoff_s
        self.ttl_classes = {**DEFAULT_TTL_CLASSES, **(ttl_classes or {})}
        self._sleep = sleep

    @staticmethod
    def cache_key(entity_type: str, entity_id: str) -> str:
        return f"{entity_type}:{entity_id}"

    def ttl_class_for(self, entity_type: str) -> TTLClass:
        return self.ttl_classes.get(str(entity_type), TTLClass.MEDIUM)

    def _upstream_fetch_fn(self, entity_type: str) -> FetchFn:
        client = self.client

        async def fetch(entity_id: str) -> Any:
            if client is None:
                raise TransientError("No upstream client configured (cache-only mode)")
            return await client.fetch_entity(entity_type, entity_id)

        return fetch

    async def _read(self, key: str) -> CacheEntry[Any] | None:
        try:
            return await self.store.get(key)
        except CacheStoreError as e:
            log.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None

    async def write_through(
        self,
        entity_type: str,
        entity_id: str,
        value: Any,
        ttl_class: TTLClass | None = None,
    ) -> float | None:
        """
        Store a freshly fetched value and index it under its label.

        Best-effort: returns the cached_at timestamp, or None if the store failed.
        A failed index update leaves the value cached.
        """
        key = self.cache_key(entity_type, entity_id)
        try:
            entry = await self.store.put(key, value, ttl_class or self.ttl_class_for(entity_type))
        except CacheStoreError as e:
            log.warning(f"Cache write failed for {key}, continuing uncached: {e}")
            return None
        if self.index is not None:
            try:
                await self.index.observe(str(entity_type), entity_id, value)
            except CacheStoreError as e:
                log.warning(f"Label index update failed for {key}: {e}")
        return entry.cached_at

    async def _attempt(self, fetch_fn: FetchFn, entity_id: str) -> Any:
        try:
            return await asyncio.wait_for(fetch_fn(entity_id), timeout=self.fetch_timeout_s)
        except UpstreamError:
            raise
        except TimeoutError as e:
            raise TransientError(f"Fetch of {entity_id} exceeded {self.fetch_timeout_s:g}s") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Fetch of {entity_id} failed: {e}") from e
        except Exception as e:
            # Caller-supplied fetch functions may fail on bad payloads
            raise TransientError(f"Fetch of {entity_id} raised {type(e).__name__}: {e}") from e

    async def _fetch(self, fetch_fn: FetchFn, key: str, entity_id: str) -> Any:
        try:
            return await self._attempt(fetch_fn, entity_id)
        except RateLimited as e:
            delay = e.retry_after if e.retry_after is not None else self.default_retry_after_s
            delay = min(delay, self.max_backoff_s)
            log.info(f"Rate limited fetching {key}; retrying once in {delay:g}s")
            await self._sleep(delay)
            return await self._attempt(fetch_fn, entity_id)

    async def get_or_fetch(
        self,
        entity_type: EntityType | str,
        entity_id: str | int,
        ttl_class: TTLClass | None = None,
        fetch_fn: FetchFn | None = None,
    ) -> CachedValue:
        """
        Return the entity from cache, upstream, or stale fallback.

        Args:
            entity_type: Entity type, also the cache key prefix
            entity_id: Upstream ID
            ttl_class: Staleness class; defaults per entity type
            fetch_fn: Upstream fetch; defaults to the client's fetch_entity

        Raises:
            NotAvailable: Fetch failed and nothing was ever cached
        """
        entity_type = str(entity_type)
        entity_id = str(entity_id)
        ttl = ttl_class or self.ttl_class_for(entity_type)
        key = self.cache_key(entity_type, entity_id)

        entry = await self._read(key)
        if entry is not None and not self.store.is_stale(entry, ttl):
            return CachedValue(entry.value, Source.CACHE, entry.cached_at)

        try:
            value = await self._fetch(fetch_fn or self._upstream_fetch_fn(entity_type), key, entity_id)
        except UpstreamError as e:
            if entry is not None:
                log.warning(f"Serving stale {key} (cached_at={entry.cached_at:.0f}): {e}")
                return CachedValue(entry.value, Source.STALE_FALLBACK, entry.cached_at)
            raise NotAvailable(entity_type, entity_id, e) from e

        cached_at = await self.write_through(entity_type, entity_id, value, ttl)
        return CachedValue(value, Source.UPSTREAM, cached_at)

    async def get_or_fetch_many(
        self,
        entity_type: EntityType | str,
        entity_ids: Iterable[str | int],
        ttl_class: TTLClass | None = None,
        fetch_fn: FetchFn | None = None,
        concurrency: int = 8,
    ) -> dict[str, CachedValue | FetchFailure]:
        """
        Batch get-or-fetch; one failing ID never fails the batch.

        IDs are deduplicated; the result keeps first-seen order.
        """
        ids = list(dict.fromkeys(str(i) for i in entity_ids))
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def one(entity_id: str) -> CachedValue | FetchFailure:
            async with semaphore:
                try:
                    return await self.get_or_fetch(entity_type, entity_id, ttl_class, fetch_fn)
                except LabelMirrorError as e:
                    return FetchFailure(e)
                except Exception as e:
                    log.warning(f"Unexpected failure for {entity_type} {entity_id}: {e!r}")
                    return FetchFailure(NotAvailable(str(entity_type), entity_id, e))

        results = await asyncio.gather(*(one(i) for i in ids))
        failed = sum(1 for r in results if isinstance(r, FetchFailure))
        if failed:
            log.info(f"Batch {entity_type}: {failed}/{len(ids)} not available")
        return dict(zip(ids, results, strict=True))
