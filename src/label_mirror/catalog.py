"""
Catalog facade.

Wires the cache store, upstream client, label table, index, entity cache and
reconciler from one Config and exposes the operations callers use:
get / get_many, search, resolve_label, reconcile_label, scan and
list_for_label.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from label_mirror.cache_store import CacheStore, MemoryCacheStore, SqliteCacheStore, TTLClass
from label_mirror.config import CacheBackend, CacheConfig, Config
from label_mirror.entity_cache import CachedValue, EntityCacheManager, FetchFailure, Source
from label_mirror.errors import CacheStoreError, NotAvailable, TransientError
from label_mirror.label_index import LabelIndex, release_timestamp_of
from label_mirror.labels import LabelNormalizer, LabelTable, fold
from label_mirror.paginate import AccumulationResult, accumulate_all, upstream_pages
from label_mirror.reconcile import EntitySnapshot, LabelReconciler, ReconciliationResult
from label_mirror.upstream import EntityType, UpstreamClient

log = logging.getLogger(__name__)

SEARCH_ENTITY_TYPE = "search"


def open_store(config: CacheConfig) -> CacheStore:
    """Create the configured cache store backend."""
    thresholds = {
        TTLClass.SHORT: float(config.short_ttl_s),
        TTLClass.MEDIUM: float(config.medium_ttl_s),
        TTLClass.LONG: float(config.long_ttl_s),
    }
    if config.backend == CacheBackend.MEMORY:
        return MemoryCacheStore(thresholds)
    return SqliteCacheStore(config.path, thresholds)


class ListingSource:
    """Where a label listing was served from."""

    INDEX = "index"
    UPSTREAM_SCAN = "upstream-scan"


@dataclass
class LabelListing:
    """Entities of one type belonging to one label."""

    label_id: str
    entity_type: str
    items: list[Any] = field(default_factory=list)
    complete: bool = True
    source: str = ListingSource.INDEX
    degraded: bool = False  # some items came from stale fallback


class Catalog:
    """Entry point for route handlers, batch jobs and the CLI."""

    def __init__(
        self,
        config: Config,
        store: CacheStore | None = None,
        client: UpstreamClient | None = None,
        table: LabelTable | None = None,
    ):
        self.config = config
        self.table = table if table is not None else LabelTable.from_config(config.labels)
        self.normalizer = LabelNormalizer(self.table)
        self.reconciler = LabelReconciler(self.table, self.normalizer)
        self.store = store if store is not None else open_store(config.cache)
        self.client = client
        self.index = LabelIndex(self.store, self.normalizer)
        upstream = config.upstream
        self.entities = EntityCacheManager(
            self.store,
            client,
            self.index,
            fetch_timeout_s=max(upstream.entity_timeout_s, upstream.listing_timeout_s),
            default_retry_after_s=upstream.default_retry_after_s,
            max_backoff_s=upstream.max_backoff_s,
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        offline: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Catalog:
        """Build a catalog; ``offline`` serves from cache only."""
        client = None if offline else UpstreamClient.from_config(config.upstream, transport)
        return cls(config, client=client)

    async def get(self, entity_type: EntityType | str, entity_id: str | int) -> CachedValue:
        return await self.entities.get_or_fetch(entity_type, entity_id)

    async def get_many(
        self, entity_type: EntityType | str, entity_ids: list[str]
    ) -> dict[str, CachedValue | FetchFailure]:
        return await self.entities.get_or_fetch_many(entity_type, entity_ids)

    def resolve_label(self, ref: str | int | None) -> str | None:
        return self.normalizer.resolve_id(ref)

    def reconcile_label(self, entity: EntitySnapshot | dict[str, Any]) -> ReconciliationResult:
        if isinstance(entity, dict):
            entity = EntitySnapshot.from_record(entity)
        return self.reconciler.reconcile(entity)

    async def scan(
        self,
        listing_kind: str,
        filters: dict[str, Any] | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
    ) -> AccumulationResult:
        """Drain an upstream listing into one deduplicated collection."""
        if self.client is None:
            raise NotAvailable(listing_kind, "*", TransientError("offline: no upstream client"))
        return await accumulate_all(
            upstream_pages(self.client, listing_kind, filters),
            page_size=page_size or self.config.pagination.page_size,
            max_pages=max_pages or self.config.pagination.max_pages,
        )

    async def warm_label(self, entity_type: EntityType | str, label_id: str) -> tuple[list[Any], bool]:
        """
        Fill the label index from an upstream listing.

        Every listed item is reconciled; items that resolve to ``label_id``
        are written through and indexed. Returns those items and whether the
        scan completed.
        """
        entity_type = EntityType(entity_type)
        scan = await self.scan(entity_type.plural, {"label": label_id})
        kept = []
        for item in scan.items:
            if not isinstance(item, dict) or item.get("id") is None:
                continue
            result = self.reconciler.reconcile(EntitySnapshot.from_record(item, str(entity_type)))
            if result.resolved_label_id != label_id:
                log.debug(
                    f"{entity_type} {item['id']} listed under {label_id} but reconciles to "
                    f"{result.resolved_label_id} ({result.strategy_used})"
                )
                continue
            entity_id = str(item["id"])
            await self.entities.write_through(entity_type, entity_id, item)
            try:
                await self.index.add(label_id, entity_type, entity_id, release_timestamp_of(item))
            except CacheStoreError as e:
                log.warning(f"Index update failed for {entity_type} {entity_id}: {e}")
            kept.append(item)
        if scan.complete:
            try:
                await self.index.mark_warmed(label_id, entity_type, len(kept))
            except CacheStoreError as e:
                log.warning(f"Could not mark {label_id}/{entity_type} warmed: {e}")
        log.info(f"Warmed {label_id}/{entity_type}: {len(kept)} of {len(scan.items)} listed items")
        return kept, scan.complete

    async def list_for_label(
        self,
        entity_type: EntityType | str,
        label_ref: str | int,
        limit: int | None = None,
    ) -> LabelListing | None:
        """
        Entities of ``entity_type`` on a label, newest release first.

        Served from the label index once a complete scan has warmed it;
        otherwise the upstream listing is scanned and reconciled. Offline,
        a partial index is served with ``complete=False``. Returns None when
        the label reference does not resolve.
        """
        label_id = self.resolve_label(label_ref)
        if label_id is None:
            return None
        entity_type = EntityType(entity_type)

        try:
            warmed = await self.index.is_warmed(label_id, entity_type)
            ids = await self.index.recent(label_id, entity_type, limit)
        except CacheStoreError as e:
            log.warning(f"Label index unavailable, falling back to upstream scan: {e}")
            warmed, ids = False, []

        if ids and (warmed or self.client is None):
            results = await self.entities.get_or_fetch_many(entity_type, ids)
            items = [r.value for r in results.values() if isinstance(r, CachedValue)]
            return LabelListing(
                label_id=label_id,
                entity_type=entity_type,
                items=items,
                complete=warmed and len(items) == len(ids),
                source=ListingSource.INDEX,
                degraded=any(
                    isinstance(r, CachedValue) and r.source == Source.STALE_FALLBACK
                    for r in results.values()
                ),
            )

        items, complete = await self.warm_label(entity_type, label_id)
        items.sort(key=lambda item: (-(release_timestamp_of(item) or 0.0), str(item["id"])))
        if limit is not None:
            items = items[:limit]
        return LabelListing(
            label_id=label_id,
            entity_type=entity_type,
            items=items,
            complete=complete,
            source=ListingSource.UPSTREAM_SCAN,
        )

    async def search(
        self,
        query: str,
        label_ref: str | int | None = None,
        limit: int = 20,
    ) -> CachedValue | None:
        """
        Track search, optionally restricted to one label.

        Results are cached under ``search:<folded query>:<label>`` in the
        SHORT TTL class. Returns None when ``label_ref`` does not resolve.
        """
        label_id = None
        if label_ref is not None:
            label_id = self.resolve_label(label_ref)
            if label_id is None:
                return None
        normalized = fold(query)
        client = self.client

        async def fetch(_: str) -> list[dict[str, Any]]:
            if client is None:
                raise TransientError("No upstream client configured (cache-only mode)")
            filters = {"q": normalized, "label": label_id}
            page = await client.fetch_page(EntityType.TRACK.plural, filters, 0, limit)
            return page.items

        return await self.entities.get_or_fetch(
            SEARCH_ENTITY_TYPE,
            f"{normalized}:{label_id or '*'}",
            ttl_class=TTLClass.SHORT,
            fetch_fn=fetch,
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
        await self.store.close()
