__all__ = (
    "cli",
    "Config",
    # Cache store
    "CacheEntry",
    "CacheStore",
    "MemoryCacheStore",
    "SqliteCacheStore",
    "TTLClass",
    # Labels
    "LabelDefinition",
    "LabelMatch",
    "LabelNormalizer",
    "LabelSource",
    "LabelTable",
    "LabelIndex",
    # Upstream
    "EntityType",
    "Page",
    "UpstreamClient",
    "AsyncTokenBucket",
    # Entity cache
    "CachedValue",
    "EntityCacheManager",
    "FetchFailure",
    "Source",
    # Reconciliation
    "Confidence",
    "EntitySnapshot",
    "LabelChange",
    "LabelReconciler",
    "ReconciliationResult",
    "Strategy",
    # Pagination
    "AccumulationResult",
    "StopReason",
    "accumulate_all",
    # Facade
    "Catalog",
    "LabelListing",
    # Errors
    "LabelMirrorError",
    "NotAvailable",
    "CacheStoreError",
    "UpstreamError",
    "RateLimited",
    "UpstreamNotFound",
    "TransientError",
)

from label_mirror.cache_store import (
    CacheEntry,
    CacheStore,
    MemoryCacheStore,
    SqliteCacheStore,
    TTLClass,
)
from label_mirror.catalog import Catalog, LabelListing
from label_mirror.cli import cli
from label_mirror.config import Config
from label_mirror.entity_cache import CachedValue, EntityCacheManager, FetchFailure, Source
from label_mirror.errors import (
    CacheStoreError,
    LabelMirrorError,
    NotAvailable,
    RateLimited,
    TransientError,
    UpstreamError,
    UpstreamNotFound,
)
from label_mirror.label_index import LabelIndex
from label_mirror.labels import (
    LabelDefinition,
    LabelMatch,
    LabelNormalizer,
    LabelSource,
    LabelTable,
)
from label_mirror.paginate import AccumulationResult, StopReason, accumulate_all
from label_mirror.rate_limiter import AsyncTokenBucket
from label_mirror.reconcile import (
    Confidence,
    EntitySnapshot,
    LabelChange,
    LabelReconciler,
    ReconciliationResult,
    Strategy,
)
from label_mirror.upstream import EntityType, Page, UpstreamClient
