"""Cache store for mirrored upstream metadata.

Key/value entries carry the time they were cached and a TTL class; staleness
is judged at read time against per-class thresholds, so stale entries stay
available as a fallback until they are purged. Set and sorted-set primitives
back the per-label index.

Two backends share one async interface:
- MemoryCacheStore: process-local dictionaries, for tests and one-shot runs
- SqliteCacheStore: single SQLite file, survives restarts
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, Generic, TypeVar

from label_mirror.errors import CacheStoreError

T = TypeVar("T")

log = logging.getLogger(__name__)


class TTLClass(StrEnum):
    """Staleness class of a cached value."""

    SHORT = "short"  # search results, aggregate listings
    MEDIUM = "medium"  # artists
    LONG = "long"  # tracks, releases


DEFAULT_THRESHOLDS: dict[TTLClass, float] = {
    TTLClass.SHORT: 3600.0,  # 1 hour
    TTLClass.MEDIUM: 86400.0,  # 24 hours
    TTLClass.LONG: 604800.0,  # 7 days
}


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with its write time and TTL class."""

    key: str
    value: T
    cached_at: float
    ttl_class: TTLClass

    def age(self, now: float) -> float:
        return now - self.cached_at


def redis_range(items: list[T], start: int, end: int) -> list[T]:
    """Slice ``items`` with inclusive, possibly negative indices (ZRANGE semantics)."""
    n = len(items)
    if start < 0:
        start += n
    if end < 0:
        end += n
    start = max(start, 0)
    end = min(end, n - 1)
    if start > end:
        return []
    return items[start : end + 1]


class CacheStore(ABC):
    """Async cache store interface.

    Backend failures raise CacheStoreError; callers on the request path are
    expected to treat a failed read as a miss and a failed write as best-effort.
    """

    def __init__(
        self,
        thresholds: Mapping[TTLClass, float] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        # Looked up per store so freezegun can patch time.time
        self.clock = clock or time.time

    def threshold(self, ttl_class: TTLClass) -> float:
        return self.thresholds[TTLClass(ttl_class)]

    def is_stale(self, entry: CacheEntry[Any], ttl_class: TTLClass | None = None) -> bool:
        """Return True when the entry is older than its TTL class allows.

        ``ttl_class`` overrides the class the entry was written with.
        """
        limit = self.threshold(ttl_class or entry.ttl_class)
        return entry.age(self.clock()) > limit

    @abstractmethod
    async def get(self, key: str) -> CacheEntry[Any] | None:
        """Return the entry for ``key`` regardless of staleness, or None."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_class: TTLClass) -> CacheEntry[Any]:
        """Store ``value``, overwriting any previous entry for ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; returns True if it existed."""

    @abstractmethod
    async def add_to_set(self, set_key: str, member: str) -> None: ...

    @abstractmethod
    async def set_members(self, set_key: str) -> set[str]: ...

    @abstractmethod
    async def z_add(self, z_key: str, member: str, score: float) -> None: ...

    @abstractmethod
    async def z_range(self, z_key: str, start: int = 0, end: int = -1, desc: bool = False) -> list[str]:
        """Members ordered by score (ties by member), inclusive index range."""

    @abstractmethod
    async def clear_all(self) -> None:
        """Wipe every entry, set and sorted set. Maintenance only."""

    @abstractmethod
    async def purge_older_than(self, max_age_s: float) -> int:
        """Drop entries cached more than ``max_age_s`` ago; returns the count."""

    @abstractmethod
    async def stats(self) -> dict[str, int]: ...

    async def close(self) -> None:
        return None


class MemoryCacheStore(CacheStore):
    """In-process cache store.

    No method awaits while touching the dictionaries, so each operation is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(
        self,
        thresholds: Mapping[TTLClass, float] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        super().__init__(thresholds, clock)
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._sets: dict[str, set[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    async def get(self, key: str) -> CacheEntry[Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return CacheEntry(entry.key, copy.deepcopy(entry.value), entry.cached_at, entry.ttl_class)

    async def put(self, key: str, value: Any, ttl_class: TTLClass) -> CacheEntry[Any]:
        now = self.clock()
        previous = self._entries.get(key)
        if previous is not None:
            now = max(now, previous.cached_at)
        entry = CacheEntry(key, copy.deepcopy(value), now, TTLClass(ttl_class))
        self._entries[key] = entry
        return entry

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def add_to_set(self, set_key: str, member: str) -> None:
        self._sets.setdefault(set_key, set()).add(member)

    async def set_members(self, set_key: str) -> set[str]:
        return set(self._sets.get(set_key, ()))

    async def z_add(self, z_key: str, member: str, score: float) -> None:
        self._zsets.setdefault(z_key, {})[member] = float(score)

    async def z_range(self, z_key: str, start: int = 0, end: int = -1, desc: bool = False) -> list[str]:
        scores = self._zsets.get(z_key, {})
        ordered = sorted(scores, key=lambda m: (scores[m], m), reverse=desc)
        return redis_range(ordered, start, end)

    async def clear_all(self) -> None:
        self._entries.clear()
        self._sets.clear()
        self._zsets.clear()

    async def purge_older_than(self, max_age_s: float) -> int:
        cutoff = self.clock() - max_age_s
        expired = [key for key, entry in self._entries.items() if entry.cached_at < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "stale_entries": sum(1 for e in self._entries.values() if self.is_stale(e)),
            "sets": len(self._sets),
            "sorted_sets": len(self._zsets),
        }


class SqliteCacheStore(CacheStore):
    """
    SQLite-backed cache store.

    Values are stored JSON-encoded. Each operation opens its own connection
    and runs in a worker thread so the event loop is never blocked on disk.
    """

    def __init__(
        self,
        db_path: Path,
        thresholds: Mapping[TTLClass, float] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        super().__init__(thresholds, clock)
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
        except sqlite3.Error as e:
            raise CacheStoreError(f"Cannot open cache database {self.db_path}: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise CacheStoreError(f"Cache operation failed: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize SQLite database schema."""
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    cached_at REAL NOT NULL,
                    ttl_class TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_sets (
                    key TEXT NOT NULL,
                    member TEXT NOT NULL,
                    PRIMARY KEY (key, member)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_zsets (
                    key TEXT NOT NULL,
                    member TEXT NOT NULL,
                    score REAL NOT NULL,
                    PRIMARY KEY (key, member)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cached_at ON cache_entries(cached_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_zsets_score ON cache_zsets(key, score)")

    def _get_sync(self, key: str) -> CacheEntry[Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT key, value, cached_at, ttl_class FROM cache_entries WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        try:
            value = json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise CacheStoreError(f"Corrupt cache entry for {key}: {e}") from e
        return CacheEntry(row["key"], value, row["cached_at"], TTLClass(row["ttl_class"]))

    def _put_sync(self, key: str, value: Any, ttl_class: TTLClass) -> CacheEntry[Any]:
        try:
            encoded = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise CacheStoreError(f"Value for {key} is not JSON-serializable: {e}") from e

        with self._connect() as conn:
            # cached_at never moves backwards for a key
            conn.execute(
                """
                INSERT INTO cache_entries (key, value, cached_at, ttl_class)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    cached_at = MAX(cache_entries.cached_at, excluded.cached_at),
                    ttl_class = excluded.ttl_class
                """,
                (key, encoded, self.clock(), str(ttl_class)),
            )
            row = conn.execute(
                "SELECT cached_at FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
        return CacheEntry(key, json.loads(encoded), row["cached_at"], TTLClass(ttl_class))

    def _delete_sync(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def _add_to_set_sync(self, set_key: str, member: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO cache_sets (key, member) VALUES (?, ?)",
                (set_key, member),
            )

    def _set_members_sync(self, set_key: str) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT member FROM cache_sets WHERE key = ?", (set_key,)).fetchall()
        return {row["member"] for row in rows}

    def _z_add_sync(self, z_key: str, member: str, score: float) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_zsets (key, member, score) VALUES (?, ?, ?)",
                (z_key, member, float(score)),
            )

    def _z_range_sync(self, z_key: str, start: int, end: int, desc: bool) -> list[str]:
        order = "DESC" if desc else "ASC"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT member FROM cache_zsets WHERE key = ? ORDER BY score {order}, member {order}",
                (z_key,),
            ).fetchall()
        return redis_range([row["member"] for row in rows], start, end)

    def _clear_all_sync(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM cache_entries")
            conn.execute("DELETE FROM cache_sets")
            conn.execute("DELETE FROM cache_zsets")

    def _purge_sync(self, max_age_s: float) -> int:
        cutoff = self.clock() - max_age_s
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE cached_at < ?", (cutoff,))
            return cursor.rowcount

    def _stats_sync(self) -> dict[str, int]:
        now = self.clock()
        stale = 0
        with self._connect() as conn:
            rows = conn.execute("SELECT cached_at, ttl_class FROM cache_entries").fetchall()
            sets = conn.execute("SELECT COUNT(DISTINCT key) FROM cache_sets").fetchone()[0]
            zsets = conn.execute("SELECT COUNT(DISTINCT key) FROM cache_zsets").fetchone()[0]
        for row in rows:
            if now - row["cached_at"] > self.threshold(TTLClass(row["ttl_class"])):
                stale += 1
        return {
            "entries": len(rows),
            "stale_entries": stale,
            "sets": sets,
            "sorted_sets": zsets,
        }

    async def get(self, key: str) -> CacheEntry[Any] | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def put(self, key: str, value: Any, ttl_class: TTLClass) -> CacheEntry[Any]:
        return await asyncio.to_thread(self._put_sync, key, value, TTLClass(ttl_class))

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, key)

    async def add_to_set(self, set_key: str, member: str) -> None:
        await asyncio.to_thread(self._add_to_set_sync, set_key, member)

    async def set_members(self, set_key: str) -> set[str]:
        return await asyncio.to_thread(self._set_members_sync, set_key)

    async def z_add(self, z_key: str, member: str, score: float) -> None:
        await asyncio.to_thread(self._z_add_sync, z_key, member, score)

    async def z_range(self, z_key: str, start: int = 0, end: int = -1, desc: bool = False) -> list[str]:
        return await asyncio.to_thread(self._z_range_sync, z_key, start, end, desc)

    async def clear_all(self) -> None:
        await asyncio.to_thread(self._clear_all_sync)
        log.info(f"Cleared cache database {self.db_path}")

    async def purge_older_than(self, max_age_s: float) -> int:
        return await asyncio.to_thread(self._purge_sync, max_age_s)

    async def stats(self) -> dict[str, int]:
        return await asyncio.to_thread(self._stats_sync)
