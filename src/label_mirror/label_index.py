"""Per-label membership and recency index kept in the cache store.

For every (label, entity type) pair the index holds a set of member IDs and a
sorted set scored by release timestamp. It is only ever extended from
write-through of fetched entities; nothing edits it by hand.

Write-through of single entities makes the index partial, so a pair is only
trusted as a full listing once a complete upstream scan has marked it warmed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from label_mirror.cache_store import CacheStore, TTLClass
from label_mirror.labels import LabelNormalizer

log = logging.getLogger(__name__)

LABEL_FIELDS = ("label_id", "labelId", "label")
DATE_FIELDS = ("release_date", "releaseDate", "released_at", "date")


def parse_release_date(value: Any) -> float | None:
    """
    Release date to epoch seconds.

    Handles ISO dates with year, month or day precision ("2021", "2021-06",
    "2021-06-04"), full ISO timestamps and numeric epoch values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    for fmt in ("%Y-%m-%d", "%Y-%m", "%Y"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=UTC).timestamp()
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()


def label_ref_of(value: dict[str, Any]) -> str | None:
    """Label reference carried by a cached entity projection, if any."""
    for key in LABEL_FIELDS:
        ref = value.get(key)
        if isinstance(ref, dict):
            ref = ref.get("id") or ref.get("slug") or ref.get("name")
        if ref is not None and str(ref).strip():
            return str(ref)
    return None


def release_timestamp_of(value: dict[str, Any]) -> float | None:
    for key in DATE_FIELDS:
        if (ts := parse_release_date(value.get(key))) is not None:
            return ts
    return None


class LabelIndex:
    """Label-scoped membership (set) and recency (sorted set) structures."""

    def __init__(self, store: CacheStore, normalizer: LabelNormalizer):
        self.store = store
        self.normalizer = normalizer

    @staticmethod
    def members_key(label_id: str, entity_type: str) -> str:
        return f"label:{label_id}:{entity_type}:members"

    @staticmethod
    def by_date_key(label_id: str, entity_type: str) -> str:
        return f"label:{label_id}:{entity_type}:by_date"

    @staticmethod
    def warmed_key(label_id: str, entity_type: str) -> str:
        return f"label:{label_id}:{entity_type}:warmed"

    async def add(
        self,
        label_id: str,
        entity_type: str,
        entity_id: str,
        released_at: float | None = None,
    ) -> None:
        """Record membership; undated entities score 0 and sort as oldest."""
        await self.store.add_to_set(self.members_key(label_id, entity_type), entity_id)
        await self.store.z_add(self.by_date_key(label_id, entity_type), entity_id, released_at or 0.0)

    async def observe(self, entity_type: str, entity_id: str, value: Any) -> str | None:
        """
        Index a freshly fetched entity under the label it names.

        Returns the canonical label ID, or None when the entity carries no
        resolvable label reference (it is then left out of the index).
        """
        if not isinstance(value, dict):
            return None
        ref = label_ref_of(value)
        label_id = self.normalizer.resolve_id(ref)
        if label_id is None:
            if ref is not None:
                log.debug(f"{entity_type} {entity_id}: label ref {ref!r} not recognized, not indexed")
            return None
        await self.add(label_id, entity_type, entity_id, release_timestamp_of(value))
        return label_id

    async def members(self, label_id: str, entity_type: str) -> set[str]:
        return await self.store.set_members(self.members_key(label_id, entity_type))

    async def recent(self, label_id: str, entity_type: str, limit: int | None = None) -> list[str]:
        """Member IDs, newest release first."""
        end = -1 if limit is None else limit - 1
        if limit is not None and limit <= 0:
            return []
        return await self.store.z_range(self.by_date_key(label_id, entity_type), 0, end, desc=True)

    async def mark_warmed(self, label_id: str, entity_type: str, count: int) -> None:
        """Record that a complete upstream scan filled this pair."""
        await self.store.put(self.warmed_key(label_id, entity_type), {"count": count}, TTLClass.MEDIUM)

    async def is_warmed(self, label_id: str, entity_type: str) -> bool:
        """True when a complete scan filled this pair within the MEDIUM TTL."""
        entry = await self.store.get(self.warmed_key(label_id, entity_type))
        return entry is not None and not self.store.is_stale(entry)
