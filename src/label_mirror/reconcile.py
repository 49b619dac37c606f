"""Label reconciliation engine.

Collapses the candidate label associations of an entity into one canonical
label, trying strategies from most to least authoritative:

1. FOREIGN_KEY  (DIRECT)    explicit label reference on the entity
2. JOIN_TABLE   (INDIRECT)  many-to-many label links
3. TEXT_MATCH   (HEURISTIC) label keywords in the entity's name or bio
4. DEFAULT      (DEFAULT)   the catalog's primary label, flagged as a guess

Ties are broken by keyword specificity, then by lowest canonical label ID,
never by input order. The engine is pure: the same snapshot and label table
always produce the same result, so re-running it cannot flip assignments.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from typing import Any

from label_mirror.labels import LabelNormalizer, LabelTable, compact, fold, label_sort_key


class Strategy(StrEnum):
    """Strategy that produced a reconciliation result."""

    FOREIGN_KEY = "foreign_key"
    JOIN_TABLE = "join_table"
    TEXT_MATCH = "text_match"
    DEFAULT = "default"


class Confidence(IntEnum):
    """Evidence strength, ordered: DIRECT > INDIRECT > HEURISTIC > DEFAULT."""

    DEFAULT = 0
    HEURISTIC = 1
    INDIRECT = 2
    DIRECT = 3


@dataclass(frozen=True)
class EntitySnapshot:
    """The label evidence available for one entity at one moment."""

    entity_id: str
    entity_type: str = "artist"
    name: str = ""
    bio: str = ""
    label_ref: str | None = None
    linked_label_refs: tuple[str, ...] = ()
    current_label_id: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any], entity_type: str = "artist") -> EntitySnapshot:
        """
        Build a snapshot from a raw record.

        Recognizes ``label_id``/``labelId``/``label`` as the direct reference,
        ``labels``/``label_ids`` as join-table links and ``bio``/``description``
        as free text.
        """
        direct = record.get("label_id") or record.get("labelId") or record.get("label")
        if isinstance(direct, dict):
            direct = direct.get("id") or direct.get("name")

        links_raw = record.get("labels") or record.get("label_ids") or []
        if isinstance(links_raw, str):
            links_raw = [link.strip() for link in links_raw.split(",") if link.strip()]
        elif isinstance(links_raw, int | dict):
            links_raw = [links_raw]
        links: list[str] = []
        for link in links_raw:
            if isinstance(link, dict):
                link = link.get("id") or link.get("label_id") or link.get("name")
            if link is not None:
                links.append(str(link))

        return cls(
            entity_id=str(record["id"]),
            entity_type=str(record.get("type") or entity_type),
            name=str(record.get("name") or record.get("title") or ""),
            bio=str(record.get("bio") or record.get("description") or ""),
            label_ref=str(direct) if direct is not None else None,
            linked_label_refs=tuple(links),
            current_label_id=(
                str(record["current_label_id"]) if record.get("current_label_id") is not None else None
            ),
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """Canonical label chosen for an entity, with how it was chosen."""

    entity_id: str
    resolved_label_id: str
    strategy_used: Strategy
    confidence: Confidence
    candidates: tuple[str, ...] = ()
    rationale: str = ""

    @property
    def is_default(self) -> bool:
        return self.confidence == Confidence.DEFAULT

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "resolved_label_id": self.resolved_label_id,
            "strategy_used": self.strategy_used.value,
            "confidence": self.confidence.name,
            "candidates": list(self.candidates),
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class LabelChange:
    """A proposed reassignment; applying it is the caller's explicit decision."""

    entity_id: str
    current_label_id: str | None
    proposed_label_id: str
    strategy_used: Strategy
    confidence: Confidence


@dataclass(frozen=True)
class _KeywordHit:
    label_id: str
    keyword: str


class LabelReconciler:
    """Resolves one canonical label per entity from partial or conflicting evidence."""

    def __init__(self, table: LabelTable, normalizer: LabelNormalizer | None = None):
        self.table = table
        self.normalizer = normalizer or LabelNormalizer(table)
        self._keywords = {label.id: label.keywords() for label in table}

    def _keyword_hit(self, label_id: str, folded_text: str, squeezed_text: str) -> _KeywordHit | None:
        """Longest keyword of ``label_id`` present in the text, if any."""
        for keyword in self._keywords.get(label_id, ()):
            if keyword in folded_text or keyword.replace(" ", "") in squeezed_text:
                return _KeywordHit(label_id, keyword)
        return None

    def _pick(self, label_ids: Sequence[str], entity: EntitySnapshot) -> tuple[str, str]:
        """
        Choose among candidate labels by keyword evidence.

        The candidate whose longest matching keyword is longest wins; equal
        lengths, or no keyword at all, fall back to the lowest canonical ID.
        """
        text = f"{entity.name} {entity.bio}"
        folded_text = fold(text)
        squeezed_text = compact(text)
        ordered = sorted(label_ids, key=label_sort_key)

        hits = [
            hit for label_id in ordered if (hit := self._keyword_hit(label_id, folded_text, squeezed_text))
        ]
        if hits:
            best = max(hits, key=lambda h: len(h.keyword.replace(" ", "")))
            return best.label_id, f"keyword {best.keyword!r}"
        return ordered[0], "lowest label id"

    def reconcile(self, entity: EntitySnapshot) -> ReconciliationResult:
        """Return the canonical label for ``entity`` and the strategy that found it."""
        unresolved: list[str] = []

        # 1. Direct foreign-key reference
        if entity.label_ref is not None:
            label_id = self.normalizer.resolve_id(entity.label_ref)
            if label_id is not None:
                return ReconciliationResult(
                    entity_id=entity.entity_id,
                    resolved_label_id=label_id,
                    strategy_used=Strategy.FOREIGN_KEY,
                    confidence=Confidence.DIRECT,
                    candidates=(label_id,),
                    rationale=f"direct reference {entity.label_ref!r}",
                )
            unresolved.append(entity.label_ref)

        # 2. Join-table links
        linked = self.normalizer.resolve_many(list(entity.linked_label_refs))
        unresolved.extend(ref for ref in entity.linked_label_refs if self.normalizer.resolve(ref) is None)
        if linked:
            label_id, why = self._pick(linked, entity)
            return ReconciliationResult(
                entity_id=entity.entity_id,
                resolved_label_id=label_id,
                strategy_used=Strategy.JOIN_TABLE,
                confidence=Confidence.INDIRECT,
                candidates=tuple(linked),
                rationale=f"{len(linked)} linked label(s), chosen by {why}",
            )

        # 3. Keyword evidence in name/bio
        text = f"{entity.name} {entity.bio}"
        folded_text = fold(text)
        squeezed_text = compact(text)
        matching = [
            label.id for label in self.table if self._keyword_hit(label.id, folded_text, squeezed_text)
        ]
        if matching:
            label_id, why = self._pick(matching, entity)
            return ReconciliationResult(
                entity_id=entity.entity_id,
                resolved_label_id=label_id,
                strategy_used=Strategy.TEXT_MATCH,
                confidence=Confidence.HEURISTIC,
                candidates=tuple(sorted(matching, key=label_sort_key)),
                rationale=f"text mentions {len(matching)} label(s), chosen by {why}",
            )

        # 4. Catalog default, explicitly flagged
        rationale = "no label evidence"
        if unresolved:
            rationale += f"; unrecognized refs {sorted(unresolved)}"
        return ReconciliationResult(
            entity_id=entity.entity_id,
            resolved_label_id=self.table.default_label_id,
            strategy_used=Strategy.DEFAULT,
            confidence=Confidence.DEFAULT,
            candidates=(),
            rationale=rationale,
        )

    def reconcile_many(self, entities: Iterable[EntitySnapshot]) -> list[ReconciliationResult]:
        return [self.reconcile(entity) for entity in entities]

    def plan_reassignments(self, entities: Iterable[EntitySnapshot]) -> list[LabelChange]:
        """
        Proposed label changes for entities whose stored label disagrees.

        Nothing is written. DEFAULT results never propose overwriting an
        existing assignment.
        """
        changes = []
        for entity in entities:
            result = self.reconcile(entity)
            current = entity.current_label_id
            if current is not None:
                current = self.normalizer.resolve_id(current) or current
            if result.resolved_label_id == current:
                continue
            if result.is_default and current is not None:
                continue
            changes.append(
                LabelChange(
                    entity_id=entity.entity_id,
                    current_label_id=current,
                    proposed_label_id=result.resolved_label_id,
                    strategy_used=result.strategy_used,
                    confidence=result.confidence,
                )
            )
        return changes
