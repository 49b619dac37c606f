"""Label table and label-reference normalizer.

A label can be referred to by its canonical ID, its URL slug, its display
name, or by free text that mentions one of its aliases. The normalizer turns
any of those into the canonical ID, checking structural identifiers before
fuzzy text so that an alias hit can never outrank an exact slug or ID.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from label_mirror.config import LabelsConfig

_SEPARATORS = re.compile(r"[\s_\-]+")


def fold(text: str) -> str:
    """Casefold and collapse separators (whitespace, '-', '_') to single spaces."""
    return _SEPARATORS.sub(" ", text.casefold()).strip()


def compact(text: str) -> str:
    """Folded form with separators removed ("Build It Deep" -> "builditdeep")."""
    return fold(text).replace(" ", "")


def label_sort_key(label_id: str) -> tuple[int, int, str]:
    """Order canonical IDs numerically when they are numeric, lexically otherwise."""
    if label_id.isdigit():
        return (0, int(label_id), label_id)
    return (1, 0, label_id)


class MatchKind(StrEnum):
    """Which resolution step matched a label reference."""

    ID = "id"
    SLUG = "slug"
    NAME = "name"
    ALIAS = "alias"


@dataclass(frozen=True)
class LabelDefinition:
    """A label and the surface forms it may be referred to by."""

    id: str
    slug: str
    name: str
    aliases: tuple[str, ...] = ()

    def keywords(self) -> tuple[str, ...]:
        """Text keywords that mention this label, most specific first."""
        seen: dict[str, None] = {}
        for word in (self.name, self.slug, *self.aliases):
            folded = fold(word)
            if folded:
                seen.setdefault(folded, None)
        return tuple(sorted(seen, key=len, reverse=True))


@dataclass(frozen=True)
class LabelMatch:
    """Successful resolution of a label reference."""

    label_id: str
    matched_by: MatchKind
    matched_text: str | None = None


class LabelSource(Protocol):
    """System-of-record reader for persisted label definitions."""

    def load_labels(self) -> Iterable[Mapping[str, Any]]: ...


@dataclass(frozen=True)
class LabelTable:
    """Immutable label table, built once at startup and passed explicitly."""

    labels: tuple[LabelDefinition, ...]
    default_label_id: str
    _by_id: Mapping[str, LabelDefinition] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_id = {label.id: label for label in self.labels}
        if len(by_id) != len(self.labels):
            raise ValueError("Duplicate label id in label table")
        if self.default_label_id not in by_id:
            raise ValueError(f"Default label {self.default_label_id!r} not in label table")
        object.__setattr__(self, "_by_id", by_id)

    @classmethod
    def from_config(cls, config: LabelsConfig) -> LabelTable:
        return cls(
            labels=tuple(
                LabelDefinition(
                    id=str(d.id),
                    slug=d.slug,
                    name=d.name,
                    aliases=tuple(d.aliases),
                )
                for d in config.definitions
            ),
            default_label_id=str(config.default_label_id),
        )

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]], default_label_id: str) -> LabelTable:
        """
        Build the table from label rows of the system of record.

        Rows need ``id`` and ``name``; ``slug`` falls back to the hyphenated
        name and ``aliases`` may be a list or a comma-separated string.
        """
        labels = []
        for row in rows:
            name = str(row["name"])
            aliases = row.get("aliases") or []
            if isinstance(aliases, str):
                aliases = [a.strip() for a in aliases.split(",") if a.strip()]
            labels.append(
                LabelDefinition(
                    id=str(row["id"]),
                    slug=str(row.get("slug") or fold(name).replace(" ", "-")),
                    name=name,
                    aliases=tuple(str(a) for a in aliases),
                )
            )
        return cls(labels=tuple(labels), default_label_id=str(default_label_id))

    @classmethod
    def from_source(cls, source: LabelSource, default_label_id: str) -> LabelTable:
        return cls.from_rows(source.load_labels(), default_label_id)

    def get(self, label_id: str) -> LabelDefinition | None:
        return self._by_id.get(label_id)

    def __contains__(self, label_id: object) -> bool:
        return label_id in self._by_id

    def __iter__(self) -> Iterator[LabelDefinition]:
        return iter(self.labels)

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def ids(self) -> list[str]:
        return [label.id for label in self.labels]


class LabelNormalizer:
    """
    Resolves label references to canonical label IDs.

    Resolution order (first match wins, labels scanned in table order):
    1. Exact canonical ID
    2. Slug, case-insensitive
    3. Display name, case-insensitive
    4. Alias appearing inside the reference, case-insensitive

    Returns None when nothing matches; defaulting is left to the reconciler.
    """

    def __init__(self, table: LabelTable):
        self.table = table
        # Precomputed folded forms; the table is immutable
        self._slugs = [(fold(label.slug), label) for label in table]
        self._names = [(fold(label.name), label) for label in table]
        self._aliases = [
            (label, [(fold(a), compact(a), a) for a in label.aliases if fold(a)]) for label in table
        ]

    def resolve(self, ref: str | int | None) -> LabelMatch | None:
        if ref is None or isinstance(ref, bool):
            return None
        raw = str(ref).strip()
        if not raw:
            return None

        label = self.table.get(raw)
        if label is not None:
            return LabelMatch(label.id, MatchKind.ID, raw)

        folded = fold(raw)
        for slug, label in self._slugs:
            if folded == slug:
                return LabelMatch(label.id, MatchKind.SLUG, label.slug)

        for name, label in self._names:
            if folded == name:
                return LabelMatch(label.id, MatchKind.NAME, label.name)

        squeezed = folded.replace(" ", "")
        for label, aliases in self._aliases:
            for alias_folded, alias_compact, original in aliases:
                if alias_folded in folded or alias_compact in squeezed:
                    return LabelMatch(label.id, MatchKind.ALIAS, original)

        return None

    def resolve_id(self, ref: str | int | None) -> str | None:
        """Shortcut returning only the canonical ID."""
        match = self.resolve(ref)
        return match.label_id if match else None

    def resolve_many(self, refs: Sequence[str | int | None]) -> list[str]:
        """Resolve refs, dropping unknown ones and duplicates, sorted by canonical ID."""
        resolved = {label_id for ref in refs if (label_id := self.resolve_id(ref))}
        return sorted(resolved, key=label_sort_key)
