"""Tests for the label reconciliation engine."""

from __future__ import annotations

import pytest

from label_mirror.reconcile import (
    Confidence,
    EntitySnapshot,
    LabelReconciler,
    Strategy,
)


@pytest.fixture
def reconciler(label_table):
    return LabelReconciler(label_table)


def test_bio_mention_resolves_heuristically(reconciler):
    artist = EntitySnapshot(entity_id="a1", name="Kollektiv Nord", bio="member of Build It Deep collective")
    result = reconciler.reconcile(artist)

    assert result.resolved_label_id == "2"
    assert result.strategy_used == Strategy.TEXT_MATCH
    assert result.confidence == Confidence.HEURISTIC


def test_join_links_broken_by_keyword(reconciler):
    artist = EntitySnapshot(entity_id="a2", name="Deep Currents", linked_label_refs=("1", "2"))
    result = reconciler.reconcile(artist)

    assert result.resolved_label_id == "2"
    assert result.strategy_used == Strategy.JOIN_TABLE
    assert result.confidence == Confidence.INDIRECT
    assert result.candidates == ("1", "2")


def test_join_links_without_keyword_pick_lowest_id(reconciler):
    artist = EntitySnapshot(entity_id="a3", name="Marlow", linked_label_refs=("3", "2"))
    result = reconciler.reconcile(artist)

    assert result.resolved_label_id == "2"
    assert "lowest label id" in result.rationale


def test_join_result_ignores_link_order(reconciler):
    forward = EntitySnapshot(entity_id="a4", name="Marlow", linked_label_refs=("1", "3"))
    backward = EntitySnapshot(entity_id="a4", name="Marlow", linked_label_refs=("3", "1"))
    assert reconciler.reconcile(forward) == reconciler.reconcile(backward)


def test_direct_reference_wins_over_other_evidence(reconciler):
    artist = EntitySnapshot(
        entity_id="a5",
        name="Tech Noir",
        bio="Build It Deep regular",
        label_ref="buildit-records",
        linked_label_refs=("2", "3"),
    )
    result = reconciler.reconcile(artist)

    assert result.resolved_label_id == "1"
    assert result.strategy_used == Strategy.FOREIGN_KEY
    assert result.confidence == Confidence.DIRECT


def test_unresolvable_direct_reference_falls_through(reconciler):
    artist = EntitySnapshot(entity_id="a6", label_ref="Defunct Imprint", linked_label_refs=("3",))
    result = reconciler.reconcile(artist)

    assert result.resolved_label_id == "3"
    assert result.strategy_used == Strategy.JOIN_TABLE


def test_no_evidence_defaults_and_is_flagged(reconciler):
    artist = EntitySnapshot(entity_id="a7", name="Marlow", bio="Producer from Leeds", label_ref="Defunct Imprint")
    result = reconciler.reconcile(artist)

    assert result.resolved_label_id == "1"
    assert result.strategy_used == Strategy.DEFAULT
    assert result.confidence == Confidence.DEFAULT
    assert result.is_default
    assert "Defunct Imprint" in result.rationale


def test_longest_keyword_wins_text_match(reconciler):
    # "records" (label 1) and "build it tech" (label 3) both appear
    artist = EntitySnapshot(entity_id="a8", bio="Records regularly for Build It Tech")
    result = reconciler.reconcile(artist)

    assert result.resolved_label_id == "3"
    assert result.candidates == ("1", "3")


def test_reconcile_is_idempotent(reconciler):
    artist = EntitySnapshot(entity_id="a9", name="Deep Currents", linked_label_refs=("1", "2"))
    first = reconciler.reconcile(artist)
    for _ in range(5):
        assert reconciler.reconcile(artist) == first


def test_confidence_ordering():
    assert Confidence.DIRECT > Confidence.INDIRECT > Confidence.HEURISTIC > Confidence.DEFAULT


def test_snapshot_from_record():
    record = {
        "id": 42,
        "name": "Deep Currents",
        "description": "duo",
        "label": {"id": 2, "name": "Build It Deep"},
        "labels": [{"label_id": 1}, "3"],
        "current_label_id": 1,
    }
    snapshot = EntitySnapshot.from_record(record)

    assert snapshot.entity_id == "42"
    assert snapshot.label_ref == "2"
    assert snapshot.linked_label_refs == ("1", "3")
    assert snapshot.bio == "duo"
    assert snapshot.current_label_id == "1"


def test_snapshot_from_record_null_fields_and_link_string():
    record = {"id": "a9", "label_id": None, "label": "Build It Tech", "labels": "1, 2,", "label_ids": ["3"]}
    snapshot = EntitySnapshot.from_record(record)

    assert snapshot.label_ref == "Build It Tech"
    assert snapshot.linked_label_refs == ("1", "2")


def test_snapshot_from_record_null_links_fall_back_to_label_ids():
    snapshot = EntitySnapshot.from_record({"id": "a10", "labels": None, "label_ids": [2, 3]})

    assert snapshot.label_ref is None
    assert snapshot.linked_label_refs == ("2", "3")


def test_result_to_dict(reconciler):
    result = reconciler.reconcile(EntitySnapshot(entity_id="x", label_ref="3"))
    data = result.to_dict()

    assert data["resolved_label_id"] == "3"
    assert data["strategy_used"] == "foreign_key"
    assert data["confidence"] == "DIRECT"


def test_plan_reassignments(reconciler):
    entities = [
        # stored label disagrees with a direct reference
        EntitySnapshot(entity_id="e1", label_ref="2", current_label_id="1"),
        # stored label already correct (given as a slug)
        EntitySnapshot(entity_id="e2", label_ref="3", current_label_id="buildit-tech"),
        # no evidence: default never overwrites an existing assignment
        EntitySnapshot(entity_id="e3", current_label_id="3"),
        # no evidence and nothing stored: default is proposed
        EntitySnapshot(entity_id="e4"),
    ]
    changes = reconciler.plan_reassignments(entities)

    assert [(c.entity_id, c.current_label_id, c.proposed_label_id) for c in changes] == [
        ("e1", "1", "2"),
        ("e4", None, "1"),
    ]
    assert changes[1].confidence == Confidence.DEFAULT
