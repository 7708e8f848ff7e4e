"""Unit tests for the Weave SQLite store.

Covers raw record ingestion, pattern persistence and snapshot export/import.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from weave.graph import GraphManager
from weave.schema import Pattern, TemporalInfo
from weave.store import SNAPSHOT_VERSION, WeaveStore


def test_store_creates_database(tmp_path: Path):
    """Store auto-creates the database file and parent directory."""
    db_path = tmp_path / "nested" / "weave.sqlite"
    WeaveStore(db_path=db_path)
    assert db_path.exists()


def test_ingest_is_idempotent_on_key(store):
    """Re-ingesting the same key updates in place instead of duplicating."""
    store.ingest("google", "email", "msg-1", {"subject": "first"})
    store.ingest("google", "email", "msg-1", {"subject": "second"})

    assert store.count_records() == 1
    record = store.get_record("google", "email", "msg-1")
    assert record is not None
    assert record.payload["subject"] == "second"


def test_ingest_updates_observed_at(store):
    """Re-ingest replaces the provider timestamp."""
    first = datetime(2024, 1, 1, tzinfo=timezone.utc)
    second = datetime(2024, 2, 1, tzinfo=timezone.utc)
    store.ingest("google", "email", "msg-1", {}, observed_at=first)
    store.ingest("google", "email", "msg-1", {}, observed_at=second)

    record = store.get_record("google", "email", "msg-1")
    assert record.observed_at == second


def test_ingest_distinguishes_kind_and_source(store):
    """Same external id under another source or kind is a different record."""
    store.ingest("google", "email", "1", {})
    store.ingest("google", "calendar_event", "1", {})
    store.ingest("manual", "email", "1", {})
    assert store.count_records() == 3


def test_ingest_rejects_missing_key_parts(store):
    with pytest.raises(ValueError):
        store.ingest("", "email", "1", {})


def test_recent_records_most_recent_first(store):
    """Most recently updated records come first and the window is honoured."""
    for i in range(5):
        store.ingest("google", "email", f"msg-{i}", {"n": i})
    # Touch msg-0 again so it becomes the most recent
    store.ingest("google", "email", "msg-0", {"n": 0})

    recent = store.get_recent_records(limit=3)
    assert [r.external_id for r in recent] == ["msg-0", "msg-4", "msg-3"]


def test_list_records_filters_by_kind(store):
    store.ingest("google", "email", "a", {})
    store.ingest("ynab", "transaction", "b", {})
    store.ingest("google", "message", "c", {})

    ids = [r.external_id for r in store.list_records({"email", "message"})]
    assert ids == ["a", "c"]
    assert store.list_records([]) == []


def test_replace_patterns_overwrites_previous_set(store):
    """Each detection pass fully replaces the stored patterns."""
    first = Pattern(
        id="pattern:routine:1",
        kind="routine",
        name="Old",
        description="old pattern",
        confidence=0.5,
        significance=0.5,
    )
    second = Pattern(
        id="pattern:routine:2",
        kind="routine",
        name="Recurring event: standup",
        description="standup occurs daily (5 times)",
        confidence=0.5,
        significance=1.0,
        temporal=TemporalInfo(
            frequency="daily",
            start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end_date=datetime(2024, 1, 5, tzinfo=timezone.utc),
        ),
        metadata={"count": 5},
    )
    store.replace_patterns([first])
    store.replace_patterns([second])

    patterns = store.list_patterns()
    assert [p.id for p in patterns] == ["pattern:routine:2"]
    assert patterns[0].temporal.frequency == "daily"
    assert patterns[0].metadata == {"count": 5}


class TestSnapshots:
    """Export/import of the entity graph."""

    def test_export_contains_version_and_graph(self, store, graph, make_provenance):
        alice = graph.upsert_entity("person", "Alice", {}, make_provenance())
        bob = graph.upsert_entity("person", "Bob", {}, make_provenance())
        graph.upsert_relationship(alice, bob, "KNOWS", {}, make_provenance())

        snapshot = store.export_snapshot()

        assert snapshot["version"] == SNAPSHOT_VERSION
        assert snapshot["exported_at"]
        assert {e["name"] for e in snapshot["entities"]} == {"Alice", "Bob"}
        assert len(snapshot["relationships"]) == 1

    def test_import_restores_into_empty_store(self, tmp_path, store, graph, make_provenance):
        alice = graph.upsert_entity("person", "Alice", {"role": "friend"}, make_provenance())
        bob = graph.upsert_entity("person", "Bob", {}, make_provenance())
        graph.upsert_relationship(alice, bob, "KNOWS", {}, make_provenance())
        snapshot = store.export_snapshot()

        restored = WeaveStore(db_path=tmp_path / "restored.sqlite")
        counts = restored.import_snapshot(snapshot)

        assert counts == {"entities": 2, "relationships": 1, "skipped": 0}
        entity = restored.get_entity(alice)
        assert entity.attributes == {"role": "friend"}
        assert entity.sources[0].data_id == "rec-1"

    def test_import_merge_skips_existing_names(self, tmp_path, store, graph, make_provenance):
        graph.upsert_entity("person", "Alice", {}, make_provenance())
        snapshot = store.export_snapshot()

        other = WeaveStore(db_path=tmp_path / "other.sqlite")
        GraphManager(other).upsert_entity("person", "alice", {}, make_provenance("rec-9"))
        counts = other.import_snapshot(snapshot, merge=True)

        assert counts["entities"] == 0
        assert counts["skipped"] == 1
        assert len(other.list_entities()) == 1

    def test_import_without_merge_clears_graph(self, tmp_path, store, graph, make_provenance):
        graph.upsert_entity("person", "Alice", {}, make_provenance())
        snapshot = store.export_snapshot()

        other = WeaveStore(db_path=tmp_path / "other.sqlite")
        GraphManager(other).upsert_entity("place", "Paris", {}, make_provenance())
        other.import_snapshot(snapshot, merge=False)

        assert [e.name for e in other.list_entities()] == ["Alice"]
