"""Tests for the Weave CLI"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from weave.cli import build_parser, cmd_build, main
from weave.coordinator import BuildReport, BuildState
from weave.schema import ProvenancePointer
from weave.store import WeaveStore
from weave.graph import GraphManager


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.sqlite"


@pytest.fixture
def populated_db(db_path: Path) -> Path:
    """Database with two people, a relationship and three transactions"""
    store = WeaveStore(db_path=db_path)
    graph = GraphManager(store)
    prov = ProvenancePointer(data_source="google", data_kind="email", data_id="m-1")
    alice = graph.upsert_entity("person", "Alice Smith", {}, prov, aliases=["Ali"])
    bob = graph.upsert_entity("person", "Bob", {}, prov)
    graph.upsert_relationship(alice, bob, "FRIEND_OF", {}, prov)
    for i in range(3):
        store.ingest("ynab", "transaction", f"t-{i}", {"payeeName": "Cafe", "amount": -3})
    return db_path


def _run(db_path: Path, *args: str) -> int:
    return main([*args, "--db-path", str(db_path)])


def test_parser_requires_one_command():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args([])
    with pytest.raises(SystemExit):
        parser.parse_args(["--stats", "--overview"])


def test_stats(populated_db, capsys):
    assert _run(populated_db, "--stats") == 0
    out = capsys.readouterr().out
    assert "Raw Records: 3" in out
    assert "Total Entities: 2" in out
    assert "Total Relationships: 1" in out
    assert "[person] Alice Smith (1)" in out


def test_search_by_alias(populated_db, capsys):
    assert _run(populated_db, "--search", "ali") == 0
    out = capsys.readouterr().out
    assert "[person] Alice Smith" in out
    assert "aliases: Ali" in out


def test_search_no_results(populated_db, capsys):
    assert _run(populated_db, "--search", "zebra") == 0
    assert "No matching entities found." in capsys.readouterr().out


def test_graph_by_name(populated_db, capsys):
    assert _run(populated_db, "--graph", "Alice Smith", "--depth", "2") == 0
    out = capsys.readouterr().out
    assert "Entities within depth 2: 2" in out
    assert "Alice Smith --[FRIEND_OF]--> Bob" in out


def test_ingest_jsonl(tmp_path, db_path, capsys):
    records = tmp_path / "records.jsonl"
    lines = [
        json.dumps({"source": "google", "record_kind": "email", "external_id": "m-1",
                    "payload": {"from": "alice@example.com"}}),
        "",
        "not json",
        json.dumps({"source": "google", "record_kind": "email"}),
        json.dumps({"source": "ynab", "record_kind": "transaction", "external_id": 7,
                    "observed_at": "2024-05-01T12:00:00Z"}),
    ]
    records.write_text("\n".join(lines), encoding="utf-8")

    assert _run(db_path, "--ingest", str(records)) == 0

    assert f"Ingested 2 records from {records} (2 skipped)" in capsys.readouterr().out
    store = WeaveStore(db_path=db_path)
    assert store.count_records() == 2
    assert store.get_record("ynab", "transaction", "7").observed_at.month == 5


def test_ingest_missing_file_fails(tmp_path, db_path, capsys):
    assert _run(db_path, "--ingest", str(tmp_path / "nope.jsonl")) == 1
    assert "File not found" in capsys.readouterr().err


def test_import_missing_file_fails(tmp_path, populated_db, capsys):
    assert _run(populated_db, "--import", str(tmp_path / "nope.json")) == 1
    assert "File not found" in capsys.readouterr().err
    assert WeaveStore(db_path=populated_db).count_by_type("entities")


def test_patterns(populated_db, capsys):
    assert _run(populated_db, "--patterns") == 0
    out = capsys.readouterr().out
    assert "Detected 1 patterns:" in out
    assert "[routine] Regular spending at Cafe" in out
    assert len(WeaveStore(db_path=populated_db).list_patterns()) == 1


def test_overview_to_file(tmp_path, populated_db):
    output = tmp_path / "out" / "overview.md"
    assert _run(populated_db, "--overview", "--output", str(output)) == 0
    text = output.read_text(encoding="utf-8")
    assert text.startswith("# The Weave: Your Life Map")
    assert "- **Total Entities**: 2" in text


def test_export_then_import(tmp_path, populated_db, capsys):
    snapshot_path = tmp_path / "backup.json"
    assert _run(populated_db, "--export", str(snapshot_path)) == 0
    assert "Exported 2 entities and 1 relationships" in capsys.readouterr().out

    snapshot = json.loads(snapshot_path.read_text(encoding="utf-8"))
    assert snapshot["version"] == "1.0"

    fresh_db = tmp_path / "fresh.sqlite"
    assert _run(fresh_db, "--import", str(snapshot_path)) == 0
    assert "Imported 2 entities and 1 relationships" in capsys.readouterr().out

    assert _run(fresh_db, "--import", str(snapshot_path), "--merge") == 0
    out = capsys.readouterr().out
    assert "Merged 0 entities and 0 relationships" in out
    assert "(3 skipped)" in out


def test_merge_entities(populated_db, capsys):
    assert _run(populated_db, "--merge-entities", "Alice Smith", "Bob") == 0
    out = capsys.readouterr().out
    assert "Merged [person] Bob into [person] Alice Smith (2 occurrences)" in out
    assert GraphManager(WeaveStore(db_path=populated_db)).get_statistics()["total_entities"] == 1


def test_build_without_credentials_fails(db_path, monkeypatch):
    monkeypatch.setenv("WEAVE_LLM_PROVIDER", "anthropic")
    WeaveStore(db_path=db_path).ingest("google", "email", "m-1", {})

    assert _run(db_path, "--build") == 1


def test_invalid_config_fails(db_path, monkeypatch, capsys):
    monkeypatch.setenv("WEAVE_BATCH_SIZE", "lots")
    assert _run(db_path, "--stats") == 1
    assert "Configuration error" in capsys.readouterr().err


def test_build_report_lists_entity_failures(capsys):
    coordinator = MagicMock()
    coordinator.build = AsyncMock(
        return_value=BuildReport(
            state=BuildState.DONE, records_total=4, records_processed=4,
            entities_failed=3, message="Weave built",
        )
    )
    coordinator.close = AsyncMock()

    cmd_build(coordinator)

    out = capsys.readouterr().out
    assert "Entity failures:       3" in out
    assert "Records processed:     4/4" in out
    coordinator.close.assert_awaited_once()
