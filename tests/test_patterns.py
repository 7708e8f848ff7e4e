"""Tests for routine, trend and cluster detection."""

from datetime import datetime, timedelta, timezone

import pytest

from weave.patterns import PatternDetector, determine_frequency

START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def detector(store, graph):
    return PatternDetector(store, graph, user_emails=["me@example.com"])


def _routines(patterns, family=None):
    routines = [p for p in patterns if p.kind == "routine"]
    if family == "spending":
        return [p for p in routines if "payee" in p.metadata]
    return routines


class TestDetermineFrequency:

    @pytest.mark.parametrize(
        "days, expected",
        [
            (1, "daily"),
            (1.99, "daily"),
            (2, "weekly"),
            (7, "weekly"),
            (9.9, "weekly"),
            (10, "monthly"),
            (30, "monthly"),
            (45, "yearly"),
            (365, "yearly"),
            (400, "once"),
        ],
    )
    def test_cutoffs(self, days, expected):
        assert determine_frequency(timedelta(days=days)) == expected


class TestSpendingRoutine:

    def _spend(self, store, count, payee="Corner Cafe"):
        for i in range(count):
            store.ingest("ynab", "transaction", f"{payee}-{i}", {"payeeName": payee, "amount": -4.5})

    def test_two_transactions_emit_nothing(self, store, detector):
        self._spend(store, 2)
        assert _routines(detector.detect_routines(), "spending") == []

    def test_three_transactions_emit_one(self, store, detector):
        self._spend(store, 3)
        (pattern,) = _routines(detector.detect_routines(), "spending")

        assert pattern.name == "Regular spending at Corner Cafe"
        assert pattern.metadata == {"count": 3, "payee": "Corner Cafe", "total": 13.5}
        assert pattern.confidence == pytest.approx(0.3)
        assert pattern.significance == pytest.approx(1.0)

    def test_significance_is_share_of_family(self, store, detector):
        self._spend(store, 3)
        self._spend(store, 1, payee="Bookshop")
        (pattern,) = _routines(detector.detect_routines(), "spending")
        assert pattern.significance == pytest.approx(0.75)

    def test_missing_payee_groups_as_unknown(self, store, detector):
        for i in range(3):
            store.ingest("ynab", "transaction", f"t-{i}", {"amount": 10})
        (pattern,) = _routines(detector.detect_routines(), "spending")
        assert pattern.metadata["payee"] == "Unknown"

    def test_confidence_saturates(self, store, detector):
        self._spend(store, 15)
        (pattern,) = _routines(detector.detect_routines(), "spending")
        assert pattern.confidence == 0.9


class TestEventRoutine:

    def test_weekly_cadence(self, store, detector):
        for i in range(4):
            start = START + timedelta(days=7 * i, hours=i % 2)
            store.ingest(
                "google",
                "calendar_event",
                f"evt-{i}",
                {"summary": "Team Sync" if i else "  team sync ", "start": {"dateTime": start.isoformat()}},
            )

        (pattern,) = detector.detect_routines()

        assert pattern.temporal.frequency == "weekly"
        assert pattern.temporal.start_date == START
        assert pattern.metadata["count"] == 4
        assert pattern.metadata["title"] == "team sync"
        assert pattern.confidence == pytest.approx(0.4)

    def test_below_threshold(self, store, detector):
        for i in range(2):
            store.ingest("google", "event", f"evt-{i}", {"summary": "Dentist"})
        assert detector.detect_routines() == []


class TestCorrespondenceRoutine:

    def test_counts_correspondents_and_excludes_owner(self, store, graph, detector, make_provenance):
        alice_id = graph.upsert_entity("person", "Alice", {}, make_provenance())
        for i in range(5):
            store.ingest(
                "google",
                "email",
                f"in-{i}",
                {"from": "Alice <Alice@Example.com>", "to": "me@example.com"},
            )
        store.ingest("google", "email", "out-0", {"from": "me@example.com", "to": "bob@example.com"})

        patterns = detector.detect_routines()

        assert len(patterns) == 1
        pattern = patterns[0]
        assert pattern.name == "Frequent correspondence with Alice"
        assert pattern.metadata == {"count": 5, "address": "alice@example.com", "name": "Alice"}
        assert pattern.related_entity_ids == [alice_id]
        assert pattern.confidence == pytest.approx(0.25)
        assert pattern.significance == pytest.approx(5 / 6)

    def test_record_counted_once_per_correspondent(self, store, detector):
        for i in range(4):
            store.ingest(
                "google", "message", f"m-{i}",
                {"from": "carol@example.com", "to": "carol@example.com, me@example.com"},
            )
        assert detector.detect_routines() == []


class TestListeningRoutine:

    def test_favourite_artist(self, store, detector):
        for i in range(5):
            store.ingest(
                "spotify", "recently_played", f"p-{i}",
                {"trackName": f"Song {i}", "artists": [{"name": "Radiohead"}]},
            )
        store.ingest("spotify", "saved_track", "s-0", {"trackName": "Other", "artists": ["Bjork"]})

        (pattern,) = detector.detect_routines()
        assert pattern.name == "Frequent listener of Radiohead"
        assert pattern.metadata == {"count": 5, "artist": "Radiohead"}
        assert pattern.significance == pytest.approx(5 / 6)


class TestTrends:

    def _mail(self, store, external_id, when):
        store.ingest(
            "google", "email", external_id,
            {"from": "Bob <bob@example.com>", "to": "me@example.com"},
            observed_at=when,
        )

    def test_increasing_trend(self, store, detector):
        self._mail(store, "old", START)
        for i in range(5):
            self._mail(store, f"new-{i}", START + timedelta(days=25 + i))

        (trend,) = detector.detect_trends()

        assert trend.kind == "trend"
        assert trend.metadata["direction"] == "increasing"
        assert trend.metadata["early_count"] == 1
        assert trend.metadata["late_count"] == 5

    def test_short_window_has_no_trend(self, store, detector):
        for i in range(6):
            self._mail(store, f"m-{i}", START + timedelta(days=i))
        assert detector.detect_trends() == []

    def test_no_observed_at_has_no_trend(self, store, detector):
        for i in range(8):
            store.ingest("google", "email", f"m-{i}", {"from": "bob@example.com"})
        assert detector.detect_trends() == []


class TestClusters:

    def test_hub_with_three_neighbours(self, store, graph, detector, make_provenance):
        prov = make_provenance()
        hub = graph.upsert_entity("person", "Alice", {}, prov)
        others = [graph.upsert_entity("person", name, {}, prov) for name in ("Bob", "Carol", "Dan")]
        rel_ids = [graph.upsert_relationship(hub, other, "KNOWS", {}, prov) for other in others]
        rel_ids.append(graph.upsert_relationship(others[0], hub, "WORKS_WITH", {}, prov))

        (cluster,) = detector.detect_clusters()

        assert cluster.name == "Alice's network"
        assert cluster.confidence == 0.7
        assert cluster.related_entity_ids == [hub, *others]
        assert cluster.related_relationship_ids == rel_ids
        assert cluster.significance == pytest.approx(3 / 4)
        assert cluster.metadata == {"connection_count": 3}

    def test_two_neighbours_is_not_a_cluster(self, graph, detector, make_provenance):
        prov = make_provenance()
        hub = graph.upsert_entity("person", "Alice", {}, prov)
        for name in ("Bob", "Carol"):
            graph.upsert_relationship(hub, graph.upsert_entity("person", name, {}, prov), "KNOWS", {}, prov)
        assert detector.detect_clusters() == []


def test_detection_is_repeatable(store, graph, detector, make_provenance):
    """Unchanged input gives the same ids, names and scores in the same order."""
    for i in range(3):
        store.ingest("ynab", "transaction", f"t-{i}", {"payeeName": "Cafe", "amount": 3})
    for i in range(5):
        store.ingest("google", "email", f"m-{i}", {"from": "bob@example.com"})

    first = detector.detect_patterns()
    second = detector.detect_patterns()

    def _key(patterns):
        return [(p.id, p.name, p.confidence, p.significance, p.metadata) for p in patterns]

    assert first
    assert _key(first) == _key(second)
