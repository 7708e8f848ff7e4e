"""Pattern detection over raw records and the entity graph.

Read-only: detectors never write. Each pattern is self-contained, so the
detectors can run in any order; ``detect_patterns`` simply concatenates
routines, trends and clusters.

Pattern ids are digests of kind + identifying key, so repeated passes over
unchanged data produce the same ids in the same order.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from .payloads import (
    EVENT_KINDS,
    MESSAGE_KINDS,
    PLAY_KINDS,
    TRANSACTION_KINDS,
    EventPayload,
    MessagePayload,
    TrackPayload,
    TransactionPayload,
    parse_payload,
)
from .schema import Frequency, Pattern, RawRecord, TemporalInfo, _normalize_name, _now_utc, parse_timestamp

logger = logging.getLogger(__name__)

CLUSTER_MIN_NEIGHBOURS = 3
CLUSTER_CONFIDENCE = 0.7
MAX_ROUTINE_CONFIDENCE = 0.9

TREND_MIN_RECORDS = 6
TREND_MIN_WINDOW = timedelta(days=14)
TREND_MIN_RATIO = 2.0


@dataclass(frozen=True)
class RoutineRule:
    """Grouping family for routine and trend detection."""

    family: str
    kinds: frozenset[str]
    threshold: int
    upper_bound: int


ROUTINE_RULES = (
    RoutineRule("correspondence", MESSAGE_KINDS, threshold=5, upper_bound=20),
    RoutineRule("event", EVENT_KINDS, threshold=3, upper_bound=10),
    RoutineRule("listening", PLAY_KINDS, threshold=5, upper_bound=20),
    RoutineRule("spending", TRANSACTION_KINDS, threshold=3, upper_bound=10),
)


@dataclass
class _Group:
    key: str
    display: str
    records: list[RawRecord] = field(default_factory=list)
    event_starts: list[datetime] = field(default_factory=list)
    total_amount: float = 0.0

    @property
    def count(self) -> int:
        return len(self.records)


def determine_frequency(interval: timedelta) -> Frequency:
    """Classify a mean gap between occurrences into a cadence."""
    days = interval.total_seconds() / 86400
    if days < 2:
        return "daily"
    if days < 10:
        return "weekly"
    if days < 45:
        return "monthly"
    if days < 400:
        return "yearly"
    return "once"


def pattern_id(kind: str, *parts: str) -> str:
    """Deterministic pattern id from kind and identifying key."""
    digest = hashlib.sha256("|".join([kind, *parts]).encode("utf-8")).hexdigest()
    return f"pattern:{kind}:{digest[:16]}"


class PatternDetector:
    """Derives routines, trends and clusters from the store and graph.

    Args:
        store: WeaveStore holding raw records and relationships
        graph: GraphManager used to resolve pattern subjects to entities
        user_emails: The owner's own addresses, excluded from correspondence
    """

    def __init__(self, store, graph, user_emails: Iterable[str] = ()):
        self.store = store
        self.graph = graph
        self.user_emails = {address.strip().lower() for address in user_emails}

    def detect_patterns(self) -> list[Pattern]:
        detected_at = _now_utc()
        patterns = []
        patterns.extend(self.detect_routines(detected_at))
        patterns.extend(self.detect_trends(detected_at))
        patterns.extend(self.detect_clusters(detected_at))
        logger.info(f"Detected {len(patterns)} patterns")
        return patterns

    # ------------------------------------------------------------------
    # Grouping

    def _group_keys(self, rule: RoutineRule, payload: Any) -> list[tuple[str, str]]:
        """(key, display name) pairs a record contributes to, at most once each."""
        if rule.family == "correspondence" and isinstance(payload, MessagePayload):
            return [
                (address, name or address)
                for name, address in payload.correspondents()
                if address not in self.user_emails
            ]
        if rule.family == "event" and isinstance(payload, EventPayload):
            title = payload.summary.strip()
            return [(_normalize_name(title), title)] if title else []
        if rule.family == "listening" and isinstance(payload, TrackPayload):
            keys: dict[str, str] = {}
            for artist in payload.artists:
                keys.setdefault(_normalize_name(artist), artist)
            return list(keys.items())
        if rule.family == "spending" and isinstance(payload, TransactionPayload):
            payee = (payload.payee_name or "").strip() or "Unknown"
            return [(_normalize_name(payee), payee)]
        return []

    def _collect_groups(self, rule: RoutineRule) -> tuple[list[RawRecord], dict[str, _Group]]:
        records = self.store.list_records(rule.kinds)
        groups: dict[str, _Group] = {}
        for record in records:
            payload = parse_payload(record.record_kind, record.payload)
            for key, display in self._group_keys(rule, payload):
                group = groups.setdefault(key, _Group(key=key, display=display))
                group.records.append(record)
                if isinstance(payload, EventPayload) and payload.start:
                    try:
                        start = parse_timestamp(payload.start)
                    except ValueError:
                        start = None
                    if start:
                        group.event_starts.append(start)
                if isinstance(payload, TransactionPayload):
                    group.total_amount += abs(payload.amount)
        return records, groups

    def _related_entities(self, *queries: str) -> list[str]:
        for query in queries:
            if not query:
                continue
            matches = self.graph.search_entities(query, limit=1)
            if matches:
                return [entity.id for entity in matches]
        return []

    # ------------------------------------------------------------------
    # Routines

    def detect_routines(self, detected_at: Optional[datetime] = None) -> list[Pattern]:
        detected_at = detected_at or _now_utc()
        patterns = []
        for rule in ROUTINE_RULES:
            records, groups = self._collect_groups(rule)
            for group in groups.values():
                if group.count < rule.threshold:
                    continue
                patterns.append(self._routine_pattern(rule, group, len(records), detected_at))
        return patterns

    def _routine_pattern(
        self, rule: RoutineRule, group: _Group, family_total: int, detected_at: datetime
    ) -> Pattern:
        count = group.count
        temporal = None
        metadata: dict[str, Any] = {"count": count}

        if rule.family == "correspondence":
            name = f"Frequent correspondence with {group.display}"
            description = f"Exchanges {count} messages with {group.display} <{group.key}>"
            metadata.update(address=group.key, name=group.display)
        elif rule.family == "event":
            starts = sorted(group.event_starts)
            if len(starts) >= 2:
                mean_gap = (starts[-1] - starts[0]) / (len(starts) - 1)
                frequency = determine_frequency(mean_gap)
            else:
                frequency = "once"
            temporal = TemporalInfo(
                frequency=frequency,
                start_date=starts[0] if starts else None,
                end_date=starts[-1] if starts else None,
            )
            name = f"Recurring event: {group.display}"
            description = f"{group.display} occurs {frequency} ({count} times)"
            metadata.update(title=group.key, frequency=frequency)
        elif rule.family == "listening":
            name = f"Frequent listener of {group.display}"
            description = f"Listened to {group.display} {count} times"
            metadata.update(artist=group.display)
        else:
            total = round(group.total_amount, 2)
            name = f"Regular spending at {group.display}"
            description = f"{count} transactions totaling ${total:.2f}"
            metadata.update(payee=group.display, total=total)

        return Pattern(
            id=pattern_id("routine", rule.family, group.key),
            kind="routine",
            name=name,
            description=description,
            confidence=min(MAX_ROUTINE_CONFIDENCE, count / rule.upper_bound),
            significance=count / family_total if family_total else 0.0,
            related_entity_ids=self._related_entities(group.display, group.key),
            temporal=temporal,
            detected_at=detected_at,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Trends

    def detect_trends(self, detected_at: Optional[datetime] = None) -> list[Pattern]:
        """Groups whose frequency at least doubled or halved across the window.

        The window is each family's observed_at range, split in two halves.
        """
        detected_at = detected_at or _now_utc()
        patterns = []
        for rule in ROUTINE_RULES:
            records, groups = self._collect_groups(rule)
            observed = [r.observed_at for r in records if r.observed_at is not None]
            if not observed:
                continue
            window_start, window_end = min(observed), max(observed)
            if window_end - window_start < TREND_MIN_WINDOW:
                continue
            midpoint = window_start + (window_end - window_start) / 2

            for group in groups.values():
                times = [r.observed_at for r in group.records if r.observed_at is not None]
                if len(times) < TREND_MIN_RECORDS:
                    continue
                early = sum(1 for t in times if t < midpoint)
                late = len(times) - early
                if late >= TREND_MIN_RATIO * max(early, 1) and late > early:
                    direction = "increasing"
                elif early >= TREND_MIN_RATIO * max(late, 1) and early > late:
                    direction = "decreasing"
                else:
                    continue

                patterns.append(
                    Pattern(
                        id=pattern_id("trend", rule.family, group.key),
                        kind="trend",
                        name=f"{direction.capitalize()} {rule.family}: {group.display}",
                        description=(
                            f"{group.display}: {early} records in the first half of the "
                            f"window, {late} in the second"
                        ),
                        confidence=min(MAX_ROUTINE_CONFIDENCE, len(times) / rule.upper_bound),
                        significance=len(times) / len(records),
                        related_entity_ids=self._related_entities(group.display, group.key),
                        temporal=TemporalInfo(start_date=window_start, end_date=window_end),
                        detected_at=detected_at,
                        metadata={
                            "direction": direction,
                            "family": rule.family,
                            "key": group.key,
                            "early_count": early,
                            "late_count": late,
                        },
                    )
                )
        return patterns

    # ------------------------------------------------------------------
    # Clusters

    def detect_clusters(self, detected_at: Optional[datetime] = None) -> list[Pattern]:
        """Hub entities with at least three distinct neighbours."""
        detected_at = detected_at or _now_utc()
        relationships = self.store.list_relationships()

        # dicts as insertion-ordered sets keep output order stable
        adjacency: dict[str, dict[str, None]] = {}
        for rel in relationships:
            adjacency.setdefault(rel.from_entity_id, {})
            adjacency.setdefault(rel.to_entity_id, {})
            if rel.from_entity_id == rel.to_entity_id:
                continue
            adjacency[rel.from_entity_id][rel.to_entity_id] = None
            adjacency[rel.to_entity_id][rel.from_entity_id] = None

        patterns = []
        for hub_id, neighbours in adjacency.items():
            if len(neighbours) < CLUSTER_MIN_NEIGHBOURS:
                continue
            hub = self.graph.get_entity(hub_id)
            if hub is None:
                continue
            touching = [
                rel.id for rel in relationships
                if hub_id in (rel.from_entity_id, rel.to_entity_id)
            ]
            patterns.append(
                Pattern(
                    id=pattern_id("cluster", hub_id),
                    kind="cluster",
                    name=f"{hub.name}'s network",
                    description=f"Connected to {len(neighbours)} other entities",
                    confidence=CLUSTER_CONFIDENCE,
                    significance=len(neighbours) / len(adjacency),
                    related_entity_ids=[hub_id, *neighbours],
                    related_relationship_ids=touching,
                    detected_at=detected_at,
                    metadata={"connection_count": len(neighbours)},
                )
            )
        return patterns
