"""Weave coordinator: build pipeline, incremental path and reporting.

Pulls the most recently updated raw records, runs them through extraction in
fixed-size batches, merges results into the graph and finishes with one
pattern-detection pass. Batches run strictly one item at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from .config import WeaveConfig
from .errors import ExtractionUnavailableError
from .extract import EntityExtractor
from .graph import GraphManager, ProcessStats
from .llm_client import build_llm_client
from .patterns import PatternDetector
from .schema import Entity, Pattern, RawRecord, _now_utc, parse_timestamp
from .store import WeaveStore

logger = logging.getLogger(__name__)

BuildProgress = Callable[[str, int, int], None]

NOTHING_TO_DO = "Nothing to do: no raw records have been ingested yet"


class BuildState(str, Enum):
    IDLE = "idle"
    FETCHING_RECORDS = "fetching_records"
    EXTRACTING_BATCH = "extracting_batch"
    MERGING_BATCH = "merging_batch"
    DETECTING_PATTERNS = "detecting_patterns"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class BuildReport:
    """Final counts of a build run, reported whether or not items failed."""

    state: BuildState = BuildState.IDLE
    records_total: int = 0
    records_processed: int = 0
    batches_completed: int = 0
    entities_added: int = 0
    relationships_added: int = 0
    relationships_dropped: int = 0
    entities_failed: int = 0
    extraction_failures: int = 0
    patterns_detected: int = 0
    message: str = ""

    def add(self, stats: ProcessStats) -> None:
        self.entities_added += stats.entities_added
        self.relationships_added += stats.relationships_added
        self.relationships_dropped += stats.relationships_dropped
        self.entities_failed += stats.entities_failed

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class WeaveCoordinator:
    """Entry point for building and querying the Weave."""

    def __init__(
        self,
        store: WeaveStore,
        extractor: Optional[EntityExtractor] = None,
        build_window: int = 100,
        batch_size: int = 10,
        top_n: int = 10,
        user_emails: tuple[str, ...] | list[str] = (),
    ):
        self.store = store
        self.extractor = extractor
        self.graph = GraphManager(store)
        self.detector = PatternDetector(store, self.graph, user_emails=user_emails)
        self.build_window = build_window
        self.batch_size = batch_size
        self.top_n = top_n
        self.state = BuildState.IDLE
        self._cancel_requested = False

    @classmethod
    def from_config(
        cls, config: WeaveConfig, store: Optional[WeaveStore] = None
    ) -> "WeaveCoordinator":
        """Wire store, extractor and detector from configuration.

        Without usable LLM credentials the coordinator still serves reads,
        ingestion and pattern detection; ``build`` refuses to start.
        """
        store = store or WeaveStore(config.db_path)
        extractor = None
        try:
            client = build_llm_client(config)
        except ExtractionUnavailableError as e:
            logger.info(f"Entity extraction disabled: {e}")
        else:
            extractor = EntityExtractor(
                client,
                user_name=config.user_name,
                inter_call_delay=config.inter_call_delay,
            )
        return cls(
            store,
            extractor,
            build_window=config.build_window,
            batch_size=config.batch_size,
            top_n=config.top_n,
            user_emails=config.user_emails,
        )

    async def close(self) -> None:
        """Release the extraction client's HTTP resources."""
        client = getattr(self.extractor, "client", None)
        if client is not None and hasattr(client, "close"):
            await client.close()

    def _set_state(self, state: BuildState, report: BuildReport) -> None:
        logger.debug(f"Build state {self.state.value} -> {state.value}")
        self.state = state
        report.state = state

    @staticmethod
    def _progress(callback: Optional[BuildProgress], stage: str, done: int, total: int) -> None:
        if callback:
            callback(stage, done, total)

    def cancel(self) -> None:
        """Stop a running build before its next batch."""
        self._cancel_requested = True

    # ------------------------------------------------------------------
    # Build

    async def build(self, on_progress: Optional[BuildProgress] = None) -> BuildReport:
        """Build the graph from the most recently updated raw records.

        Args:
            on_progress: Called as (stage, done, total) after every item and
                every batch

        Returns:
            BuildReport with final counts; zero records gives state FAILED
            with a "nothing to do" message rather than an exception

        Raises:
            ExtractionUnavailableError: no extractor configured
        """
        if self.extractor is None:
            raise ExtractionUnavailableError(
                "Entity extraction is not configured; set WEAVE_LLM_API_KEY"
            )

        self._cancel_requested = False
        report = BuildReport()
        self._set_state(BuildState.FETCHING_RECORDS, report)

        records = self.store.get_recent_records(self.build_window)
        total = len(records)
        report.records_total = total
        if not records:
            self._set_state(BuildState.FAILED, report)
            report.message = NOTHING_TO_DO
            logger.info(NOTHING_TO_DO)
            return report

        logger.info(f"Building the Weave from {total} records (batch size {self.batch_size})")
        for offset in range(0, total, self.batch_size):
            if self._cancel_requested:
                self._set_state(BuildState.CANCELLED, report)
                report.message = (
                    f"Cancelled after {report.records_processed} of {total} records"
                )
                logger.info(report.message)
                return report

            if offset and self.extractor.inter_call_delay > 0:
                await asyncio.sleep(self.extractor.inter_call_delay)

            batch = records[offset:offset + self.batch_size]
            self._set_state(BuildState.EXTRACTING_BATCH, report)
            results = await self.extractor.extract_batch(
                batch,
                on_progress=lambda done, _total, base=offset: self._progress(
                    on_progress, "extracting", base + done, total
                ),
            )

            self._set_state(BuildState.MERGING_BATCH, report)
            for record, result in zip(batch, results):
                if result.failed:
                    report.extraction_failures += 1
                report.add(self.graph.process_extraction_result(result, record.provenance()))
                report.records_processed += 1

            report.batches_completed += 1
            self._progress(on_progress, "merging", report.records_processed, total)

        self._set_state(BuildState.DETECTING_PATTERNS, report)
        self._progress(on_progress, "detecting_patterns", total, total)
        report.patterns_detected = len(self.detect_and_save_patterns())

        self._set_state(BuildState.DONE, report)
        report.message = (
            f"Weave built: {report.entities_added} entities, "
            f"{report.relationships_added} relationships "
            f"({report.extraction_failures} extraction failures, "
            f"{report.entities_failed} entity failures)"
        )
        logger.info(report.message)
        return report

    async def process_new_data(self, record: RawRecord) -> ProcessStats:
        """Extract and merge a single newly arrived record immediately."""
        if self.extractor is None:
            raise ExtractionUnavailableError("Entity extraction is not configured")
        result = await self.extractor.extract(record)
        return self.graph.process_extraction_result(result, record.provenance())

    # ------------------------------------------------------------------
    # Ingestion and delegates

    def ingest(
        self,
        source: str,
        record_kind: str,
        external_id: str,
        payload: Optional[dict[str, Any]] = None,
        observed_at: Any = None,
    ) -> RawRecord:
        """Store a raw record; idempotent on (source, record_kind, external_id)."""
        return self.store.ingest(
            source, record_kind, str(external_id), payload, parse_timestamp(observed_at)
        )

    def search_entities(self, query: str, limit: int = 10) -> list[Entity]:
        return self.graph.search_entities(query, limit)

    def get_entity_graph(self, entity_id: str, depth: int = 1) -> dict[str, list[Any]]:
        return self.graph.get_entity_graph(entity_id, depth)

    def get_statistics(self, top_n: Optional[int] = None) -> dict[str, Any]:
        return self.graph.get_statistics(top_n or self.top_n)

    def merge_entities(self, keep_id: str, merge_id: str) -> Entity:
        return self.graph.merge_entities(keep_id, merge_id)

    # ------------------------------------------------------------------
    # Patterns

    def detect_and_save_patterns(self) -> list[Pattern]:
        """Run all detectors and replace the stored pattern set."""
        patterns = self.detector.detect_patterns()
        self.store.replace_patterns(patterns)
        for pattern in patterns:
            logger.debug(f"Pattern: {pattern.name} - {pattern.description}")
        return patterns

    def get_patterns(self) -> list[Pattern]:
        return self.store.list_patterns()

    # ------------------------------------------------------------------
    # Reporting

    def generate_overview(self, now: Optional[datetime] = None) -> str:
        """Markdown summary of graph statistics and stored patterns."""
        stats = self.get_statistics()
        patterns = self.get_patterns()
        now = now or _now_utc()

        lines = [
            "# The Weave: Your Life Map",
            "",
            f"*Last updated: {now.strftime('%Y-%m-%d %H:%M UTC')}*",
            "",
            "## Overview",
            "",
            f"- **Total Entities**: {stats['total_entities']}",
            f"- **Total Relationships**: {stats['total_relationships']}",
            "",
            "## Entities by Type",
            "",
        ]
        if stats["entities_by_type"]:
            for entity_type, count in stats["entities_by_type"].items():
                lines.append(f"- **{entity_type}**: {count}")
        else:
            lines.append("*No entities yet.*")

        lines += ["", "## Most Prominent Entities", ""]
        if stats["top_entities"]:
            for entity in stats["top_entities"]:
                lines.append(f"- **{entity.name}** ({entity.occurrence_count} occurrences)")
        else:
            lines.append("*No entities yet.*")

        lines += ["", "## Patterns Detected", ""]
        if patterns:
            for pattern in patterns:
                lines.append(
                    f"- **{pattern.name}** ({pattern.kind}, "
                    f"confidence {pattern.confidence:.2f}): {pattern.description}"
                )
        else:
            lines.append("*No patterns detected yet.*")

        lines += [
            "",
            "---",
            "",
            "*The Weave is your personal knowledge graph, built from your data.*",
            "",
        ]
        return "\n".join(lines)

    def export_graph(self) -> dict[str, Any]:
        """Full self-contained snapshot: version, exported_at, entities, relationships."""
        return self.store.export_snapshot()

    def import_graph(self, snapshot: dict[str, Any], merge: bool = False) -> dict[str, int]:
        """Restore a snapshot produced by ``export_graph``."""
        if not isinstance(snapshot, dict) or not isinstance(snapshot.get("entities"), list):
            raise ValueError("Snapshot must be a dict with an 'entities' list")
        return self.store.import_snapshot(snapshot, merge=merge)
