"""CLI tool for building, inspecting and managing the Weave"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from weave.config import WeaveConfig
from weave.coordinator import WeaveCoordinator
from weave.errors import WeaveError
from weave.store import WeaveStore
from weave_logging import setup_logging

logger = logging.getLogger(__name__)


def _resolve_entity(coordinator: WeaveCoordinator, entity_ref: str):
    """Find an entity by id, falling back to a name search."""
    entity = coordinator.graph.get_entity(entity_ref)
    if entity:
        return entity
    results = coordinator.search_entities(entity_ref, limit=1)
    return results[0] if results else None


def cmd_stats(coordinator: WeaveCoordinator):
    """Show graph statistics: totals, per-type counts, top entities"""
    stats = coordinator.get_statistics()

    print("=" * 60)
    print("Weave Statistics")
    print("=" * 60)
    print(f"\nDatabase: {coordinator.store.db_path}")
    print(f"\nRaw Records: {coordinator.store.count_records()}")
    print(f"Total Entities: {stats['total_entities']}")
    print(f"Total Relationships: {stats['total_relationships']}")

    if stats["entities_by_type"]:
        print("\n--- Entities by Type ---")
        for entity_type, count in stats["entities_by_type"].items():
            print(f"  {entity_type:20s}: {count:5d}")

    if stats["relationships_by_type"]:
        print("\n--- Relationships by Type ---")
        for rel_type, count in stats["relationships_by_type"].items():
            print(f"  {rel_type:20s}: {count:5d}")

    if stats["top_entities"]:
        print("\n--- Top Entities ---")
        for entity in stats["top_entities"]:
            print(f"  [{entity.type}] {entity.name} ({entity.occurrence_count})")

    print("=" * 60)


def cmd_search(coordinator: WeaveCoordinator, term: str, limit: int = 20):
    """Search for entities by name or alias"""
    results = coordinator.search_entities(term, limit=limit)

    print(f"\nSearch results for '{term}' (limit={limit}):")
    print("-" * 80)

    if not results:
        print("No matching entities found.")
        return

    for entity in results:
        aliases = f" | aliases: {', '.join(entity.aliases)}" if entity.aliases else ""
        print(f"  [{entity.type}] {entity.name}")
        print(f"    ID: {entity.id}")
        print(
            f"    Confidence: {entity.confidence:.2f} | "
            f"Occurrences: {entity.occurrence_count}{aliases}"
        )
        print()


def cmd_graph(coordinator: WeaveCoordinator, entity_ref: str, depth: int = 1):
    """Show the neighbourhood of an entity (by ID or name)"""
    entity = _resolve_entity(coordinator, entity_ref)
    if not entity:
        print(f"No entity found matching '{entity_ref}'")
        return
    print(f"Found entity: [{entity.type}] {entity.name} ({entity.id})")

    graph = coordinator.get_entity_graph(entity.id, depth=depth)
    names = {e.id: e.name for e in graph["entities"]}

    print(f"\nEntities within depth {depth}: {len(graph['entities'])}")
    print("-" * 80)
    for rel in graph["relationships"]:
        source = names.get(rel.from_entity_id, rel.from_entity_id)
        target = names.get(rel.to_entity_id, rel.to_entity_id)
        print(f"  {source} --[{rel.type}]--> {target}  (confidence {rel.confidence:.2f})")
    if not graph["relationships"]:
        print("No relationships found.")


def cmd_ingest(coordinator: WeaveCoordinator, input_path: str):
    """Ingest raw records from a JSON-lines file"""
    input_file = Path(input_path)
    if not input_file.exists():
        print(f"Error: File not found: {input_path}", file=sys.stderr)
        return 1

    ingested = 0
    skipped = 0
    with open(input_file, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
                coordinator.ingest(
                    source=item["source"],
                    record_kind=item["record_kind"],
                    external_id=str(item["external_id"]),
                    payload=item.get("payload") or {},
                    observed_at=item.get("observed_at"),
                )
                ingested += 1
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping line {line_number}: {e}")
                skipped += 1

    print(f"Ingested {ingested} records from {input_path} ({skipped} skipped)")


def cmd_build(coordinator: WeaveCoordinator):
    """Build the graph from recent raw records"""

    def on_progress(stage: str, done: int, total: int):
        logger.info(f"{stage}: {done}/{total}")

    async def run():
        try:
            return await coordinator.build(on_progress=on_progress)
        finally:
            await coordinator.close()

    report = asyncio.run(run())

    print("-" * 80)
    print(report.message)
    print(f"  Records processed:     {report.records_processed}/{report.records_total}")
    print(f"  Entities added:        {report.entities_added}")
    print(f"  Relationships added:   {report.relationships_added}")
    print(f"  Relationships dropped: {report.relationships_dropped}")
    print(f"  Entity failures:       {report.entities_failed}")
    print(f"  Extraction failures:   {report.extraction_failures}")
    print(f"  Patterns detected:     {report.patterns_detected}")


def cmd_patterns(coordinator: WeaveCoordinator):
    """Run pattern detection and list the results"""
    patterns = coordinator.detect_and_save_patterns()

    print(f"\nDetected {len(patterns)} patterns:")
    print("-" * 80)
    for pattern in patterns:
        print(f"  [{pattern.kind}] {pattern.name}")
        print(
            f"    {pattern.description} | confidence {pattern.confidence:.2f} | "
            f"significance {pattern.significance:.2f}"
        )
        if pattern.temporal and pattern.temporal.frequency:
            print(f"    Frequency: {pattern.temporal.frequency}")
        print()


def cmd_overview(coordinator: WeaveCoordinator, output_path: Optional[str] = None):
    """Render the markdown overview to stdout or a file"""
    overview = coordinator.generate_overview()
    if output_path:
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(overview, encoding="utf-8")
        print(f"Wrote overview to {output_path}")
    else:
        print(overview)


def cmd_export(coordinator: WeaveCoordinator, output_path: str):
    """Export the graph to a JSON file"""
    snapshot = coordinator.export_graph()

    output_file = Path(output_path)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(snapshot, f, indent=2)

    print(
        f"Exported {len(snapshot['entities'])} entities and "
        f"{len(snapshot['relationships'])} relationships to {output_path}"
    )


def cmd_import(coordinator: WeaveCoordinator, input_path: str, merge: bool = False):
    """Import the graph from a JSON file"""
    input_file = Path(input_path)
    if not input_file.exists():
        print(f"Error: File not found: {input_path}", file=sys.stderr)
        return 1

    with open(input_file, "r", encoding="utf-8") as f:
        snapshot = json.load(f)

    counts = coordinator.import_graph(snapshot, merge=merge)

    action = "Merged" if merge else "Imported"
    print(
        f"{action} {counts['entities']} entities and {counts['relationships']} "
        f"relationships from {input_path} ({counts['skipped']} skipped)"
    )


def cmd_merge_entities(coordinator: WeaveCoordinator, keep_ref: str, merge_ref: str):
    """Merge one entity into another (by ID or name)"""
    keep = _resolve_entity(coordinator, keep_ref)
    merge = _resolve_entity(coordinator, merge_ref)
    if not keep or not merge:
        print(f"No entity found matching '{keep_ref if not keep else merge_ref}'")
        return

    survivor = coordinator.merge_entities(keep.id, merge.id)
    print(
        f"Merged [{merge.type}] {merge.name} into [{survivor.type}] {survivor.name} "
        f"({survivor.occurrence_count} occurrences)"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="weave",
        description="Weave CLI - Build and inspect your personal knowledge graph",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Load raw records and build the graph
  weave --ingest records.jsonl
  weave --build

  # Inspect
  weave --stats
  weave --search "alice"
  weave --graph "Alice" --depth 2
  weave --patterns
  weave --overview

  # Maintenance
  weave --merge-entities "Alice Smith" "Alice"
  weave --export weave_backup.json
  weave --import weave_backup.json --merge

Environment Variables:
  WEAVE_STATE_DIR or STATE_DIR  Directory for the database (default: ~/.local/state/weave)
  WEAVE_LLM_PROVIDER            openai (default) or anthropic
  WEAVE_LLM_API_KEY             API key for the extraction provider
        """,
    )

    # Command options (mutually exclusive)
    commands = parser.add_mutually_exclusive_group(required=True)
    commands.add_argument("--stats", action="store_true", help="Show graph statistics")
    commands.add_argument("--search", metavar="TERM", help="Search for entities by name or alias")
    commands.add_argument("--graph", metavar="ENTITY", help="Show entity neighbourhood (by ID or name)")
    commands.add_argument("--ingest", metavar="PATH", help="Ingest raw records from a JSON-lines file")
    commands.add_argument("--build", action="store_true", help="Build the graph from recent raw records")
    commands.add_argument("--patterns", action="store_true", help="Detect and list patterns")
    commands.add_argument("--overview", action="store_true", help="Print the markdown overview")
    commands.add_argument("--export", metavar="PATH", help="Export graph to JSON file")
    commands.add_argument("--import", metavar="PATH", dest="import_path", help="Import graph from JSON file")
    commands.add_argument(
        "--merge-entities", nargs=2, metavar=("KEEP", "MERGE"),
        help="Merge the MERGE entity into KEEP (by ID or name)",
    )

    # Shared options
    parser.add_argument("--depth", type=int, default=1, help="Traversal depth for --graph (default: 1)")
    parser.add_argument("--limit", type=int, default=20, help="Result limit for --search (default: 20)")
    parser.add_argument("--merge", action="store_true", help="Merge on import (for --import)")
    parser.add_argument("--output", metavar="PATH", help="Write --overview to a file")
    parser.add_argument("--db-path", type=Path, help="Override database path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entrypoint"""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = WeaveConfig.from_env()
    except WeaveError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    if args.db_path:
        config.db_path = args.db_path

    setup_logging(config, verbose=args.verbose)

    try:
        exit_code = None
        coordinator = WeaveCoordinator.from_config(config, store=WeaveStore(config.db_path))
        if args.stats:
            cmd_stats(coordinator)
        elif args.search:
            cmd_search(coordinator, term=args.search, limit=args.limit)
        elif args.graph:
            cmd_graph(coordinator, entity_ref=args.graph, depth=args.depth)
        elif args.ingest:
            exit_code = cmd_ingest(coordinator, input_path=args.ingest)
        elif args.build:
            cmd_build(coordinator)
        elif args.patterns:
            cmd_patterns(coordinator)
        elif args.overview:
            cmd_overview(coordinator, output_path=args.output)
        elif args.export:
            cmd_export(coordinator, output_path=args.export)
        elif args.import_path:
            exit_code = cmd_import(coordinator, input_path=args.import_path, merge=args.merge)
        elif args.merge_entities:
            cmd_merge_entities(coordinator, *args.merge_entities)
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=args.verbose)
        return 1
    return exit_code or 0


if __name__ == "__main__":
    sys.exit(main())
