"""SQLite storage backend for the Weave.

Holds raw ingested records, entities, relationships and the latest detected
pattern set in one local database. Uses the state_paths conventions for the
default location.

Every method accepts an optional open connection so that callers (the graph
manager's merge, snapshot import) can compose several writes into a single
transaction; without one, each call runs in its own short transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .schema import (
    Entity,
    Pattern,
    ProvenancePointer,
    RawRecord,
    Relationship,
    TemporalInfo,
    _normalize_name,
    _now_utc,
    parse_timestamp,
)
from .state_paths import resolve_db_path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SNAPSHOT_VERSION = "1.0"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS raw_records (
        source TEXT NOT NULL,
        record_kind TEXT NOT NULL,
        external_id TEXT NOT NULL,
        payload_json TEXT NOT NULL DEFAULT '{}',
        observed_at TEXT,
        last_updated TEXT NOT NULL,
        UNIQUE (source, record_kind, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        name TEXT NOT NULL,
        normalized_name TEXT NOT NULL,
        aliases_json TEXT NOT NULL DEFAULT '[]',
        confidence REAL NOT NULL,
        attributes_json TEXT NOT NULL DEFAULT '{}',
        sources_json TEXT NOT NULL DEFAULT '[]',
        occurrence_count INTEGER NOT NULL DEFAULT 1,
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (type, normalized_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS relationships (
        id TEXT PRIMARY KEY,
        from_entity_id TEXT NOT NULL,
        to_entity_id TEXT NOT NULL,
        type TEXT NOT NULL,
        confidence REAL NOT NULL,
        strength REAL,
        attributes_json TEXT NOT NULL DEFAULT '{}',
        sources_json TEXT NOT NULL DEFAULT '[]',
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (from_entity_id, to_entity_id, type),
        FOREIGN KEY (from_entity_id) REFERENCES entities(id),
        FOREIGN KEY (to_entity_id) REFERENCES entities(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS patterns (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT NOT NULL,
        confidence REAL NOT NULL,
        significance REAL NOT NULL,
        related_entities_json TEXT NOT NULL DEFAULT '[]',
        related_relationships_json TEXT NOT NULL DEFAULT '[]',
        temporal_json TEXT,
        detected_at TEXT NOT NULL,
        metadata_json TEXT NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_raw_records_updated ON raw_records(last_updated)",
    "CREATE INDEX IF NOT EXISTS idx_raw_records_kind ON raw_records(source, record_kind)",
    "CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_from ON relationships(from_entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_to ON relationships(to_entity_id)",
    """
    CREATE TABLE IF NOT EXISTS schema_info (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
]


def _serialize(data: Any) -> str:
    """Serialize dict/list to JSON string."""
    return json.dumps(data, sort_keys=True, default=str)


def _deserialize_dict(value: Optional[str]) -> dict[str, Any]:
    """Deserialize JSON string to dict."""
    if not value:
        return {}
    try:
        result = json.loads(value)
        return result if isinstance(result, dict) else {}
    except json.JSONDecodeError:
        return {}


def _deserialize_list(value: Optional[str]) -> list[Any]:
    """Deserialize JSON string to list."""
    if not value:
        return []
    try:
        result = json.loads(value)
        return result if isinstance(result, list) else []
    except json.JSONDecodeError:
        return []


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Store timestamps as UTC ISO strings so they sort lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _sources_json(sources: list[ProvenancePointer]) -> str:
    return _serialize([source.to_dict() for source in sources])


def _sources_from_json(value: Optional[str]) -> list[ProvenancePointer]:
    return [ProvenancePointer.from_dict(item) for item in _deserialize_list(value)]


def _row_to_record(row: sqlite3.Row) -> RawRecord:
    return RawRecord(
        source=row["source"],
        record_kind=row["record_kind"],
        external_id=row["external_id"],
        payload=_deserialize_dict(row["payload_json"]),
        observed_at=parse_timestamp(row["observed_at"]),
        last_updated=parse_timestamp(row["last_updated"]),
    )


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        id=row["id"],
        type=row["type"],
        name=row["name"],
        aliases=[str(alias) for alias in _deserialize_list(row["aliases_json"])],
        confidence=row["confidence"],
        attributes=_deserialize_dict(row["attributes_json"]),
        sources=_sources_from_json(row["sources_json"]),
        occurrence_count=row["occurrence_count"],
        first_seen=parse_timestamp(row["first_seen"]),
        last_seen=parse_timestamp(row["last_seen"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_relationship(row: sqlite3.Row) -> Relationship:
    return Relationship(
        id=row["id"],
        from_entity_id=row["from_entity_id"],
        to_entity_id=row["to_entity_id"],
        type=row["type"],
        confidence=row["confidence"],
        strength=row["strength"],
        attributes=_deserialize_dict(row["attributes_json"]),
        sources=_sources_from_json(row["sources_json"]),
        first_seen=parse_timestamp(row["first_seen"]),
        last_seen=parse_timestamp(row["last_seen"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_pattern(row: sqlite3.Row) -> Pattern:
    temporal = _deserialize_dict(row["temporal_json"])
    return Pattern(
        id=row["id"],
        kind=row["kind"],
        name=row["name"],
        description=row["description"],
        confidence=row["confidence"],
        significance=row["significance"],
        related_entity_ids=_deserialize_list(row["related_entities_json"]),
        related_relationship_ids=_deserialize_list(row["related_relationships_json"]),
        temporal=TemporalInfo.from_dict(temporal) if temporal else None,
        detected_at=parse_timestamp(row["detected_at"]),
        metadata=_deserialize_dict(row["metadata_json"]),
    )


class WeaveStore:
    """SQLite-backed record store for the Weave.

    Auto-creates the database and tables on initialization. Rows keep their
    insertion order (SQLite rowid), which is the "storage order" used by
    searches and statistics tie-breaking.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize store with optional custom path.

        Args:
            db_path: Custom database path. If None, uses STATE_DIR/weave.sqlite
        """
        if db_path is None:
            db_path = resolve_db_path()
        else:
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self.transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
                (str(SCHEMA_VERSION),),
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection inside one immediate (write-locked) transaction.

        Commits on success, rolls back everything on any exception.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _session(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.transaction() as own:
                yield own

    # ------------------------------------------------------------------
    # Raw records

    def ingest(
        self,
        source: str,
        record_kind: str,
        external_id: str,
        payload: Optional[dict[str, Any]] = None,
        observed_at: Optional[datetime] = None,
    ) -> RawRecord:
        """Insert or update a raw record keyed on (source, record_kind, external_id).

        Re-ingesting the same key replaces payload and timestamps in place.
        """
        if not source or not record_kind or not external_id:
            raise ValueError("source, record_kind and external_id are required")

        now = _now_utc()
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO raw_records
                   (source, record_kind, external_id, payload_json, observed_at, last_updated)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (source, record_kind, external_id) DO UPDATE SET
                       payload_json = excluded.payload_json,
                       observed_at = excluded.observed_at,
                       last_updated = excluded.last_updated""",
                (
                    source,
                    record_kind,
                    str(external_id),
                    _serialize(payload or {}),
                    _ts(observed_at),
                    _ts(now),
                ),
            )
        return RawRecord(
            source=source,
            record_kind=record_kind,
            external_id=str(external_id),
            payload=payload or {},
            observed_at=parse_timestamp(observed_at),
            last_updated=now,
        )

    def get_record(self, source: str, record_kind: str, external_id: str) -> Optional[RawRecord]:
        with self._session(None) as conn:
            row = conn.execute(
                """SELECT * FROM raw_records
                   WHERE source = ? AND record_kind = ? AND external_id = ?""",
                (source, record_kind, external_id),
            ).fetchone()
        return _row_to_record(row) if row else None

    def get_recent_records(self, limit: int = 100) -> list[RawRecord]:
        """Most recently updated records first."""
        with self._session(None) as conn:
            rows = conn.execute(
                "SELECT * FROM raw_records ORDER BY last_updated DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def list_records(self, record_kinds: Optional[Iterable[str]] = None) -> list[RawRecord]:
        """All records in ingestion order, optionally limited to some kinds."""
        query = "SELECT * FROM raw_records"
        params: list[Any] = []
        if record_kinds is not None:
            kinds = sorted(set(record_kinds))
            if not kinds:
                return []
            query += f" WHERE record_kind IN ({', '.join('?' for _ in kinds)})"
            params.extend(kinds)
        query += " ORDER BY rowid"
        with self._session(None) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_records(self) -> int:
        with self._session(None) as conn:
            return conn.execute("SELECT COUNT(*) FROM raw_records").fetchone()[0]

    # ------------------------------------------------------------------
    # Entities

    def insert_entity(self, entity: Entity, conn: Optional[sqlite3.Connection] = None) -> Entity:
        with self._session(conn) as session:
            session.execute(
                """INSERT INTO entities
                   (id, type, name, normalized_name, aliases_json, confidence,
                    attributes_json, sources_json, occurrence_count,
                    first_seen, last_seen, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entity.id,
                    entity.type,
                    entity.name,
                    _normalize_name(entity.name),
                    _serialize(entity.aliases),
                    entity.confidence,
                    _serialize(entity.attributes),
                    _sources_json(entity.sources),
                    entity.occurrence_count,
                    _ts(entity.first_seen),
                    _ts(entity.last_seen),
                    _ts(entity.created_at),
                    _ts(entity.updated_at),
                ),
            )
        return entity

    def update_entity(self, entity: Entity, conn: Optional[sqlite3.Connection] = None) -> Entity:
        with self._session(conn) as session:
            session.execute(
                """UPDATE entities
                   SET aliases_json = ?, confidence = ?, attributes_json = ?,
                       sources_json = ?, occurrence_count = ?, first_seen = ?,
                       last_seen = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    _serialize(entity.aliases),
                    entity.confidence,
                    _serialize(entity.attributes),
                    _sources_json(entity.sources),
                    entity.occurrence_count,
                    _ts(entity.first_seen),
                    _ts(entity.last_seen),
                    _ts(entity.updated_at),
                    entity.id,
                ),
            )
        return entity

    def get_entity(self, entity_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Entity]:
        with self._session(conn) as session:
            row = session.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return _row_to_entity(row) if row else None

    def find_entity_by_normalized_name(
        self,
        entity_type: str,
        normalized: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Entity]:
        with self._session(conn) as session:
            row = session.execute(
                "SELECT * FROM entities WHERE type = ? AND normalized_name = ?",
                (entity_type, normalized),
            ).fetchone()
        return _row_to_entity(row) if row else None

    def list_entities(
        self,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> list[Entity]:
        """Entities in storage order, optionally of a single type."""
        query = "SELECT * FROM entities"
        params: list[Any] = []
        if entity_type:
            query += " WHERE type = ?"
            params.append(entity_type)
        query += " ORDER BY rowid"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._session(conn) as session:
            rows = session.execute(query, params).fetchall()
        return [_row_to_entity(row) for row in rows]

    def delete_entity(self, entity_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._session(conn) as session:
            session.execute("DELETE FROM entities WHERE id = ?", (entity_id,))

    # ------------------------------------------------------------------
    # Relationships

    def insert_relationship(
        self, relationship: Relationship, conn: Optional[sqlite3.Connection] = None
    ) -> Relationship:
        with self._session(conn) as session:
            session.execute(
                """INSERT INTO relationships
                   (id, from_entity_id, to_entity_id, type, confidence, strength,
                    attributes_json, sources_json, first_seen, last_seen,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    relationship.id,
                    relationship.from_entity_id,
                    relationship.to_entity_id,
                    relationship.type,
                    relationship.confidence,
                    relationship.strength,
                    _serialize(relationship.attributes),
                    _sources_json(relationship.sources),
                    _ts(relationship.first_seen),
                    _ts(relationship.last_seen),
                    _ts(relationship.created_at),
                    _ts(relationship.updated_at),
                ),
            )
        return relationship

    def update_relationship(
        self, relationship: Relationship, conn: Optional[sqlite3.Connection] = None
    ) -> Relationship:
        with self._session(conn) as session:
            session.execute(
                """UPDATE relationships
                   SET from_entity_id = ?, to_entity_id = ?, confidence = ?,
                       strength = ?, attributes_json = ?, sources_json = ?,
                       first_seen = ?, last_seen = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    relationship.from_entity_id,
                    relationship.to_entity_id,
                    relationship.confidence,
                    relationship.strength,
                    _serialize(relationship.attributes),
                    _sources_json(relationship.sources),
                    _ts(relationship.first_seen),
                    _ts(relationship.last_seen),
                    _ts(relationship.updated_at),
                    relationship.id,
                ),
            )
        return relationship

    def get_relationship(
        self, relationship_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Relationship]:
        with self._session(conn) as session:
            row = session.execute(
                "SELECT * FROM relationships WHERE id = ?", (relationship_id,)
            ).fetchone()
        return _row_to_relationship(row) if row else None

    def find_relationship(
        self,
        from_entity_id: str,
        to_entity_id: str,
        relationship_type: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Relationship]:
        with self._session(conn) as session:
            row = session.execute(
                """SELECT * FROM relationships
                   WHERE from_entity_id = ? AND to_entity_id = ? AND type = ?""",
                (from_entity_id, to_entity_id, relationship_type),
            ).fetchone()
        return _row_to_relationship(row) if row else None

    def list_relationships(self, conn: Optional[sqlite3.Connection] = None) -> list[Relationship]:
        with self._session(conn) as session:
            rows = session.execute("SELECT * FROM relationships ORDER BY rowid").fetchall()
        return [_row_to_relationship(row) for row in rows]

    def relationships_for_entity(
        self, entity_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> list[Relationship]:
        """Relationships touching an entity in either direction, storage order."""
        with self._session(conn) as session:
            rows = session.execute(
                """SELECT * FROM relationships
                   WHERE from_entity_id = ? OR to_entity_id = ?
                   ORDER BY rowid""",
                (entity_id, entity_id),
            ).fetchall()
        return [_row_to_relationship(row) for row in rows]

    def delete_relationship(
        self, relationship_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> None:
        with self._session(conn) as session:
            session.execute("DELETE FROM relationships WHERE id = ?", (relationship_id,))

    # ------------------------------------------------------------------
    # Counts

    def count_by_type(self, table: str) -> dict[str, int]:
        """Row counts grouped by type for ``entities`` or ``relationships``."""
        if table not in ("entities", "relationships"):
            raise ValueError(f"Unknown table: {table}")
        with self._session(None) as conn:
            rows = conn.execute(
                f"SELECT type, COUNT(*) FROM {table} GROUP BY type ORDER BY COUNT(*) DESC, type"
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    # ------------------------------------------------------------------
    # Patterns

    def replace_patterns(self, patterns: list[Pattern]) -> None:
        """Replace the stored pattern set with a fresh detection pass."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM patterns")
            for pattern in patterns:
                conn.execute(
                    """INSERT OR REPLACE INTO patterns
                       (id, kind, name, description, confidence, significance,
                        related_entities_json, related_relationships_json,
                        temporal_json, detected_at, metadata_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        pattern.id,
                        pattern.kind,
                        pattern.name,
                        pattern.description,
                        pattern.confidence,
                        pattern.significance,
                        _serialize(pattern.related_entity_ids),
                        _serialize(pattern.related_relationship_ids),
                        _serialize(pattern.temporal.to_dict()) if pattern.temporal else None,
                        _ts(pattern.detected_at),
                        _serialize(pattern.metadata),
                    ),
                )

    def list_patterns(self) -> list[Pattern]:
        with self._session(None) as conn:
            rows = conn.execute("SELECT * FROM patterns ORDER BY rowid").fetchall()
        return [_row_to_pattern(row) for row in rows]

    # ------------------------------------------------------------------
    # Snapshots

    def export_snapshot(self) -> dict[str, Any]:
        """Export the entire graph to a JSON-serializable dict.

        Returns:
            Dict with 'version', 'exported_at', 'entities' and 'relationships'
        """
        with self.transaction() as conn:
            entities = self.list_entities(conn=conn)
            relationships = self.list_relationships(conn=conn)
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": _ts(_now_utc()),
            "entities": [entity.to_dict() for entity in entities],
            "relationships": [rel.to_dict() for rel in relationships],
        }

    def import_snapshot(self, snapshot: dict[str, Any], merge: bool = False) -> dict[str, int]:
        """Import a graph snapshot.

        Args:
            snapshot: Dict with 'entities' and 'relationships' lists
            merge: If True, keep existing data and skip entities that already
                exist (by id or by type + normalized name). If False, clear first.

        Returns:
            Counts of imported and skipped rows
        """
        imported_entities = 0
        imported_relationships = 0
        skipped = 0
        with self.transaction() as conn:
            if not merge:
                conn.execute("DELETE FROM relationships")
                conn.execute("DELETE FROM entities")

            id_map: dict[str, str] = {}
            for data in snapshot.get("entities", []):
                entity = Entity.from_dict(data)
                existing = self.get_entity(entity.id, conn=conn) or self.find_entity_by_normalized_name(
                    entity.type, entity.normalized_name, conn=conn
                )
                if existing:
                    id_map[entity.id] = existing.id
                    skipped += 1
                    continue
                self.insert_entity(entity, conn=conn)
                id_map[entity.id] = entity.id
                imported_entities += 1

            for data in snapshot.get("relationships", []):
                rel = Relationship.from_dict(data)
                rel.from_entity_id = id_map.get(rel.from_entity_id, "")
                rel.to_entity_id = id_map.get(rel.to_entity_id, "")
                if not rel.from_entity_id or not rel.to_entity_id:
                    logger.warning(f"Skipping relationship {rel.id}: endpoint missing from snapshot")
                    skipped += 1
                    continue
                if self.get_relationship(rel.id, conn=conn) or self.find_relationship(
                    *rel.key, conn=conn
                ):
                    skipped += 1
                    continue
                self.insert_relationship(rel, conn=conn)
                imported_relationships += 1

        logger.info(
            f"Imported snapshot: {imported_entities} entities, "
            f"{imported_relationships} relationships, {skipped} skipped"
        )
        return {
            "entities": imported_entities,
            "relationships": imported_relationships,
            "skipped": skipped,
        }
