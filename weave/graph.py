"""Graph manager: entity identity, merging, traversal and statistics.

Sole mutator of entities and relationships. Every write goes through a
process-wide single-writer lock and an immediate SQLite transaction, so two
callers can never both miss an existing (type, name) and create duplicates.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Optional

from .errors import EntityNotFoundError, UnresolvedEndpointError
from .schema import (
    DEFAULT_CONFIDENCE,
    ENTITY_TYPES,
    RELATIONSHIP_TYPES,
    Entity,
    ExtractionResult,
    ProvenancePointer,
    Relationship,
    _clamp_confidence,
    _normalize_name,
    _now_utc,
    merge_aliases,
    merge_sources,
)
from .store import WeaveStore

logger = logging.getLogger(__name__)


@dataclass
class ProcessStats:
    """Counts from merging extraction results into the graph."""

    entities_added: int = 0
    relationships_added: int = 0
    relationships_dropped: int = 0
    entities_failed: int = 0

    def add(self, other: "ProcessStats") -> None:
        self.entities_added += other.entities_added
        self.relationships_added += other.relationships_added
        self.relationships_dropped += other.relationships_dropped
        self.entities_failed += other.entities_failed


class GraphManager:
    """Entity/relationship operations over a WeaveStore."""

    def __init__(self, store: WeaveStore):
        self.store = store
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Upserts

    def _find_entity(
        self, entity_type: str, normalized: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Entity]:
        entity = self.store.find_entity_by_normalized_name(entity_type, normalized, conn=conn)
        if entity:
            return entity
        for candidate in self.store.list_entities(entity_type, conn=conn):
            if candidate.matches(normalized):
                return candidate
        return None

    def upsert_entity(
        self,
        entity_type: str,
        name: str,
        attributes: Optional[dict[str, Any]],
        provenance: ProvenancePointer,
        confidence: float = DEFAULT_CONFIDENCE,
        aliases: Optional[list[str]] = None,
    ) -> str:
        """Merge an observation into an existing entity or create a new one.

        An existing entity matches when it has the same type and its
        normalized name or any normalized alias equals the normalized input.

        Args:
            entity_type: One of ENTITY_TYPES
            name: Display name as observed
            attributes: New attribute values (override existing keys)
            provenance: Raw record this observation came from
            confidence: Extraction confidence, clamped to [0, 1]
            aliases: Extra aliases to union into the entity

        Returns:
            Entity id (existing or new)

        Raises:
            ValueError: blank name or unknown entity type
        """
        entity_type = (entity_type or "").strip().lower()
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type!r}")
        name = (name or "").strip()
        if not name:
            raise ValueError("Entity name must not be blank")

        normalized = _normalize_name(name)
        confidence = _clamp_confidence(confidence)
        now = _now_utc()

        with self._lock, self.store.transaction() as conn:
            existing = self._find_entity(entity_type, normalized, conn=conn)
            if existing:
                existing.attributes = {**existing.attributes, **(attributes or {})}
                existing.sources, added = merge_sources(existing.sources, [provenance])
                existing.occurrence_count += added
                existing.confidence = max(existing.confidence, confidence)
                existing.aliases = merge_aliases(existing.name, existing.aliases, aliases or [])
                existing.last_seen = max(existing.last_seen, now)
                existing.updated_at = now
                self.store.update_entity(existing, conn=conn)
                return existing.id

            entity = Entity(
                type=entity_type,
                name=name,
                aliases=merge_aliases(name, [], aliases or []),
                confidence=confidence,
                attributes=dict(attributes or {}),
                sources=[provenance],
                occurrence_count=1,
                first_seen=now,
                last_seen=now,
                created_at=now,
                updated_at=now,
            )
            self.store.insert_entity(entity, conn=conn)
            logger.debug(f"Created {entity_type} entity {name!r} ({entity.id})")
            return entity.id

    def upsert_relationship(
        self,
        from_id: str,
        to_id: str,
        relationship_type: str,
        attributes: Optional[dict[str, Any]],
        provenance: ProvenancePointer,
        confidence: float = DEFAULT_CONFIDENCE,
        strength: Optional[float] = None,
    ) -> str:
        """Merge-or-create a relationship keyed on (from_id, to_id, type).

        Raises:
            UnresolvedEndpointError: either endpoint id does not exist
            ValueError: unknown relationship type
        """
        if relationship_type not in RELATIONSHIP_TYPES:
            raise ValueError(f"Unknown relationship type: {relationship_type!r}")
        confidence = _clamp_confidence(confidence)
        now = _now_utc()

        with self._lock, self.store.transaction() as conn:
            for endpoint in (from_id, to_id):
                if self.store.get_entity(endpoint, conn=conn) is None:
                    raise UnresolvedEndpointError(endpoint)

            existing = self.store.find_relationship(from_id, to_id, relationship_type, conn=conn)
            if existing:
                existing.attributes = {**existing.attributes, **(attributes or {})}
                existing.sources, _ = merge_sources(existing.sources, [provenance])
                existing.confidence = max(existing.confidence, confidence)
                if strength is not None:
                    existing.strength = max(existing.strength or 0.0, strength)
                existing.last_seen = max(existing.last_seen, now)
                existing.updated_at = now
                self.store.update_relationship(existing, conn=conn)
                return existing.id

            relationship = Relationship(
                from_entity_id=from_id,
                to_entity_id=to_id,
                type=relationship_type,
                confidence=confidence,
                strength=strength,
                attributes=dict(attributes or {}),
                sources=[provenance],
                first_seen=now,
                last_seen=now,
                created_at=now,
                updated_at=now,
            )
            self.store.insert_relationship(relationship, conn=conn)
            return relationship.id

    def process_extraction_result(
        self, result: ExtractionResult, provenance: ProvenancePointer
    ) -> ProcessStats:
        """Merge one extraction result into the graph.

        All entities are upserted first; relationships are then resolved by
        name only against the entities of this same result. Relationships
        naming anything else are dropped and counted.
        """
        stats = ProcessStats()
        name_to_id: dict[str, str] = {}
        touched: set[str] = set()

        for candidate in result.entities:
            try:
                entity_id = self.upsert_entity(
                    candidate.type,
                    candidate.name,
                    candidate.attributes,
                    provenance,
                    candidate.confidence,
                    aliases=candidate.aliases,
                )
            except (ValueError, sqlite3.Error) as e:
                logger.warning(f"Skipping entity {candidate.name!r}: {e}")
                stats.entities_failed += 1
                continue
            touched.add(entity_id)
            name_to_id[_normalize_name(candidate.name)] = entity_id
            for alias in candidate.aliases:
                name_to_id.setdefault(_normalize_name(alias), entity_id)

        stats.entities_added = len(touched)

        added: set[str] = set()
        for candidate in result.relationships:
            from_id = name_to_id.get(_normalize_name(candidate.from_name))
            to_id = name_to_id.get(_normalize_name(candidate.to_name))
            if not from_id or not to_id:
                logger.debug(
                    f"Dropping {candidate.type} {candidate.from_name!r} -> "
                    f"{candidate.to_name!r}: endpoint not in this extraction"
                )
                stats.relationships_dropped += 1
                continue
            try:
                added.add(
                    self.upsert_relationship(
                        from_id,
                        to_id,
                        candidate.type,
                        candidate.attributes,
                        provenance,
                        candidate.confidence,
                    )
                )
            except (EntityNotFoundError, ValueError, sqlite3.Error) as e:
                logger.warning(f"Dropping relationship {candidate.type}: {e}")
                stats.relationships_dropped += 1

        stats.relationships_added = len(added)
        return stats

    # ------------------------------------------------------------------
    # Readers

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self.store.get_entity(entity_id)

    def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        return self.store.get_relationship(relationship_id)

    def find_entity_by_name(self, entity_type: str, name: str) -> Optional[Entity]:
        """Exact (normalized) lookup by name or alias within one type."""
        return self._find_entity(entity_type.strip().lower(), _normalize_name(name))

    def get_entities_by_type(self, entity_type: str) -> list[Entity]:
        return self.store.list_entities(entity_type.strip().lower())

    def get_entity_relationships(self, entity_id: str) -> list[Relationship]:
        return self.store.relationships_for_entity(entity_id)

    def search_entities(self, query: str, limit: int = 10) -> list[Entity]:
        """Case-insensitive substring search over names and aliases.

        Results keep storage order and are truncated at ``limit``.
        """
        needle = _normalize_name(query or "")
        results = []
        for entity in self.store.list_entities():
            if len(results) >= limit:
                break
            haystacks = [entity.name, *entity.aliases]
            if any(needle in haystack.lower() for haystack in haystacks):
                results.append(entity)
        return results

    def get_entity_graph(self, entity_id: str, depth: int = 1) -> dict[str, list[Any]]:
        """Breadth-first neighbourhood of an entity, following both directions.

        Returns:
            {"entities": [...], "relationships": [...]}; empty for unknown ids
        """
        start = self.store.get_entity(entity_id)
        if start is None:
            return {"entities": [], "relationships": []}

        entities = [start]
        relationships: list[Relationship] = []
        visited = {start.id}
        seen_relationships: set[str] = set()
        frontier = [start.id]
        remaining = depth

        while frontier and remaining > 0:
            next_frontier = []
            for current in frontier:
                for rel in self.store.relationships_for_entity(current):
                    if rel.id in seen_relationships:
                        continue
                    seen_relationships.add(rel.id)
                    relationships.append(rel)
                    neighbour = rel.other_end(current)
                    if neighbour in visited:
                        continue
                    visited.add(neighbour)
                    entity = self.store.get_entity(neighbour)
                    if entity:
                        entities.append(entity)
                        next_frontier.append(neighbour)
            frontier = next_frontier
            remaining -= 1

        return {"entities": entities, "relationships": relationships}

    # ------------------------------------------------------------------
    # Merge

    def merge_entities(self, keep_id: str, merge_id: str) -> Entity:
        """Fold ``merge_id`` into ``keep_id`` in one transaction.

        Relationships of the merged entity are repointed to the survivor;
        a repointed edge that collides with an existing (from, to, type) is
        folded into that edge. The merged entity is deleted last.

        Raises:
            ValueError: keep_id == merge_id
            EntityNotFoundError: either id does not exist
        """
        if keep_id == merge_id:
            raise ValueError("Cannot merge an entity into itself")

        with self._lock, self.store.transaction() as conn:
            keep = self.store.get_entity(keep_id, conn=conn)
            if keep is None:
                raise EntityNotFoundError(keep_id)
            merged = self.store.get_entity(merge_id, conn=conn)
            if merged is None:
                raise EntityNotFoundError(merge_id)

            keep.attributes = {**merged.attributes, **keep.attributes}
            keep.sources, _ = merge_sources(keep.sources, merged.sources)
            keep.aliases = merge_aliases(keep.name, keep.aliases, [*merged.aliases, merged.name])
            keep.occurrence_count += merged.occurrence_count
            keep.confidence = max(keep.confidence, merged.confidence)
            keep.first_seen = min(keep.first_seen, merged.first_seen)
            keep.last_seen = max(keep.last_seen, merged.last_seen)
            keep.updated_at = _now_utc()
            self.store.update_entity(keep, conn=conn)

            for rel in self.store.relationships_for_entity(merge_id, conn=conn):
                if rel.from_entity_id == merge_id:
                    rel.from_entity_id = keep_id
                if rel.to_entity_id == merge_id:
                    rel.to_entity_id = keep_id
                rel.updated_at = keep.updated_at

                collision = self.store.find_relationship(*rel.key, conn=conn)
                if collision and collision.id != rel.id:
                    collision.sources, _ = merge_sources(collision.sources, rel.sources)
                    collision.attributes = {**rel.attributes, **collision.attributes}
                    collision.confidence = max(collision.confidence, rel.confidence)
                    if rel.strength is not None:
                        collision.strength = max(collision.strength or 0.0, rel.strength)
                    collision.first_seen = min(collision.first_seen, rel.first_seen)
                    collision.last_seen = max(collision.last_seen, rel.last_seen)
                    collision.updated_at = keep.updated_at
                    self.store.update_relationship(collision, conn=conn)
                    self.store.delete_relationship(rel.id, conn=conn)
                else:
                    self.store.update_relationship(rel, conn=conn)

            self.store.delete_entity(merge_id, conn=conn)

        logger.info(f"Merged entity {merge_id} into {keep_id}")
        return keep

    # ------------------------------------------------------------------
    # Statistics

    def get_statistics(self, top_n: int = 10) -> dict[str, Any]:
        """Graph totals, per-type counts and the most frequently seen entities."""
        entities = self.store.list_entities()
        entities_by_type = self.store.count_by_type("entities")
        relationships_by_type = self.store.count_by_type("relationships")
        # sorted() is stable, so ties keep insertion order
        top = sorted(entities, key=lambda e: e.occurrence_count, reverse=True)[:top_n]
        return {
            "total_entities": len(entities),
            "total_relationships": sum(relationships_by_type.values()),
            "entities_by_type": entities_by_type,
            "relationships_by_type": relationships_by_type,
            "top_entities": top,
        }
