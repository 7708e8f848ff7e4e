"""Weave data model and types.

Graph records (entities, relationships, provenance, patterns) are plain
dataclasses owned by the store. Extraction candidates coming back from the
LLM are pydantic models so that untrusted JSON is validated on the way in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

ENTITY_TYPES: tuple[str, ...] = (
    "person",
    "organization",
    "place",
    "event",
    "project",
    "theme",
    "value",
    "goal",
    "skill",
    "role",
    "habit",
    "interest",
    "product",
    "book",
    "music",
)

RELATIONSHIP_TYPES: tuple[str, ...] = (
    # Interpersonal
    "KNOWS",
    "FAMILY_OF",
    "FRIEND_OF",
    "WORKS_WITH",
    "REPORTS_TO",
    "MENTORS",
    # Temporal
    "DURING",
    "PRECEDED_BY",
    "FOLLOWED_BY",
    "RECURRING_DURING",
    # Affective
    "FEELS_TOWARD",
    "VALUES",
    "INTERESTED_IN",
    "DISLIKES",
    "ASPIRES_TO",
    # Causal
    "CAUSED_BY",
    "LED_TO",
    "ENABLED",
    "BLOCKED",
    # Activity
    "ATTENDED",
    "CREATED",
    "PARTICIPATED_IN",
    "OWNS",
    "USES",
    "READS",
    "LISTENS_TO",
    # Organizational
    "MEMBER_OF",
    "WORKS_AT",
    "PART_OF",
    "LOCATED_AT",
)

PatternKind = Literal["routine", "trend", "cycle", "anomaly", "cluster"]
Frequency = Literal["once", "daily", "weekly", "monthly", "yearly"]

DEFAULT_CONFIDENCE = 0.5


def _now_utc() -> datetime:
    """Current UTC timestamp with timezone."""
    return datetime.now(timezone.utc)


def _normalize_name(name: str) -> str:
    """Normalize entity name for consistent lookups (lowercase, trimmed)."""
    return name.strip().lower()


def _clamp_confidence(value: Any) -> float:
    """Clamp a confidence-like value into [0, 1]; missing or junk becomes 0.5."""
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if number != number:  # NaN
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, number))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string, epoch milliseconds or datetime into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as err:
        raise ValueError(f"Invalid timestamp: {value}") from err
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class ProvenancePointer:
    """Which raw record, from which provider, contributed an observation."""

    data_source: str
    data_kind: str
    data_id: str
    extracted_at: datetime = field(default_factory=_now_utc)
    context: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Dedup key: one raw record counts once per node."""
        return (self.data_source, self.data_kind, self.data_id)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "data_source": self.data_source,
            "data_kind": self.data_kind,
            "data_id": self.data_id,
            "extracted_at": _iso(self.extracted_at),
        }
        if self.context:
            data["context"] = self.context
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProvenancePointer":
        return cls(
            data_source=str(data.get("data_source", "")),
            data_kind=str(data.get("data_kind", "")),
            data_id=str(data.get("data_id", "")),
            extracted_at=parse_timestamp(data.get("extracted_at")) or _now_utc(),
            context=data.get("context"),
        )


def merge_sources(
    existing: list[ProvenancePointer], incoming: list[ProvenancePointer]
) -> tuple[list[ProvenancePointer], int]:
    """Append incoming pointers not already present on the dedup key.

    Returns the merged list and how many pointers were actually added.
    """
    merged = list(existing)
    seen = {pointer.key for pointer in merged}
    added = 0
    for pointer in incoming:
        if pointer.key in seen:
            continue
        merged.append(pointer)
        seen.add(pointer.key)
        added += 1
    return merged, added


def merge_aliases(name: str, aliases: list[str], extra: list[str]) -> list[str]:
    """Union aliases case-insensitively, never repeating the canonical name."""
    result: list[str] = []
    seen = {_normalize_name(name)}
    for alias in [*aliases, *extra]:
        text = str(alias).strip()
        normalized = _normalize_name(text)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        result.append(text)
    return result


@dataclass
class RawRecord:
    """An ingested item from an upstream provider."""

    source: str
    record_kind: str
    external_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    observed_at: Optional[datetime] = None
    last_updated: datetime = field(default_factory=_now_utc)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source, self.record_kind, self.external_id)

    def provenance(self, context: Optional[str] = None) -> ProvenancePointer:
        """Provenance pointer for observations extracted from this record."""
        return ProvenancePointer(
            data_source=self.source,
            data_kind=self.record_kind,
            data_id=self.external_id,
            context=context,
        )


@dataclass
class Entity:
    """A node in the graph (person, organization, place, theme, ...)."""

    id: str = field(default_factory=lambda: str(uuid4()))
    type: str = ""
    name: str = ""
    normalized_name: str = field(init=False)
    aliases: list[str] = field(default_factory=list)
    confidence: float = DEFAULT_CONFIDENCE
    attributes: dict[str, Any] = field(default_factory=dict)
    sources: list[ProvenancePointer] = field(default_factory=list)
    occurrence_count: int = 1
    first_seen: datetime = field(default_factory=_now_utc)
    last_seen: datetime = field(default_factory=_now_utc)
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    def __post_init__(self) -> None:
        """Set normalized name after initialization."""
        self.normalized_name = _normalize_name(self.name)

    def matches(self, normalized: str) -> bool:
        """Whether a normalized name refers to this entity (name or alias)."""
        if self.normalized_name == normalized:
            return True
        return any(_normalize_name(alias) == normalized for alias in self.aliases)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "aliases": list(self.aliases),
            "confidence": self.confidence,
            "attributes": dict(self.attributes),
            "sources": [source.to_dict() for source in self.sources],
            "occurrence_count": self.occurrence_count,
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entity":
        now = _now_utc()
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            name=str(data["name"]),
            aliases=[str(alias) for alias in data.get("aliases", [])],
            confidence=_clamp_confidence(data.get("confidence")),
            attributes=dict(data.get("attributes", {})),
            sources=[ProvenancePointer.from_dict(s) for s in data.get("sources", [])],
            occurrence_count=int(data.get("occurrence_count", 1)),
            first_seen=parse_timestamp(data.get("first_seen")) or now,
            last_seen=parse_timestamp(data.get("last_seen")) or now,
            created_at=parse_timestamp(data.get("created_at")) or now,
            updated_at=parse_timestamp(data.get("updated_at")) or now,
        )


@dataclass
class Relationship:
    """A directed, typed edge between two entities."""

    id: str = field(default_factory=lambda: str(uuid4()))
    from_entity_id: str = ""
    to_entity_id: str = ""
    type: str = ""
    confidence: float = DEFAULT_CONFIDENCE
    strength: Optional[float] = None  # 0-1 importance weight
    attributes: dict[str, Any] = field(default_factory=dict)
    sources: list[ProvenancePointer] = field(default_factory=list)
    first_seen: datetime = field(default_factory=_now_utc)
    last_seen: datetime = field(default_factory=_now_utc)
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    def __post_init__(self) -> None:
        """Validate relationship fields."""
        if self.strength is not None and not (0.0 <= self.strength <= 1.0):
            raise ValueError(f"Relationship strength must be 0.0-1.0, got {self.strength}")

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_entity_id, self.to_entity_id, self.type)

    def other_end(self, entity_id: str) -> str:
        """The endpoint opposite to ``entity_id``."""
        return self.to_entity_id if self.from_entity_id == entity_id else self.from_entity_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from_entity_id": self.from_entity_id,
            "to_entity_id": self.to_entity_id,
            "type": self.type,
            "confidence": self.confidence,
            "strength": self.strength,
            "attributes": dict(self.attributes),
            "sources": [source.to_dict() for source in self.sources],
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Relationship":
        now = _now_utc()
        strength = data.get("strength")
        return cls(
            id=str(data["id"]),
            from_entity_id=str(data["from_entity_id"]),
            to_entity_id=str(data["to_entity_id"]),
            type=str(data["type"]),
            confidence=_clamp_confidence(data.get("confidence")),
            strength=float(strength) if strength is not None else None,
            attributes=dict(data.get("attributes", {})),
            sources=[ProvenancePointer.from_dict(s) for s in data.get("sources", [])],
            first_seen=parse_timestamp(data.get("first_seen")) or now,
            last_seen=parse_timestamp(data.get("last_seen")) or now,
            created_at=parse_timestamp(data.get("created_at")) or now,
            updated_at=parse_timestamp(data.get("updated_at")) or now,
        )


@dataclass
class TemporalInfo:
    """Cadence and date range of a temporal pattern."""

    frequency: Optional[Frequency] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TemporalInfo":
        return cls(
            frequency=data.get("frequency"),
            start_date=parse_timestamp(data.get("start_date")),
            end_date=parse_timestamp(data.get("end_date")),
        )


@dataclass
class Pattern:
    """A derived, non-authoritative summary of the graph and raw records."""

    id: str
    kind: PatternKind
    name: str
    description: str
    confidence: float
    significance: float
    related_entity_ids: list[str] = field(default_factory=list)
    related_relationship_ids: list[str] = field(default_factory=list)
    temporal: Optional[TemporalInfo] = None
    detected_at: datetime = field(default_factory=_now_utc)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "description": self.description,
            "confidence": self.confidence,
            "significance": self.significance,
            "related_entity_ids": list(self.related_entity_ids),
            "related_relationship_ids": list(self.related_relationship_ids),
            "temporal": self.temporal.to_dict() if self.temporal else None,
            "detected_at": _iso(self.detected_at),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Pattern":
        temporal = data.get("temporal")
        return cls(
            id=str(data["id"]),
            kind=data["kind"],
            name=str(data["name"]),
            description=str(data.get("description", "")),
            confidence=float(data.get("confidence", 0.0)),
            significance=float(data.get("significance", 0.0)),
            related_entity_ids=list(data.get("related_entity_ids", [])),
            related_relationship_ids=list(data.get("related_relationship_ids", [])),
            temporal=TemporalInfo.from_dict(temporal) if temporal else None,
            detected_at=parse_timestamp(data.get("detected_at")) or _now_utc(),
            metadata=dict(data.get("metadata", {})),
        )


class CandidateEntity(BaseModel):
    """An entity proposed by the extraction service, not yet resolved to an id."""

    model_config = ConfigDict(extra="ignore")

    type: str
    name: str = Field(min_length=1)
    aliases: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)
    confidence: float = DEFAULT_CONFIDENCE

    @field_validator("type", mode="before")
    @classmethod
    def _validate_type(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        if normalized not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {value!r}")
        return normalized

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("aliases", mode="before")
    @classmethod
    def _clean_aliases(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        if not value or not isinstance(value, (list, tuple)):
            return []
        return [str(alias).strip() for alias in value if str(alias).strip()]

    @field_validator("attributes", mode="before")
    @classmethod
    def _default_attributes(cls, value: Any) -> dict[str, Any]:
        return dict(value) if isinstance(value, dict) else {}

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_confidence(value)


class CandidateRelationship(BaseModel):
    """A relationship proposed by the extraction service, endpoints by name."""

    model_config = ConfigDict(extra="ignore")

    from_name: str = Field(
        min_length=1, validation_alias=AliasChoices("from_name", "fromName", "from")
    )
    to_name: str = Field(
        min_length=1, validation_alias=AliasChoices("to_name", "toName", "to")
    )
    type: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    confidence: float = DEFAULT_CONFIDENCE

    @field_validator("from_name", "to_name", mode="before")
    @classmethod
    def _strip_names(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("type", mode="before")
    @classmethod
    def _validate_type(cls, value: Any) -> str:
        normalized = str(value or "").strip().upper().replace(" ", "_").replace("-", "_")
        if normalized not in RELATIONSHIP_TYPES:
            raise ValueError(f"Unknown relationship type: {value!r}")
        return normalized

    @field_validator("attributes", mode="before")
    @classmethod
    def _default_attributes(cls, value: Any) -> dict[str, Any]:
        return dict(value) if isinstance(value, dict) else {}

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_confidence(value)


class ExtractionResult(BaseModel):
    """Entities and relationships extracted from one raw record.

    ``error`` is set when the result is empty because the service call or
    response parsing failed; callers count it, never raise on it.
    """

    entities: list[CandidateEntity] = Field(default_factory=list)
    relationships: list[CandidateRelationship] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.relationships

    @classmethod
    def empty(cls, error: Optional[str] = None) -> "ExtractionResult":
        return cls(entities=[], relationships=[], error=error)
