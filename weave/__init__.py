"""The Weave: a local-first personal knowledge graph.

Raw records from personal data providers (email, calendar, files, music,
budget) are run through an LLM extractor, merged into an entity graph with
deduplication and confidence accounting, and mined for behavioural patterns.

Storage:
- SQLite database in STATE_DIR/weave.sqlite (WEAVE_DB_PATH overrides)
- Auto-creates database and tables on first use
- Supports export/import to JSON for portability

Usage:
    >>> from weave import WeaveConfig, WeaveCoordinator
    >>>
    >>> weave = WeaveCoordinator.from_config(WeaveConfig.from_env())
    >>> weave.ingest("google", "email", "msg-1", {"from": "Alice <alice@example.com>"})
    >>> report = await weave.build()
    >>> print(weave.generate_overview())
"""

from .config import WeaveConfig
from .coordinator import BuildReport, BuildState, WeaveCoordinator
from .errors import (
    ConfigurationError,
    EntityNotFoundError,
    ExtractionUnavailableError,
    ParseFailure,
    TransportFailure,
    UnresolvedEndpointError,
    WeaveError,
)
from .extract import EntityExtractor
from .graph import GraphManager, ProcessStats
from .patterns import PatternDetector
from .schema import (
    CandidateEntity,
    CandidateRelationship,
    Entity,
    ExtractionResult,
    Pattern,
    ProvenancePointer,
    RawRecord,
    Relationship,
    TemporalInfo,
)
from .store import WeaveStore

__all__ = [
    "WeaveConfig",
    "WeaveCoordinator",
    "BuildReport",
    "BuildState",
    "WeaveStore",
    "GraphManager",
    "ProcessStats",
    "EntityExtractor",
    "PatternDetector",
    "RawRecord",
    "Entity",
    "Relationship",
    "ProvenancePointer",
    "Pattern",
    "TemporalInfo",
    "CandidateEntity",
    "CandidateRelationship",
    "ExtractionResult",
    "WeaveError",
    "ConfigurationError",
    "ExtractionUnavailableError",
    "TransportFailure",
    "ParseFailure",
    "EntityNotFoundError",
    "UnresolvedEndpointError",
]
