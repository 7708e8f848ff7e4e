"""LLM-based entity and relationship extraction from raw records.

Turns one raw record into a prompt, sends it to a text-understanding client
and parses the reply into an ExtractionResult. Holds no graph state.

Design:
- One source-specific description per record kind, generic JSON otherwise
- Tolerant parsing: first balanced {...} span, candidates validated one by one
- Never fail: transport and parse errors are logged with the raw response
  and come back as an empty result with ``error`` set
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .errors import ParseFailure, TransportFailure
from .payloads import (
    EventPayload,
    FilePayload,
    MessagePayload,
    TrackPayload,
    TransactionPayload,
    parse_payload,
)
from .schema import (
    ENTITY_TYPES,
    RELATIONSHIP_TYPES,
    CandidateEntity,
    CandidateRelationship,
    ExtractionResult,
    RawRecord,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

EXTRACTION_PROMPT = """You are extracting structured information from personal data to build a knowledge graph about someone's life.

{user_line}

Extract entities and relationships from the following data:

{description}

Extract:
1. Entities: people, organizations, places, events, projects, themes, values, goals, interests, etc.
2. Relationships: how entities relate to each other

Return ONLY a JSON object with this structure:
{{
  "entities": [
    {{
      "type": "{entity_types}",
      "name": "Entity name",
      "aliases": ["Optional alternate names"],
      "attributes": {{"key": "value"}},
      "confidence": 0.0-1.0
    }}
  ],
  "relationships": [
    {{
      "from": "Entity name 1",
      "to": "Entity name 2",
      "type": "RELATIONSHIP_TYPE",
      "attributes": {{"key": "value"}},
      "confidence": 0.0-1.0
    }}
  ]
}}

Allowed relationship types: {relationship_types}

Important:
- Use HIGH confidence (0.8-1.0) for explicitly stated facts
- Use MEDIUM confidence (0.5-0.7) for reasonable inferences
- Use LOW confidence (0.3-0.4) for uncertain guesses
- Only extract meaningful, non-trivial entities
- Relationship endpoints must be names of entities listed in "entities"

Return ONLY the JSON object, no explanation."""


def _or(value: Any, default: str) -> str:
    return str(value) if value not in (None, "") else default


def describe_record(record: RawRecord) -> str:
    """Human-readable description of a record's fields for the prompt."""
    payload = parse_payload(record.record_kind, record.payload)
    kind = record.record_kind.strip().lower()

    if isinstance(payload, MessagePayload):
        return (
            "Email:\n"
            f"From: {_or(payload.sender, 'Unknown')}\n"
            f"To: {_or(payload.recipients, 'Unknown')}\n"
            f"Subject: {_or(payload.subject, 'None')}\n"
            f"Date: {_or(payload.date, 'Unknown')}\n"
            f"Snippet: {_or(payload.snippet, 'None')}"
        )

    if isinstance(payload, EventPayload):
        attendees = ", ".join(a.label for a in payload.attendees) or "None"
        organizer = payload.organizer.label if payload.organizer else "Unknown"
        return (
            "Calendar Event:\n"
            f"Summary: {_or(payload.summary, 'Untitled')}\n"
            f"Description: {_or(payload.description, 'None')}\n"
            f"Start: {_or(payload.start, 'Unknown')}\n"
            f"End: {_or(payload.end, 'Unknown')}\n"
            f"Attendees: {attendees}\n"
            f"Organizer: {organizer}"
        )

    if isinstance(payload, FilePayload):
        owners = ", ".join(o.label for o in payload.owners) or "Unknown"
        return (
            "File:\n"
            f"Name: {_or(payload.name, 'Untitled')}\n"
            f"Type: {_or(payload.mime_type, 'Unknown')}\n"
            f"Modified: {_or(payload.modified_time, 'Unknown')}\n"
            f"Owners: {owners}"
        )

    if isinstance(payload, TrackPayload):
        lines = [
            f"Track: {_or(payload.track_name, 'Unknown')}",
            f"Artists: {', '.join(payload.artists) or 'Unknown'}",
            f"Album: {_or(payload.album, 'Unknown')}",
        ]
        if kind == "top_track":
            header = f"Top Track ({_or(payload.time_range, 'unknown range')}):"
        elif kind == "saved_track":
            header = "Saved Track:"
            lines.append(f"Added: {_or(payload.added_at, 'Unknown')}")
        else:
            header = "Recently Played Track:"
            context_type = (payload.context or {}).get("type")
            lines.append(f"Played At: {_or(payload.played_at, 'Unknown')}")
            lines.append(f"Context: {_or(context_type, 'Unknown')}")
        return "\n".join([header, *lines])

    if isinstance(payload, TransactionPayload):
        return (
            "Budget Transaction:\n"
            f"Date: {_or(payload.date, 'Unknown')}\n"
            f"Amount: ${payload.amount:.2f}\n"
            f"Payee: {_or(payload.payee_name, 'Unknown')}\n"
            f"Category: {_or(payload.category_name, 'Uncategorized')}\n"
            f"Account: {_or(payload.account_name, 'Unknown')}\n"
            f"Memo: {_or(payload.memo, 'None')}"
        )

    return (
        f"{record.source} {record.record_kind}:\n"
        f"{json.dumps(record.payload, sort_keys=True, default=str)}"
    )


def build_prompt(record: RawRecord, user_name: Optional[str] = None) -> str:
    """Full extraction prompt for one record."""
    return EXTRACTION_PROMPT.format(
        user_line=f"User's name: {user_name}" if user_name else "User name unknown",
        description=describe_record(record),
        entity_types="|".join(ENTITY_TYPES),
        relationship_types=", ".join(RELATIONSHIP_TYPES),
    )


def find_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} span in text, ignoring braces in strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def parse_response(raw_output: str) -> ExtractionResult:
    """Parse an LLM reply into validated candidates.

    Invalid individual candidates (blank name, unknown type) are dropped;
    only a reply with no usable JSON object at all is a failure.

    Raises:
        ParseFailure: no balanced JSON object, or it does not decode to a dict
    """
    span = find_json_object(raw_output or "")
    if span is None:
        raise ParseFailure("No JSON object found in response")
    try:
        data = json.loads(span)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Invalid JSON in response: {e}") from e
    if not isinstance(data, dict):
        raise ParseFailure("Response JSON is not an object")

    raw_entities = data.get("entities")
    raw_relationships = data.get("relationships")
    if not isinstance(raw_entities, list):
        raw_entities = []
    if not isinstance(raw_relationships, list):
        raw_relationships = []

    entities = []
    for item in raw_entities:
        if not isinstance(item, dict):
            continue
        try:
            entities.append(CandidateEntity.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Dropping entity candidate {item!r}: {e.error_count()} errors")

    relationships = []
    for item in raw_relationships:
        if not isinstance(item, dict):
            continue
        try:
            relationships.append(CandidateRelationship.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Dropping relationship candidate {item!r}: {e.error_count()} errors")

    logger.debug(f"Validated {len(entities)} entities, {len(relationships)} relationships")
    return ExtractionResult(entities=entities, relationships=relationships)


class EntityExtractor:
    """Extraction adapter around a text-understanding client.

    ``client`` is anything with ``async extract_structured(prompt) -> str``.
    """

    def __init__(
        self,
        client: Any,
        user_name: Optional[str] = None,
        inter_call_delay: float = 0.5,
    ):
        self.client = client
        self.user_name = user_name
        self.inter_call_delay = inter_call_delay

    async def extract(
        self, record: RawRecord, context: Optional[dict[str, Any]] = None
    ) -> ExtractionResult:
        """Extract candidates from one record. Never raises."""
        user_name = (context or {}).get("user_name") or self.user_name
        raw_output = ""
        try:
            prompt = build_prompt(record, user_name)
            raw_output = await self.client.extract_structured(prompt)
            result = parse_response(raw_output)
        except TransportFailure as e:
            logger.warning(f"Extraction transport failure for {record.key}: {e}")
            return ExtractionResult.empty(error=f"transport: {e}")
        except ParseFailure as e:
            logger.warning(
                f"Extraction parse failure for {record.key}: {e}; raw response: {raw_output!r}"
            )
            return ExtractionResult.empty(error=f"parse: {e}")
        except Exception as e:
            # Never fail - log and return empty
            logger.exception(f"Extraction failed for {record.key}; raw response: {raw_output!r}")
            return ExtractionResult.empty(error=f"unexpected: {e}")

        logger.debug(
            f"Extracted {len(result.entities)} entities, "
            f"{len(result.relationships)} relationships from {record.key}"
        )
        return result

    async def extract_batch(
        self,
        records: list[RawRecord],
        on_progress: Optional[ProgressCallback] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> list[ExtractionResult]:
        """Extract each record in order, pausing between external calls.

        Returns one result per input record, same order.
        """
        results: list[ExtractionResult] = []
        total = len(records)
        for index, record in enumerate(records):
            if index and self.inter_call_delay > 0:
                await asyncio.sleep(self.inter_call_delay)
            results.append(await self.extract(record, context))
            if on_progress:
                on_progress(index + 1, total)
        return results
