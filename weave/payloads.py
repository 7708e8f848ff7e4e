"""Provider payload shapes for raw records.

Raw payloads arrive as provider-shaped dicts. Each known record kind gets a
narrow pydantic model with the fields the extractor and pattern detector
read; anything else parses as ``GenericPayload`` so new kinds keep flowing.
Unknown fields are kept (``extra="allow"``) and never rejected.
"""

from __future__ import annotations

from email.utils import getaddresses
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class MessagePayload(_Payload):
    """Email or other person-to-person message."""

    sender: str = Field(default="", validation_alias=AliasChoices("from", "sender"))
    recipients: str = Field(default="", validation_alias=AliasChoices("to", "recipients"))
    subject: str = ""
    date: str = ""
    snippet: str = ""

    @field_validator("sender", "recipients", mode="before")
    @classmethod
    def _join_addresses(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return ", ".join(str(item) for item in value)
        return str(value)

    def correspondents(self) -> list[tuple[str, str]]:
        """(display name, lowercased address) for every sender and recipient."""
        pairs: list[tuple[str, str]] = []
        seen: set[str] = set()
        for name, address in getaddresses([self.sender, self.recipients]):
            address = address.strip().lower()
            if not address or address in seen:
                continue
            seen.add(address)
            pairs.append((name.strip(), address))
        return pairs


class Attendee(_Payload):
    email: Optional[str] = None
    display_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("displayName", "display_name")
    )

    @property
    def label(self) -> str:
        return self.email or self.display_name or "Unknown"


class EventPayload(_Payload):
    """Calendar event."""

    summary: str = ""
    description: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    attendees: list[Attendee] = Field(default_factory=list)
    organizer: Optional[Attendee] = None

    @field_validator("attendees", mode="before")
    @classmethod
    def _default_attendees(cls, value: Any) -> list[Any]:
        return value or []

    @field_validator("start", "end", mode="before")
    @classmethod
    def _flatten_time(cls, value: Any) -> Optional[str]:
        # Google shapes start/end as {"dateTime": ...} or {"date": ...}
        if isinstance(value, dict):
            value = value.get("dateTime") or value.get("date")
        return str(value) if value else None


class Owner(_Payload):
    display_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("displayName", "display_name")
    )
    email_address: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("emailAddress", "email_address")
    )

    @property
    def label(self) -> str:
        return self.display_name or self.email_address or "Unknown"


class FilePayload(_Payload):
    """File metadata (e.g. a drive document)."""

    name: str = ""
    mime_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("mimeType", "mime_type")
    )
    modified_time: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("modifiedTime", "modified_time")
    )
    owners: list[Owner] = Field(default_factory=list)

    @field_validator("owners", mode="before")
    @classmethod
    def _default_owners(cls, value: Any) -> list[Any]:
        return value or []


class TrackPayload(_Payload):
    """Play event, top track or saved track."""

    track_name: str = Field(default="", validation_alias=AliasChoices("trackName", "track_name"))
    artists: list[str] = Field(default_factory=list)
    album: str = ""
    played_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("playedAt", "played_at")
    )
    added_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("addedAt", "added_at")
    )
    time_range: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("timeRange", "time_range")
    )
    context: Optional[dict[str, Any]] = None

    @field_validator("artists", mode="before")
    @classmethod
    def _artist_list(cls, value: Any) -> list[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        names = []
        for artist in value:
            if isinstance(artist, dict):
                artist = artist.get("name", "")
            if str(artist).strip():
                names.append(str(artist).strip())
        return names


class TransactionPayload(_Payload):
    """Budget transaction."""

    date: str = ""
    amount: float = 0.0
    payee_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("payeeName", "payee_name", "payee")
    )
    category_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("categoryName", "category_name", "category")
    )
    account_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("accountName", "account_name", "account")
    )
    memo: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0


class GenericPayload(_Payload):
    """Fallback for record kinds without a dedicated shape."""
    pass


Payload = Union[
    MessagePayload,
    EventPayload,
    FilePayload,
    TrackPayload,
    TransactionPayload,
    GenericPayload,
]

# Record kind families. Provider-specific names and generic names share a family.
MESSAGE_KINDS = frozenset({"email", "message"})
EVENT_KINDS = frozenset({"calendar_event", "event"})
FILE_KINDS = frozenset({"drive_file", "file"})
PLAY_KINDS = frozenset({"recently_played", "play", "top_track", "saved_track"})
TRANSACTION_KINDS = frozenset({"transaction"})

_MODELS: dict[frozenset[str], type[_Payload]] = {
    MESSAGE_KINDS: MessagePayload,
    EVENT_KINDS: EventPayload,
    FILE_KINDS: FilePayload,
    PLAY_KINDS: TrackPayload,
    TRANSACTION_KINDS: TransactionPayload,
}


def payload_model_for(record_kind: str) -> type[_Payload]:
    """Payload model class for a record kind (generic fallback)."""
    kind = record_kind.strip().lower()
    for kinds, model in _MODELS.items():
        if kind in kinds:
            return model
    return GenericPayload


def parse_payload(record_kind: str, payload: dict[str, Any]) -> Payload:
    """Parse a raw payload into its typed variant.

    Falls back to ``GenericPayload`` when the payload does not fit the
    kind's shape, so one malformed record never blocks a pipeline.
    """
    model = payload_model_for(record_kind)
    try:
        return model.model_validate(payload or {})
    except ValueError:
        return GenericPayload.model_validate(payload or {})
