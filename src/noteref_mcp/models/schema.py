"""Data models for the NoteRef MCP server."""

import datetime
import os
import re
import threading
from datetime import timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Note IDs are opaque tokens: letters, digits, '-', '_' and '.'
NOTE_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-_.]+$")


def validate_note_id(value: str, field_name: str = "Note ID") -> str:
    """Validate that a value is a well-formed note ID.

    Rejects empty values, path traversal (``..``) and any characters
    outside the opaque token alphabet.

    Raises:
        ValueError: If the value is not a valid note ID
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if ".." in value:
        raise ValueError(f"{field_name} cannot contain '..'")
    if not NOTE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only letters, digits, '-', '_' and '.' are allowed."
        )
    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on round-trip, so values read back from the
    database are naive and assumed to be UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based note ID with guaranteed uniqueness.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc" (date, ``T``,
        time, 6-digit microseconds, 6-digit counter).
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{now.microsecond:06d}{_counter:06d}"


class Note(BaseModel):
    """A personal note as seen by the reference engine."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    owner_id: str = Field(..., description="User that owns the note")
    content: str = Field(default="", description="Raw note content")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_note_id(v)

    @field_validator("owner_id")
    @classmethod
    def validate_owner(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Owner ID cannot be empty")
        return v


class ReferenceShape(str, Enum):
    """Textual shapes the link parser recognises, in priority order."""

    PREFIXED_LINK = "prefixed_link"  # prefix> [text](url)
    MARKDOWN_LINK = "markdown_link"  # [text](url)
    BARE_URL = "bare_url"  # url


class ParsedReference(BaseModel):
    """A candidate reference found in note content."""

    target_note_id: str
    label: str
    start: int = Field(..., ge=0, description="Offset of the matched span")
    end: int = Field(..., ge=0, description="Offset just past the matched span")
    shape: ReferenceShape

    model_config = {"frozen": True}


class ReferenceEdge(BaseModel):
    """A directed reference from one note to another."""

    id: Optional[int] = Field(default=None, description="Row ID once persisted")
    from_note_id: str = Field(..., description="ID of the referencing note")
    to_note_id: str = Field(..., description="ID of the referenced note")
    label: str = Field(..., description="Link text the reference was written with")
    owner_id: str = Field(..., description="Owner of both notes")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the edge was created (UTC)"
    )

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def _no_self_reference(self) -> "ReferenceEdge":
        if self.from_note_id == self.to_note_id:
            raise ValueError("A note cannot reference itself")
        return self

    @property
    def key(self):
        """Uniqueness key inside one owner's graph."""
        return (self.from_note_id, self.to_note_id, self.label)


class NoteReferences(BaseModel):
    """Outgoing and incoming edges of one note."""

    note_id: str
    outgoing: List[ReferenceEdge] = Field(default_factory=list)
    incoming: List[ReferenceEdge] = Field(default_factory=list)


class ReplaceResult(BaseModel):
    """Outcome of replacing a note's outgoing edge set."""

    created: int = 0
    removed: int = 0
    kept: int = 0

    @property
    def total(self) -> int:
        return self.created + self.kept


class ReconcileResult(BaseModel):
    """Outcome of reconciling one note's references with its content."""

    created_edge_count: int = 0
    removed_edge_count: int = 0
    processed_reference_count: int = 0
    annotated_target_count: int = 0
    affected_note_ids: List[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Processed {self.processed_reference_count} references, "
            f"created {self.created_edge_count} edges, "
            f"annotated {self.annotated_target_count} notes"
        )


class MarkerStats(BaseModel):
    """Counts of invisible markers found in a note's content."""

    has_references: bool = False
    has_backlinks: bool = False
    reference_count: int = 0
    backlink_count: int = 0
    content_length: int = 0


class SweepResult(BaseModel):
    """Outcome of an orphan sweep."""

    deleted_count: int = 0


class ReferencesUpdatedEvent(BaseModel):
    """Realtime event telling clients which notes changed."""

    type: str = "NOTE_REFERENCES_UPDATED"
    note_id: str = Field(..., alias="noteId")
    affected_note_ids: List[str] = Field(default_factory=list, alias="affectedNoteIds")
    message: str = ""

    model_config = {"populate_by_name": True, "frozen": True}

    def to_payload(self) -> dict:
        """Serialize with the camelCase keys clients consume."""
        return self.model_dump(by_alias=True)
