# canonical message and conversation records

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    OTHER = "other"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_timestamp(value: datetime | None) -> float | None:
    """Epoch seconds for storage; naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class AttachmentDescriptor:
    """Outcome of materializing one message's binary content.

    ``success`` False means the blob is missing; ``error`` says why.
    """

    success: bool
    stored_name: str | None = None
    original_name: str | None = None
    mime_type: str | None = None
    byte_size: int | None = None
    storage_locator: str | None = None  # path relative to the blob root
    access_reference: str | None = None  # URL-ish handle for later retrieval
    materialized_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["materialized_at"] = _iso(self.materialized_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttachmentDescriptor:
        data = dict(data)
        data["materialized_at"] = _parse_iso(data.get("materialized_at"))
        return cls(**data)


@dataclass
class GeneratedReply:
    """Back-reference stored on the inbound message that triggered a reply."""

    text: str
    triggered_at: datetime
    matched_triggers: list[str] = field(default_factory=list)
    classification: str = "general"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["triggered_at"] = _iso(self.triggered_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeneratedReply:
        data = dict(data)
        data["triggered_at"] = _parse_iso(data.get("triggered_at"))
        return cls(**data)


@dataclass
class Message:
    """One inbound or outbound turn, keyed globally by ``message_id``."""

    message_id: str
    conversation_id: str
    sender: str
    recipient: str | None
    body: str
    kind: MessageKind
    sent_at: datetime
    is_outbound: bool = False
    is_multi_party: bool = False
    originator_sub_id: str | None = None
    conversation_name: str | None = None
    has_attachment: bool = False
    attachment: AttachmentDescriptor | None = None
    generated_reply: GeneratedReply | None = None
    delivered: bool = True
    is_forwarded: bool = False
    is_status: bool = False
    device_type: str | None = None


@dataclass
class Participant:
    ref: str
    is_admin: bool = False
    is_super_admin: bool = False


@dataclass
class GroupInfo:
    created_at: datetime | None = None
    owner_ref: str | None = None
    description: str | None = None
    participants: list[Participant] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        data["participant_count"] = len(self.participants)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GroupInfo:
        return cls(
            created_at=_parse_iso(data.get("created_at")),
            owner_ref=data.get("owner_ref"),
            description=data.get("description"),
            participants=[Participant(**p) for p in data.get("participants", [])],
        )


@dataclass
class Rollup:
    total_messages: int = 0
    first_message_at: datetime | None = None
    last_message_at: datetime | None = None


@dataclass
class Conversation:
    """One chat thread with platform pass-through flags and rollup counters."""

    conversation_id: str
    display_name: str
    is_multi_party: bool = False
    unread_count: int = 0
    archived: bool = False
    pinned: bool = False
    group_info: GroupInfo | None = None
    rollup: Rollup = field(default_factory=Rollup)
    updated_at: datetime | None = None
