"""Map platform events onto the canonical Message / Conversation records.

Pure functions: no I/O, no network calls. Every event maps to exactly one
record; unrecognised content kinds become ``MessageKind.OTHER``.
"""

from __future__ import annotations

from chatsync.models import Conversation, Message, MessageKind
from chatsync.platform.base import PlatformConversation, PlatformMessage

# Platform-native kind names → canonical kind
_KIND_ALIASES: dict[str, MessageKind] = {
    "text": MessageKind.TEXT,
    "chat": MessageKind.TEXT,
    "image": MessageKind.IMAGE,
    "photo": MessageKind.IMAGE,
    "audio": MessageKind.AUDIO,
    "voice": MessageKind.AUDIO,
    "ptt": MessageKind.AUDIO,
    "video": MessageKind.VIDEO,
    "video_note": MessageKind.VIDEO,
    "document": MessageKind.DOCUMENT,
    "sticker": MessageKind.STICKER,
}


def normalize_kind(raw_kind: str | None) -> MessageKind:
    if not raw_kind:
        return MessageKind.OTHER
    return _KIND_ALIASES.get(raw_kind.lower(), MessageKind.OTHER)


def normalize_message(
    event: PlatformMessage, conversation: PlatformConversation
) -> Message:
    """Build the Message record for ``event``; attachment and reply stay unset."""
    return Message(
        message_id=event.id,
        conversation_id=conversation.ref,
        sender=event.sender,
        recipient=event.recipient or conversation.ref,
        body=event.body or "",
        kind=normalize_kind(event.kind),
        sent_at=event.sent_at,
        is_outbound=event.is_outbound,
        is_multi_party=conversation.is_multi_party,
        originator_sub_id=event.author_sub_ref if conversation.is_multi_party else None,
        conversation_name=conversation.name,
        has_attachment=event.has_attachment,
        is_forwarded=event.is_forwarded,
        is_status=event.is_status,
        device_type=event.device_type,
    )


def normalize_conversation(conversation: PlatformConversation) -> Conversation:
    return Conversation(
        conversation_id=conversation.ref,
        display_name=conversation.name or conversation.ref,
        is_multi_party=conversation.is_multi_party,
        unread_count=conversation.unread_count,
        archived=conversation.archived,
        pinned=conversation.pinned,
        group_info=conversation.group_info if conversation.is_multi_party else None,
    )
