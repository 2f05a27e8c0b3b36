# platform: connect/disconnect, live events, history window, attachments, send

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatsync.pipeline.event_bus import EventBus

from chatsync.models import GroupInfo


@dataclass
class PlatformMessage:
    """A message event exactly as the platform reports it."""

    id: str
    conversation_ref: str
    sender: str
    body: str
    kind: str
    sent_at: datetime
    is_outbound: bool = False
    has_attachment: bool = False
    recipient: str | None = None
    author_sub_ref: str | None = None
    attachment_ref: str | None = None  # platform file handle
    mime_type: str | None = None
    file_name: str | None = None
    is_forwarded: bool = False
    is_status: bool = False  # broadcast/status post rather than a chat message
    device_type: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class PlatformConversation:
    ref: str
    name: str
    is_multi_party: bool = False
    unread_count: int = 0
    archived: bool = False
    pinned: bool = False
    group_info: GroupInfo | None = None


@dataclass
class AttachmentPayload:
    data: bytes
    mime_type: str | None = None
    file_name: str | None = None


class BasePlatformClient(ABC):
    name: str = "base"

    def __init__(
        self,
        bus: EventBus | None = None,
        config: dict | None = None,
    ):
        self._running = False
        self._bus = bus
        self._config = config or {}

    @abstractmethod
    async def connect(self):
        """Establish the platform session and start receiving events."""
        pass

    @abstractmethod
    async def disconnect(self):
        """Terminate the platform session."""
        pass

    @abstractmethod
    async def fetch_recent_messages(
        self, conversation_ref: str, limit: int
    ) -> list[PlatformMessage]:
        """Return up to ``limit`` of the most recent messages, oldest first."""
        pass

    @abstractmethod
    async def fetch_attachment(self, message: PlatformMessage) -> AttachmentPayload:
        """Download the binary content attached to ``message``."""
        pass

    @abstractmethod
    async def send_message(self, conversation_ref: str, text: str) -> PlatformMessage:
        """Send text to a conversation and return the sent message.

        Raises:
            SendError: the platform rejected the message.
        """
        pass

    @abstractmethod
    async def get_conversation(self, conversation_ref: str) -> PlatformConversation:
        """Resolve name, flags and group metadata for a conversation."""
        pass

    @abstractmethod
    async def list_conversations(self) -> list[PlatformConversation]:
        """Every conversation the platform session knows about."""
        pass

    async def _publish_inbound(self, message: PlatformMessage):
        """Publish a live message event to the bus."""
        if self._bus is None:
            return
        await self._bus.publish(message)

    @property
    def is_running(self) -> bool:
        """Return True if the client is connected, False otherwise."""
        return self._running
