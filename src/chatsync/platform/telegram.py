"""Telegram platform client: connects to the Telegram Bot API and publishes events.

Supports:
    - Text messages
    - Media messages (photo, document, audio, voice, video, sticker)
    - Group metadata (title, description, administrators)

The Bot API has no history endpoint, so the client keeps a bounded
per-chat replay window of every message it has seen or sent. Polling
keeps pending updates across restarts, so updates redelivered after a
reconnect land in that window and reconciliation can pick them up.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone

from loguru import logger
from telegram import Bot, Update
from telegram.constants import ChatMemberStatus, ChatType
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ContextTypes,
    MessageHandler,
    filters,
)

from chatsync.constants import DEFAULT_REPLAY_WINDOW
from chatsync.errors import AttachmentFetchError, SendError
from chatsync.models import GroupInfo, Participant

from .base import (
    AttachmentPayload,
    BasePlatformClient,
    PlatformConversation,
    PlatformMessage,
)

# Default MIME types for media Telegram does not describe itself
_DEFAULT_MIME = {
    "photo": "image/jpeg",
    "voice": "audio/ogg",
    "sticker": "image/webp",
    "video": "video/mp4",
    "audio": "audio/mpeg",
}

_MULTI_PARTY_TYPES = {ChatType.GROUP.value, ChatType.SUPERGROUP.value}


def _is_multi_party(chat_type) -> bool:
    return getattr(chat_type, "value", chat_type) in _MULTI_PARTY_TYPES


def message_key(chat_id: int | str, message_id: int | str) -> str:
    """Telegram message ids are only unique per chat."""
    return f"{chat_id}:{message_id}"


class TelegramPlatformClient(BasePlatformClient):
    """Telegram platform client using polling.

    Responsibilities:
        - Connect / disconnect to Telegram (polling mode)
        - Convert incoming text & media messages to PlatformMessage, publish to bus
        - Serve the replay window, attachment downloads and chat metadata
        - Send replies via Bot API
    """

    name = "telegram"

    def __init__(self, bus, token: str, config: dict | None = None):
        """
        Args:
            bus: EventBus instance for publishing inbound messages.
            token: Telegram Bot API token from @BotFather.
            config: Optional channel-specific config dict (``replay_window``).
        """
        super().__init__(bus, config)
        self._token = token
        self._app: Application | None = None
        self._bot: Bot | None = None
        self._replay_window = int(
            self._config.get("replay_window", DEFAULT_REPLAY_WINDOW)
        )
        self._recent: dict[str, deque[PlatformMessage]] = {}

    # ------------------------------------------------------------------
    # BasePlatformClient interface
    # ------------------------------------------------------------------

    async def connect(self):
        """Build the Telegram Application, register handlers, start polling."""
        if self._running:
            logger.warning(
                "TelegramPlatformClient.connect() called while already connected"
            )
            return

        self._app = Application.builder().token(self._token).build()
        self._bot = self._app.bot

        self._app.add_handler(
            MessageHandler(
                (filters.TEXT & ~filters.COMMAND)
                | filters.PHOTO | filters.Document.ALL | filters.AUDIO
                | filters.VIDEO | filters.VOICE | filters.Sticker.ALL,
                self._handle_update,
            )
        )

        await self._app.initialize()
        await self._app.start()
        # Pending updates are replayed on reconnect; dedup happens downstream.
        await self._app.updater.start_polling(drop_pending_updates=False)

        self._running = True
        logger.info("Telegram platform connected (polling)")

    async def disconnect(self):
        """Stop polling, shut down the Application gracefully."""
        if not self._running or self._app is None:
            return

        try:
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
        except Exception as exc:
            logger.error(f"Error during Telegram disconnect: {exc}")
        finally:
            self._running = False
            logger.info("Telegram platform disconnected")

    async def fetch_recent_messages(
        self, conversation_ref: str, limit: int
    ) -> list[PlatformMessage]:
        window = self._recent.get(str(conversation_ref))
        if not window or limit <= 0:
            return []
        return list(window)[-limit:]

    async def fetch_attachment(self, message: PlatformMessage) -> AttachmentPayload:
        """Download a media file's bytes from Telegram."""
        if self._bot is None:
            raise AttachmentFetchError("Cannot fetch attachment: client is not connected")
        if not message.attachment_ref:
            raise AttachmentFetchError(f"Message {message.id} has no file reference")

        try:
            tg_file = await self._bot.get_file(message.attachment_ref)
            data = await tg_file.download_as_bytearray()
        except TelegramError as exc:
            raise AttachmentFetchError(str(exc)) from exc

        if not data:
            raise AttachmentFetchError("Telegram returned an empty file")

        return AttachmentPayload(
            data=bytes(data),
            mime_type=message.mime_type,
            file_name=message.file_name,
        )

    async def send_message(self, conversation_ref: str, text: str) -> PlatformMessage:
        """Send a text message to a Telegram chat."""
        if self._bot is None:
            raise SendError("Cannot send message: client is not connected")

        try:
            sent = await self._bot.send_message(chat_id=conversation_ref, text=text)
        except TelegramError as exc:
            raise SendError(str(exc)) from exc

        event = self._to_platform_message(sent, is_outbound=True)
        self._remember(event)
        logger.debug(f"Sent message to chat {conversation_ref}")
        return event

    async def get_conversation(self, conversation_ref: str) -> PlatformConversation:
        if self._bot is None:
            raise RuntimeError("Cannot resolve chat: client is not connected")

        chat = await self._bot.get_chat(chat_id=conversation_ref)
        is_multi_party = _is_multi_party(chat.type)
        name = chat.title or " ".join(
            part for part in (chat.first_name, chat.last_name) if part
        ) or str(chat.id)

        group_info = None
        if is_multi_party:
            admins = await self._bot.get_chat_administrators(chat_id=conversation_ref)
            participants = [
                Participant(
                    ref=str(member.user.id),
                    is_admin=True,
                    is_super_admin=member.status == ChatMemberStatus.OWNER,
                )
                for member in admins
            ]
            owner = next((p.ref for p in participants if p.is_super_admin), None)
            group_info = GroupInfo(
                owner_ref=owner,
                description=getattr(chat, "description", None),
                participants=participants,
            )

        return PlatformConversation(
            ref=str(chat.id),
            name=name,
            is_multi_party=is_multi_party,
            group_info=group_info,
        )

    async def list_conversations(self) -> list[PlatformConversation]:
        conversations = []
        for ref in list(self._recent):
            try:
                conversations.append(await self.get_conversation(ref))
            except TelegramError as exc:
                logger.warning("Skipping chat {}: {}", ref, exc)
        return conversations

    # ------------------------------------------------------------------
    # Update handler
    # ------------------------------------------------------------------

    async def _handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Convert an incoming message into a PlatformMessage and publish to bus."""
        if update.message is None:
            return

        event = self._to_platform_message(update.message)
        self._remember(event)
        await self._publish_inbound(event)
        logger.debug(
            "Received {} {} in chat {}", event.kind, event.id, event.conversation_ref
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _remember(self, event: PlatformMessage) -> None:
        window = self._recent.setdefault(
            event.conversation_ref, deque(maxlen=self._replay_window)
        )
        if any(existing.id == event.id for existing in window):
            return
        window.append(event)

    def _to_platform_message(self, msg, is_outbound: bool = False) -> PlatformMessage:
        kind = self._detect_kind(msg)
        media = self._media_object(msg, kind)
        chat_type = msg.chat.type if msg.chat else None
        sender = str(msg.from_user.id) if msg.from_user else "unknown"

        return PlatformMessage(
            id=message_key(msg.chat_id, msg.message_id),
            conversation_ref=str(msg.chat_id),
            sender=sender,
            recipient=str(msg.chat_id),
            body=msg.text or msg.caption or "",
            kind=kind,
            sent_at=msg.date or datetime.now(tz=timezone.utc),
            is_outbound=is_outbound,
            has_attachment=media is not None,
            author_sub_ref=sender if _is_multi_party(chat_type) else None,
            attachment_ref=media.file_id if media is not None else None,
            mime_type=(
                getattr(media, "mime_type", None) or _DEFAULT_MIME.get(kind)
                if media is not None
                else None
            ),
            file_name=getattr(media, "file_name", None) if media is not None else None,
            is_forwarded=getattr(msg, "forward_origin", None) is not None,
            metadata=self._build_metadata(msg),
        )

    @staticmethod
    def _detect_kind(msg) -> str:
        """Determine the type of content in a Telegram message."""
        if msg.photo:
            return "photo"
        if msg.document:
            return "document"
        if msg.video:
            return "video"
        if msg.audio:
            return "audio"
        if msg.voice:
            return "voice"
        if msg.sticker:
            return "sticker"
        if msg.text:
            return "text"
        return "unknown"

    @staticmethod
    def _media_object(msg, kind: str):
        """The file-bearing object for the given kind (largest photo size)."""
        if kind == "photo":
            return msg.photo[-1]
        if kind in {"document", "video", "audio", "voice", "sticker"}:
            return getattr(msg, kind)
        return None

    @staticmethod
    def _build_metadata(msg) -> dict:
        """Build common metadata dict from a Telegram message."""
        return {
            "message_id": msg.message_id,
            "chat_type": msg.chat.type if msg.chat else None,
            "chat_title": msg.chat.title if msg.chat else None,
            "first_name": (msg.from_user.first_name if msg.from_user else None),
            "username": (msg.from_user.username if msg.from_user else None),
        }
