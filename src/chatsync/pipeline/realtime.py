"""Real-time ingestion handler: the per-event callback behind the event bus.

Per event:
    1. Resolve the conversation once (name, type, group metadata)
    2. Normalize, claim, materialize the attachment if any, upsert
    3. Refresh conversation metadata and bump the rollup
    4. Hand inbound messages to the auto-reply orchestrator

A redelivered event stops at the id lookup: no platform call, no download,
no rollup, no reply. Nothing raised while handling one event escapes
``handle``.
"""

from __future__ import annotations

from dataclasses import replace

from loguru import logger

from chatsync.agents.responder import AutoReplyOrchestrator, AutoReplySettings
from chatsync.errors import StoreUnavailable
from chatsync.models import Message
from chatsync.pipeline.materializer import AttachmentMaterializer
from chatsync.pipeline.normalizer import normalize_conversation
from chatsync.pipeline.steps import persist_new_message
from chatsync.platform.base import (
    BasePlatformClient,
    PlatformConversation,
    PlatformMessage,
)
from chatsync.store.gateway import PersistenceGateway


class RealTimeIngestionHandler:
    """Turns live platform events into stored records and replies."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        platform: BasePlatformClient,
        materializer: AttachmentMaterializer,
        orchestrator: AutoReplyOrchestrator,
        auto_reply: AutoReplySettings | None = None,
    ) -> None:
        self._gateway = gateway
        self._platform = platform
        self._materializer = materializer
        self._orchestrator = orchestrator
        self._auto_reply = auto_reply or AutoReplySettings()

    # ------------------------------------------------------------------
    # Auto-reply switch (read by the control surface)
    # ------------------------------------------------------------------

    @property
    def auto_reply(self) -> AutoReplySettings:
        return self._auto_reply

    def set_auto_reply_enabled(self, enabled: bool) -> None:
        self._auto_reply = replace(self._auto_reply, enabled=enabled)
        logger.info(f"Auto-reply {'enabled' if enabled else 'disabled'}")

    # ------------------------------------------------------------------
    # Event callback
    # ------------------------------------------------------------------

    async def handle(self, event: PlatformMessage) -> Message | None:
        """Process one live event; returns the new record or None."""
        try:
            return await self._handle(event)
        except Exception as exc:
            logger.opt(exception=exc).error(
                "Unhandled error ingesting {} in {}: {}",
                event.id,
                event.conversation_ref,
                exc,
            )
            return None

    __call__ = handle

    async def _handle(self, event: PlatformMessage) -> Message | None:
        # Known ids stop here, before any platform lookup; the claim below
        # still settles races with reconciliation.
        try:
            if await self._gateway.existing_message_ids([event.id]):
                logger.debug("Duplicate delivery of {} ignored", event.id)
                return None
        except StoreUnavailable as exc:
            logger.error("Dropping {} (store unavailable): {}", event.id, exc)
            return None

        conversation = await self._resolve_conversation(event)

        try:
            record = await persist_new_message(
                event, conversation, self._gateway, self._materializer
            )
        except StoreUnavailable as exc:
            logger.error("Dropping {} (store unavailable): {}", event.id, exc)
            return None

        if record is None:
            logger.debug("Duplicate delivery of {} ignored", event.id)
            return None

        logger.info(
            "Stored {} {} in {}{}",
            "outbound" if record.is_outbound else "inbound",
            record.message_id,
            record.conversation_id,
            "" if not record.has_attachment
            else f" (attachment ok={record.attachment.success})",
        )

        try:
            await self._gateway.upsert_conversation(normalize_conversation(conversation))
        except StoreUnavailable as exc:
            logger.error(
                "Conversation {} metadata not refreshed for {}: {}",
                record.conversation_id,
                record.message_id,
                exc,
            )
        try:
            await self._gateway.increment_rollup(record.conversation_id, record.sent_at)
        except StoreUnavailable as exc:
            logger.error(
                "Rollup of {} not bumped for {}: {}",
                record.conversation_id,
                record.message_id,
                exc,
            )

        if not record.is_outbound:
            await self._orchestrator.respond(
                record,
                self._auto_reply,
                sender_name=event.metadata.get("first_name"),
            )
        return record

    async def _resolve_conversation(self, event: PlatformMessage) -> PlatformConversation:
        try:
            return await self._platform.get_conversation(event.conversation_ref)
        except Exception as exc:
            logger.warning(
                "Could not resolve conversation {}: {}", event.conversation_ref, exc
            )
            return PlatformConversation(
                ref=event.conversation_ref,
                name=event.metadata.get("chat_title") or event.conversation_ref,
                is_multi_party=event.author_sub_ref is not None,
            )
