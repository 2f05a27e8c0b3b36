"""The per-message persistence sequence shared by both ingestion paths."""

from __future__ import annotations

from loguru import logger

from chatsync.errors import StoreUnavailable
from chatsync.models import Message
from chatsync.pipeline.materializer import AttachmentMaterializer
from chatsync.pipeline.normalizer import normalize_message
from chatsync.platform.base import PlatformConversation, PlatformMessage
from chatsync.store.gateway import PersistenceGateway


async def persist_new_message(
    event: PlatformMessage,
    conversation: PlatformConversation,
    gateway: PersistenceGateway,
    materializer: AttachmentMaterializer,
) -> Message | None:
    """Normalize → claim → materialize (if attachment) → upsert.

    Returns the stored record, or None when another writer already holds
    this message id (nothing is downloaded in that case). Once the claim
    succeeds the record is returned even if the descriptor upsert fails,
    so callers still count it in the rollup; the row is then left with
    ``has_attachment`` set and no descriptor, which
    ``PersistenceGateway.messages_missing_attachment`` reports.

    Raises:
        StoreUnavailable: the claim failed; nothing was stored.
    """
    record = normalize_message(event, conversation)
    if not await gateway.claim_message(record):
        return None

    if record.has_attachment:
        record.attachment = await materializer.materialize(event, record.kind)
        try:
            await gateway.upsert_message(record)
        except StoreUnavailable as exc:
            logger.error(
                "Attachment descriptor of {} in {} not stored: {}",
                record.message_id,
                record.conversation_id,
                exc,
            )

    return record
