"""Attachment materializer: fetch a message's binary content once and store it.

Callers must only invoke ``materialize`` for a message they have just
claimed in the gateway; this class does not check for earlier copies.
"""

from __future__ import annotations

import asyncio
import re
from urllib.parse import quote

from loguru import logger

from chatsync.constants import (
    ATTACHMENT_FETCH_TIMEOUT,
    DEFAULT_ATTACHMENT_EXTENSION,
    DEFAULT_MEDIA_URL_PREFIX,
)
from chatsync.errors import AttachmentFetchError, AttachmentWriteError
from chatsync.models import AttachmentDescriptor, MessageKind, utcnow
from chatsync.platform.base import AttachmentPayload, BasePlatformClient, PlatformMessage
from chatsync.store.blobs import BlobStore

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._@-]")


def extension_for(mime_type: str | None) -> str:
    """``image/jpeg`` → ``jpeg``; ``audio/ogg; codecs=opus`` → ``ogg``."""
    if not mime_type or "/" not in mime_type:
        return DEFAULT_ATTACHMENT_EXTENSION
    subtype = mime_type.split("/", 1)[1].split(";", 1)[0].strip()
    subtype = _UNSAFE_CHARS.sub("", subtype)
    return subtype or DEFAULT_ATTACHMENT_EXTENSION


def stored_name_for(message_id: str, extension: str) -> str:
    """Timestamp + message id, so retries never collide on disk."""
    stamp = re.sub(r"[:.+]", "-", utcnow().isoformat())
    return f"{stamp}_{_UNSAFE_CHARS.sub('_', message_id)}.{extension}"


class AttachmentMaterializer:
    """Downloads attachment payloads from the platform into blob storage."""

    def __init__(
        self,
        platform: BasePlatformClient,
        blobs: BlobStore,
        fetch_timeout: float = ATTACHMENT_FETCH_TIMEOUT,
        url_prefix: str = DEFAULT_MEDIA_URL_PREFIX,
    ) -> None:
        self._platform = platform
        self._blobs = blobs
        self._fetch_timeout = fetch_timeout
        self._url_prefix = url_prefix.rstrip("/")

    async def materialize(
        self, event: PlatformMessage, kind: MessageKind
    ) -> AttachmentDescriptor:
        """Fetch, store and describe the attachment of ``event``.

        Never raises: failures come back as ``success=False`` descriptors.
        """
        try:
            payload = await self._fetch(event)
            return await self._store(event, kind, payload)
        except (AttachmentFetchError, AttachmentWriteError) as exc:
            logger.warning("Attachment of {} not materialized: {}", event.id, exc)
            return AttachmentDescriptor(success=False, error=str(exc))
        except Exception as exc:
            logger.error("Unexpected attachment failure for {}: {}", event.id, exc)
            return AttachmentDescriptor(
                success=False, error=f"{type(exc).__name__}: {exc}"
            )

    async def _fetch(self, event: PlatformMessage) -> AttachmentPayload:
        try:
            payload = await asyncio.wait_for(
                self._platform.fetch_attachment(event), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError:
            raise AttachmentFetchError(
                f"fetch timed out after {self._fetch_timeout:.0f}s"
            ) from None
        except AttachmentFetchError:
            raise
        except Exception as exc:
            raise AttachmentFetchError(f"{type(exc).__name__}: {exc}") from exc

        if payload is None or not payload.data:
            raise AttachmentFetchError("platform returned no data")
        return payload

    async def _store(
        self, event: PlatformMessage, kind: MessageKind, payload: AttachmentPayload
    ) -> AttachmentDescriptor:
        mime_type = payload.mime_type or event.mime_type
        stored_name = stored_name_for(event.id, extension_for(mime_type))
        locator = f"{kind.value}/{stored_name}"

        try:
            await self._blobs.write(locator, payload.data)
        except OSError as exc:
            raise AttachmentWriteError(f"{type(exc).__name__}: {exc}") from exc

        logger.info("Attachment saved: {} ({} bytes)", locator, len(payload.data))
        return AttachmentDescriptor(
            success=True,
            stored_name=stored_name,
            original_name=payload.file_name or event.file_name,
            mime_type=mime_type,
            byte_size=len(payload.data),
            storage_locator=locator,
            access_reference=f"{self._url_prefix}/{quote(event.id, safe='')}",
            materialized_at=utcnow(),
        )
