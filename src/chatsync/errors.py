"""Failure conditions raised at the ingestion pipeline's seams.

Only ``StoreUnavailable`` ever reaches the pipeline's callers; the
others are caught where they are raised and turned into data (a failed
attachment descriptor, the fallback reply, an undelivered reply record).
"""


class ChatSyncError(Exception):
    """Base class for all chatsync errors."""


class StoreUnavailable(ChatSyncError):
    """The message store could not be reached or the statement failed."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Store unavailable during {operation}{detail}")


TransientStoreError = StoreUnavailable


class AttachmentFetchError(ChatSyncError):
    """The platform did not return the attachment payload."""


class AttachmentWriteError(ChatSyncError):
    """The attachment payload could not be written to blob storage."""


class CompletionServiceError(ChatSyncError):
    """The completion service failed, timed out, or returned nothing usable."""


class SendError(ChatSyncError):
    """The platform rejected an outbound message."""
