"""Shared fixtures: a real SQLite gateway on tmp_path and an in-memory platform."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chatsync.agents.context import ContextWindowBuilder
from chatsync.agents.responder import AutoReplyOrchestrator
from chatsync.config import AgentDefaults
from chatsync.errors import AttachmentFetchError, SendError
from chatsync.pipeline.materializer import AttachmentMaterializer
from chatsync.pipeline.realtime import RealTimeIngestionHandler
from chatsync.pipeline.reconcile import BatchReconciliationJob
from chatsync.platform.base import (
    AttachmentPayload,
    BasePlatformClient,
    PlatformConversation,
    PlatformMessage,
)
from chatsync.providers.llm.base import LLMResponse
from chatsync.store import BlobStore, PersistenceGateway

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakePlatform(BasePlatformClient):
    """In-memory platform that records every call the pipeline makes."""

    name = "fake"

    def __init__(self):
        super().__init__()
        self.history: dict[str, list[PlatformMessage]] = {}
        self.conversations: dict[str, PlatformConversation] = {}
        self.payloads: dict[str, AttachmentPayload] = {}
        self.fetch_calls: list[str] = []
        self.sent: list[PlatformMessage] = []
        self.conversation_lookups: list[str] = []
        self.fail_fetch = False
        self.fail_send = False
        self.fail_history = False
        self._counter = 0

    async def connect(self):
        self._running = True

    async def disconnect(self):
        self._running = False

    async def fetch_recent_messages(self, conversation_ref, limit):
        if self.fail_history:
            raise ConnectionError("history unavailable")
        return list(self.history.get(conversation_ref, []))[-limit:]

    async def fetch_attachment(self, message):
        self.fetch_calls.append(message.id)
        if self.fail_fetch:
            raise AttachmentFetchError("media expired")
        return self.payloads.get(
            message.id, AttachmentPayload(data=b"\x89PNG-bytes", mime_type=message.mime_type)
        )

    async def send_message(self, conversation_ref, text):
        if self.fail_send:
            raise SendError("chat not found")
        self._counter += 1
        sent = PlatformMessage(
            id=f"out-{self._counter}",
            conversation_ref=conversation_ref,
            sender="bot",
            recipient=conversation_ref,
            body=text,
            kind="text",
            sent_at=BASE_TIME + timedelta(hours=1, seconds=self._counter),
            is_outbound=True,
        )
        self.sent.append(sent)
        self.history.setdefault(conversation_ref, []).append(sent)
        return sent

    async def get_conversation(self, conversation_ref):
        self.conversation_lookups.append(conversation_ref)
        return self.conversations.get(
            conversation_ref, PlatformConversation(ref=conversation_ref, name=conversation_ref)
        )

    async def list_conversations(self):
        return list(self.conversations.values())

    # helpers -------------------------------------------------------------

    def add_conversation(self, ref, name=None, is_multi_party=False, **kwargs):
        conversation = PlatformConversation(
            ref=ref, name=name or ref, is_multi_party=is_multi_party, **kwargs
        )
        self.conversations[ref] = conversation
        return conversation

    def add_history(self, *events):
        for event in events:
            self.history.setdefault(event.conversation_ref, []).append(event)


class CountingGateway(PersistenceGateway):
    """Real gateway that counts the writes and lookups issued against it."""

    def __init__(self, database_path):
        super().__init__(database_path)
        self.calls: dict[str, int] = {}

    def _count(self, name):
        self.calls[name] = self.calls.get(name, 0) + 1

    async def claim_message(self, record):
        self._count("claim_message")
        return await super().claim_message(record)

    async def upsert_message(self, record):
        self._count("upsert_message")
        return await super().upsert_message(record)

    async def existing_message_ids(self, candidate_ids):
        self._count("existing_message_ids")
        return await super().existing_message_ids(candidate_ids)

    async def increment_rollup(self, conversation_id, sent_at, count=1, first_at=None):
        self._count("increment_rollup")
        return await super().increment_rollup(conversation_id, sent_at, count, first_at)

    def message_writes(self):
        return self.calls.get("claim_message", 0) + self.calls.get("upsert_message", 0)


def make_event(
    message_id="m1",
    conversation_ref="chat-1",
    body="hola",
    kind="text",
    minutes=0,
    sender="user-7",
    is_outbound=False,
    has_attachment=False,
    mime_type=None,
    author_sub_ref=None,
    **kwargs,
) -> PlatformMessage:
    return PlatformMessage(
        id=message_id,
        conversation_ref=conversation_ref,
        sender=sender,
        body=body,
        kind=kind,
        sent_at=BASE_TIME + timedelta(minutes=minutes),
        is_outbound=is_outbound,
        has_attachment=has_attachment,
        attachment_ref=f"file-{message_id}" if has_attachment else None,
        mime_type=mime_type,
        author_sub_ref=author_sub_ref,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway(tmp_path):
    gw = CountingGateway(tmp_path / "chatsync.db")
    gw.init_schema()
    return gw


@pytest.fixture
def broken_gateway(tmp_path):
    """A gateway whose database directory does not exist."""
    return PersistenceGateway(tmp_path / "missing" / "chatsync.db")


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "media")


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def materializer(platform, blobs):
    return AttachmentMaterializer(platform, blobs, fetch_timeout=1.0)


@pytest.fixture
def llm():
    provider = AsyncMock()
    provider.generate_response = AsyncMock(
        return_value=LLMResponse(content="¡Hola! ¿En qué te ayudo?")
    )
    return provider


@pytest.fixture
def orchestrator(gateway, platform, llm):
    return AutoReplyOrchestrator(
        gateway=gateway,
        platform=platform,
        llm=llm,
        context_builder=ContextWindowBuilder(gateway),
        model_config=AgentDefaults(model="gpt-4o-mini", max_tokens=150),
        completion_timeout=1.0,
    )


@pytest.fixture
def realtime(gateway, platform, materializer, orchestrator):
    return RealTimeIngestionHandler(
        gateway=gateway,
        platform=platform,
        materializer=materializer,
        orchestrator=orchestrator,
    )


@pytest.fixture
def reconciler(gateway, platform, materializer):
    return BatchReconciliationJob(
        gateway=gateway,
        platform=platform,
        materializer=materializer,
        fetch_window=30,
        concurrency=2,
    )
