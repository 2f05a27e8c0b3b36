"""Auto-reply orchestrator: decides, generates, delivers and records replies.

Runs once per inbound message and holds no state between messages.
Flow per message:
    1. Eligibility gate (enabled flag, trigger phrases in multi-party chats)
    2. Context assembly (system prompt + last N stored turns)
    3. Completion call with a timeout; any failure becomes the fallback text
    4. Delivery back to the originating conversation
    5. Persistence of the reply through the gateway (deduplicated)
    6. Back-annotation of the inbound message with the generated reply

Nothing raised by a collaborator escapes ``respond``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

from chatsync.agents.context import ContextWindowBuilder, build_system_prompt, to_turn
from chatsync.agents.triggers import TriggerMatcher, get_matcher, substring_matcher
from chatsync.config import AgentDefaults, AutoReplyConfig
from chatsync.constants import (
    CLASSIFICATION_GROUP,
    CLASSIFICATION_INDIVIDUAL,
    COMPLETION_TIMEOUT,
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_TRIGGERS,
    FALLBACK_REPLY,
    GROUP_CONTEXT_WINDOW,
)
from chatsync.errors import StoreUnavailable
from chatsync.models import GeneratedReply, Message, MessageKind, utcnow
from chatsync.pipeline.normalizer import normalize_message
from chatsync.platform.base import (
    BasePlatformClient,
    PlatformConversation,
    PlatformMessage,
)
from chatsync.providers.llm.base import BaseLLMProvider
from chatsync.store.gateway import PersistenceGateway


@dataclass(frozen=True)
class AutoReplySettings:
    """Eligibility configuration, passed explicitly on every call."""

    enabled: bool = True
    triggers: tuple[str, ...] = tuple(DEFAULT_TRIGGERS)
    window_size: int = DEFAULT_CONTEXT_WINDOW
    group_window_size: int = GROUP_CONTEXT_WINDOW
    matcher: TriggerMatcher = substring_matcher

    @classmethod
    def from_config(cls, config: AutoReplyConfig) -> AutoReplySettings:
        return cls(
            enabled=config.enabled,
            triggers=tuple(config.triggers),
            window_size=config.window_size,
            group_window_size=config.group_window_size,
            matcher=get_matcher(config.matcher),
        )


@dataclass
class ReplyOutcome:
    text: str
    sent: bool
    fallback: bool
    message_id: str | None = None
    matched_triggers: list[str] = field(default_factory=list)


def reply_id_for(message_id: str) -> str:
    """Stable id for a reply the platform never acknowledged."""
    return f"{message_id}:reply"


class AutoReplyOrchestrator:
    """Bridges stored history, the completion service and the platform."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        platform: BasePlatformClient,
        llm: BaseLLMProvider,
        context_builder: ContextWindowBuilder,
        model_config: AgentDefaults,
        completion_timeout: float = COMPLETION_TIMEOUT,
    ) -> None:
        self._gateway = gateway
        self._platform = platform
        self.llm = llm
        self._context = context_builder
        self._model = model_config
        self._completion_timeout = completion_timeout

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    @staticmethod
    def match_triggers(message: Message, settings: AutoReplySettings) -> list[str] | None:
        """Triggers that made ``message`` eligible, or None when it is not.

        Single-party conversations are always eligible (empty list).
        """
        if not settings.enabled or message.is_outbound:
            return None
        if not message.is_multi_party:
            return []
        matched = settings.matcher(message.body, settings.triggers)
        return matched or None

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def respond(
        self,
        message: Message,
        settings: AutoReplySettings,
        sender_name: str | None = None,
    ) -> ReplyOutcome | None:
        """Reply to ``message`` if eligible; None when no reply was due."""
        matched = self.match_triggers(message, settings)
        if matched is None:
            logger.debug("No auto-reply for {} (not eligible)", message.message_id)
            return None

        try:
            return await self._respond(message, settings, matched, sender_name)
        except Exception as exc:
            logger.opt(exception=exc).error(
                "Auto-reply for {} aborted: {}", message.message_id, exc
            )
            return None

    async def _respond(
        self,
        message: Message,
        settings: AutoReplySettings,
        matched: list[str],
        sender_name: str | None,
    ) -> ReplyOutcome:
        system_prompt = build_system_prompt(
            is_multi_party=message.is_multi_party,
            conversation_name=message.conversation_name,
            sender_name=sender_name,
        )
        window = (
            settings.group_window_size if message.is_multi_party else settings.window_size
        )
        messages = await self._assemble(message, window, system_prompt)

        text, fallback = await self.complete(messages)

        sent = await self._deliver(message, text)

        reply_id = sent.id if sent else reply_id_for(message.message_id)
        await self._record_reply(message, text, sent)
        await self._annotate(message, text, matched)

        logger.info(
            "Auto-reply {} to {} in {} (fallback={})",
            "sent" if sent else "NOT sent",
            message.message_id,
            message.conversation_id,
            fallback,
        )
        return ReplyOutcome(
            text=text,
            sent=sent is not None,
            fallback=fallback,
            message_id=reply_id,
            matched_triggers=matched,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _assemble(
        self, message: Message, window_size: int, system_prompt: str
    ) -> list[dict]:
        try:
            return await self._context.build(
                message.conversation_id, window_size, system_prompt
            )
        except StoreUnavailable as exc:
            logger.warning(
                "History unavailable for {}, replying without context: {}",
                message.conversation_id,
                exc,
            )
            return [
                {"role": "system", "content": system_prompt},
                to_turn(message),
            ]

    async def complete(self, messages: Sequence[dict]) -> tuple[str, bool]:
        """Run the completion; returns ``(text, used_fallback)``."""
        try:
            response = await asyncio.wait_for(
                self.llm.generate_response(
                    model=self._model.model,
                    messages=list(messages),
                    max_tokens=self._model.max_tokens,
                    temperature=self._model.temperature,
                ),
                timeout=self._completion_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Completion timed out after {}s, using fallback", self._completion_timeout
            )
            return FALLBACK_REPLY, True
        except Exception as exc:
            logger.warning("Completion failed, using fallback: {}", exc)
            return FALLBACK_REPLY, True

        if response is None or not response.has_content:
            logger.warning("Completion returned no content, using fallback")
            return FALLBACK_REPLY, True
        return response.content.strip(), False

    async def _deliver(self, message: Message, text: str) -> PlatformMessage | None:
        try:
            return await self._platform.send_message(message.conversation_id, text)
        except Exception as exc:
            logger.error(
                "Send to {} failed for reply to {}: {}",
                message.conversation_id,
                message.message_id,
                exc,
            )
            return None

    async def _record_reply(
        self, message: Message, text: str, sent: PlatformMessage | None
    ) -> None:
        if sent is not None:
            conversation = PlatformConversation(
                ref=message.conversation_id,
                name=message.conversation_name or message.conversation_id,
                is_multi_party=message.is_multi_party,
            )
            record = normalize_message(sent, conversation)
            record.is_outbound = True
        else:
            record = Message(
                message_id=reply_id_for(message.message_id),
                conversation_id=message.conversation_id,
                sender=message.recipient or message.conversation_id,
                recipient=message.sender,
                body=text,
                kind=MessageKind.TEXT,
                sent_at=utcnow(),
                is_outbound=True,
                is_multi_party=message.is_multi_party,
                conversation_name=message.conversation_name,
                delivered=False,
            )

        try:
            if await self._gateway.claim_message(record):
                await self._gateway.increment_rollup(
                    record.conversation_id, record.sent_at
                )
            else:
                await self._gateway.upsert_message(record)
        except StoreUnavailable as exc:
            logger.error("Reply {} not persisted: {}", record.message_id, exc)

    async def _annotate(self, message: Message, text: str, matched: list[str]) -> None:
        reply = GeneratedReply(
            text=text,
            triggered_at=utcnow(),
            matched_triggers=list(matched),
            classification=(
                CLASSIFICATION_GROUP if message.is_multi_party else CLASSIFICATION_INDIVIDUAL
            ),
        )
        try:
            await self._gateway.annotate_reply(message.message_id, reply)
        except StoreUnavailable as exc:
            logger.error("Reply annotation for {} not stored: {}", message.message_id, exc)
