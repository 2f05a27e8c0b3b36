"""Build the bounded LLM message list from persisted conversation history.

The ContextWindowBuilder is the single place that assembles the ``messages``
list passed to ``BaseLLMProvider.generate_response()``.

Layers (top → bottom of the messages list):
    1. System prompt: persona & tone rules for the conversation type
    2. Context window: the last N stored turns, oldest first
"""

from __future__ import annotations

from chatsync.models import Message
from chatsync.store.gateway import PersistenceGateway

SYSTEM_PROMPT = """\
You are a helpful and friendly virtual assistant replying inside a chat app.

Instructions:
- Answer concisely and in a friendly, conversational tone.
- Keep replies to 2-3 lines.
- Use an emoji occasionally.
- Be helpful and positive.
- If you don't know something, say so honestly.\
"""

_GROUP_TONE = """
- You are replying in a group chat called "{name}".
- Keep replies brief so you don't interrupt the group conversation.\
"""

_INDIVIDUAL_TONE = """
- You are in a one-to-one conversation.
- You may be a little more detailed when it helps.\
"""


def build_system_prompt(
    *,
    is_multi_party: bool,
    conversation_name: str | None = None,
    sender_name: str | None = None,
    base_prompt: str = SYSTEM_PROMPT,
) -> str:
    """Persona plus the tone rules for the conversation type."""
    prompt = base_prompt
    if sender_name:
        prompt += f"\n- The user's name is {sender_name}."
    if is_multi_party:
        prompt += _GROUP_TONE.format(name=conversation_name or "this group")
    else:
        prompt += _INDIVIDUAL_TONE
    return prompt


def to_turn(message: Message) -> dict:
    """Outbound messages are assistant turns, everything else is a user turn."""
    content = message.body.strip() if message.body else ""
    if not content:
        content = f"[{message.kind.value}]"
    return {
        "role": "assistant" if message.is_outbound else "user",
        "content": content,
    }


class ContextWindowBuilder:
    """Reads recent turns from the gateway and shapes them for the LLM."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    async def build_context(self, conversation_id: str, window_size: int) -> list[dict]:
        """The last ``window_size`` stored turns, oldest first.

        Returns at most ``window_size`` entries; an empty conversation
        yields an empty list.
        """
        if window_size <= 0:
            return []
        recent = await self._gateway.records_in_conversation(conversation_id, window_size)
        # Oldest first whatever the store's native order; ties keep insertion order.
        ordered = sorted(reversed(recent[:window_size]), key=lambda m: m.sent_at)
        return [to_turn(message) for message in ordered]

    async def build(
        self,
        conversation_id: str,
        window_size: int,
        system_prompt: str,
    ) -> list[dict]:
        """Return ``[system_message, *context_window]``."""
        messages: list[dict] = [{"role": "system", "content": system_prompt}]
        messages.extend(await self.build_context(conversation_id, window_size))
        return messages
