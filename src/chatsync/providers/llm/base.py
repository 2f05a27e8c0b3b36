from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

TOKEN_FIELDS = ("prompt_tokens", "completion_tokens", "total_tokens")


@dataclass
class LLMResponse:
    """What a completion call produced, whichever backend served it.

    ``content`` is ``None`` when the model answered with nothing but
    whitespace. ``usage`` carries the token counts named in
    ``TOKEN_FIELDS`` when the backend reported them, and ``raw_response``
    keeps the backend's own object for log inspection.
    """

    content: str | None
    usage: dict[str, int] = field(default_factory=dict)
    raw_response: Any = None

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())


def clean_content(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def collect_usage(source: Any, read: Callable[[Any, str], Any]) -> dict[str, int]:
    """Pull the token counters out of ``source`` with ``read(source, name)``."""
    if not source:
        return {}
    return {name: read(source, name) or 0 for name in TOKEN_FIELDS}


class BaseLLMProvider(ABC):
    """A chat-completion backend.

    Implementations raise ``CompletionServiceError`` for any failure.
    Timeouts and the fallback reply are the orchestrator's job, not theirs.
    """

    name: str = "base"

    @abstractmethod
    async def generate_response(
        self,
        model: str,
        messages: list[dict],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Complete ``messages`` (role/content dicts, system prompt first) with ``model``."""
        ...
