"""Trigger-phrase matchers for the multi-party eligibility gate.

A matcher takes the message body and the configured trigger phrases and
returns the phrases it found, in configuration order. An empty list
means "not eligible".
"""

from __future__ import annotations

import unicodedata
from collections.abc import Callable, Sequence

TriggerMatcher = Callable[[str, Sequence[str]], list[str]]


def substring_matcher(body: str, triggers: Sequence[str]) -> list[str]:
    """Case-insensitive substring match."""
    text = (body or "").lower()
    return [t for t in triggers if t and t.lower() in text]


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalized_matcher(body: str, triggers: Sequence[str]) -> list[str]:
    """Case- and diacritic-insensitive substring match ("háblame" == "hablame")."""
    text = _fold(body or "")
    return [t for t in triggers if t and _fold(t) in text]


MATCHERS: dict[str, TriggerMatcher] = {
    "substring": substring_matcher,
    "normalized": normalized_matcher,
}


def get_matcher(name: str) -> TriggerMatcher:
    try:
        return MATCHERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown trigger matcher '{name}'. Choose one of: {', '.join(MATCHERS)}"
        ) from None
