"""Completion through ``litellm.acompletion``.

The model string selects the backend (``"openai/gpt-4o-mini"``,
``"groq/llama3-8b-8192"``) and litellm finds the matching key in the
environment, so the constructor arguments are only needed for proxies
or a key kept under a different name.
"""

from __future__ import annotations

import litellm
from loguru import logger

from chatsync.errors import CompletionServiceError

from .base import BaseLLMProvider, LLMResponse, clean_content, collect_usage


class LiteLLMProvider(BaseLLMProvider):
    name: str = "litellm"

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._overrides: dict = {}
        if api_key:
            self._overrides["api_key"] = api_key
        if api_base:
            self._overrides["api_base"] = api_base
        if default_headers:
            self._overrides["extra_headers"] = dict(default_headers)

    async def generate_response(
        self,
        model: str,
        messages: list[dict],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        logger.debug("Completing {} turns with {}", len(messages), model)
        try:
            result = await litellm.acompletion(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **self._overrides,
            )
        except litellm.exceptions.AuthenticationError as exc:
            logger.error("{} rejected our credentials: {}", model, exc)
            raise CompletionServiceError(f"authentication failed: {exc}") from exc
        except litellm.exceptions.RateLimitError as exc:
            logger.warning("{} is throttling us: {}", model, exc)
            raise CompletionServiceError(f"rate limited: {exc}") from exc
        except Exception as exc:
            logger.error("Completion with {} failed: {}", model, exc)
            raise CompletionServiceError(str(exc)) from exc

        return _to_response(result)


def _to_response(result) -> LLMResponse:
    choices = getattr(result, "choices", None)
    if not choices:
        raise CompletionServiceError("LLM returned no choices")

    content = clean_content(getattr(choices[0].message, "content", None))
    usage = collect_usage(getattr(result, "usage", None), getattr)
    logger.debug("Completion gave {} chars, usage {}", len(content or ""), usage)
    return LLMResponse(content=content, usage=usage, raw_response=result)
