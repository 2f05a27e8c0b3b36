"""Completion over plain HTTP against an OpenAI-style ``/chat/completions``.

Used for hosts litellm does not need to know about: Groq, OpenRouter,
a vLLM box on the LAN. Tests hand in an ``httpx.MockTransport``.
"""

from __future__ import annotations

import json

import httpx
from loguru import logger

from chatsync.config import ProviderConfig
from chatsync.errors import CompletionServiceError
from chatsync.providers.llm.base import (
    BaseLLMProvider,
    LLMResponse,
    clean_content,
    collect_usage,
)

_REQUEST_TIMEOUT = 120.0
_DEFAULT_API_BASE = "https://api.openai.com/v1"


class LlmApiProvider(BaseLLMProvider):
    name: str = "llmapi"

    def __init__(
        self,
        config: ProviderConfig,
        default_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._endpoint = (config.api_base or _DEFAULT_API_BASE).rstrip("/") + "/chat/completions"
        self._headers = {**(default_headers or {}), "Content-Type": "application/json"}
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"
        self._transport = transport

    def _bare_model(self, model: str) -> str:
        # config.json names models as "<slug>/<model>"; the host only wants <model>
        prefix = f"{self.config.slug}/"
        return model[len(prefix):] if model.startswith(prefix) else model

    async def generate_response(
        self,
        model: str,
        messages: list[dict],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        model = self._bare_model(model)
        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        logger.debug("POST {} model={} turns={}", self._endpoint, model, len(messages))

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self._endpoint,
                    json=payload,
                    headers=self._headers,
                    timeout=_REQUEST_TIMEOUT,
                )
        except httpx.HTTPError as exc:
            logger.error("Could not reach {}: {}", self._endpoint, exc)
            raise CompletionServiceError(f"{type(exc).__name__}: {exc}") from exc

        if response.is_error:
            detail = f"{response.status_code} {response.reason_phrase}: {response.text[:500]}"
            logger.error("{} answered {} for model {}", self._endpoint, detail, model)
            raise CompletionServiceError(f"LLM API {detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise CompletionServiceError(f"LLM API returned invalid JSON: {exc}") from exc
        return self._to_response(body)

    @staticmethod
    def _to_response(body: dict) -> LLMResponse:
        choices = body.get("choices") if isinstance(body, dict) else None
        if not choices:
            raise CompletionServiceError(
                f"LLM API returned no choices: {json.dumps(body)[:500]}"
            )

        message = choices[0].get("message") or {}
        usage = body.get("usage")
        return LLMResponse(
            content=clean_content(message.get("content")),
            usage=collect_usage(usage if isinstance(usage, dict) else None, dict.get),
            raw_response=body,
        )
