"""Tests for the completion providers (HTTP and LiteLLM calls are mocked)."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from chatsync.config import ProviderConfig
from chatsync.errors import CompletionServiceError
from chatsync.providers.llm import (
    LiteLLMProvider,
    LlmApiProvider,
    build_provider,
)

MESSAGES = [{"role": "system", "content": "be nice"}, {"role": "user", "content": "hola"}]


def _groq(**overrides):
    values = dict(
        name="Groq",
        slug="groq",
        api_key="gsk-test",
        api_base="https://api.groq.test/openai/v1",
        enabled=True,
        adapters="llmapi",
    )
    values.update(overrides)
    return ProviderConfig(**values)


class TestBuildProvider:
    def test_llmapi_adapter(self):
        assert isinstance(build_provider(_groq()), LlmApiProvider)

    def test_litellm_is_default(self):
        provider = build_provider(_groq(adapters="litellm"))
        assert isinstance(provider, LiteLLMProvider)


class TestLlmApiProvider:
    @pytest.mark.asyncio
    async def test_posts_openai_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"role": "assistant", "content": " ¡Hola! "}}],
                    "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
                },
            )

        provider = LlmApiProvider(_groq(), transport=httpx.MockTransport(handler))

        response = await provider.generate_response(
            "groq/llama3-8b", MESSAGES, max_tokens=150, temperature=0.7
        )

        assert seen["url"] == "https://api.groq.test/openai/v1/chat/completions"
        assert seen["auth"] == "Bearer gsk-test"
        assert seen["body"]["model"] == "llama3-8b"
        assert seen["body"]["max_tokens"] == 150
        assert response.content == "¡Hola!"
        assert response.usage["total_tokens"] == 7

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(503, json={"error": "overloaded"})
        )
        provider = LlmApiProvider(_groq(), transport=transport)

        with pytest.raises(CompletionServiceError, match="503"):
            await provider.generate_response("llama3-8b", MESSAGES)

    @pytest.mark.asyncio
    async def test_no_choices_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []}))
        provider = LlmApiProvider(_groq(), transport=transport)

        with pytest.raises(CompletionServiceError, match="no choices"):
            await provider.generate_response("llama3-8b", MESSAGES)

    @pytest.mark.asyncio
    async def test_empty_content_is_none(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, json={"choices": [{"message": {"content": "  "}}]}
            )
        )
        provider = LlmApiProvider(_groq(), transport=transport)

        response = await provider.generate_response("llama3-8b", MESSAGES)

        assert response.content is None
        assert response.has_content is False


class TestLiteLLMProvider:
    @pytest.mark.asyncio
    async def test_maps_model_response(self):
        fake = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="hey"))],
            usage=SimpleNamespace(prompt_tokens=3, completion_tokens=1, total_tokens=4),
        )
        with patch(
            "chatsync.providers.llm.litellm_provider.litellm.acompletion",
            new=AsyncMock(return_value=fake),
        ) as acompletion:
            provider = LiteLLMProvider(api_key="sk-test")
            response = await provider.generate_response("gpt-4o-mini", MESSAGES, max_tokens=50)

        kwargs = acompletion.call_args.kwargs
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["max_tokens"] == 50
        assert response.content == "hey"
        assert response.usage == {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}

    @pytest.mark.asyncio
    async def test_failure_is_wrapped(self):
        with patch(
            "chatsync.providers.llm.litellm_provider.litellm.acompletion",
            new=AsyncMock(side_effect=RuntimeError("connection reset")),
        ):
            provider = LiteLLMProvider()
            with pytest.raises(CompletionServiceError, match="connection reset"):
                await provider.generate_response("gpt-4o-mini", MESSAGES)
