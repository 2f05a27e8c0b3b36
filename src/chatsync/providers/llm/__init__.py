from chatsync.config import ProviderConfig

from .base import (
    BaseLLMProvider,
    LLMResponse,
)
from .litellm_provider import LiteLLMProvider
from .llmapi_provider import LlmApiProvider


def build_provider(config: ProviderConfig) -> BaseLLMProvider:
    """Instantiate the provider implementation named by ``config.adapters``."""
    if config.adapters == "llmapi":
        return LlmApiProvider(config)
    return LiteLLMProvider(
        api_key=config.api_key,
        api_base=config.api_base or None,
    )


__all__ = [
    "BaseLLMProvider",
    "LiteLLMProvider",
    "LlmApiProvider",
    "LLMResponse",
    "build_provider",
]
