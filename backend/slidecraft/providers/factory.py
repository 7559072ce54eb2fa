import logging

from slidecraft.config import settings
from slidecraft.providers.anthropic_provider import AnthropicProvider
from slidecraft.providers.base import BaseLLMProvider
from slidecraft.providers.mock_provider import MockProvider
from slidecraft.providers.openai_provider import OpenAIProvider


logger = logging.getLogger("slidecraft.providers")

# name -> (provider class, settings attribute holding its API key)
PROVIDERS: dict[str, tuple[type[BaseLLMProvider], str]] = {
    "openai": (OpenAIProvider, "openai_api_key"),
    "anthropic": (AnthropicProvider, "anthropic_api_key"),
}


def get_provider(name: str | None = None) -> BaseLLMProvider:
    """Build the provider for a request; a known provider without a key runs as the mock."""
    candidate = (name or settings.default_llm_provider).strip().lower()
    if candidate == MockProvider.name:
        return MockProvider()
    if candidate not in PROVIDERS:
        raise ValueError(f"Unknown LLM provider: {candidate}")

    provider_cls, key_setting = PROVIDERS[candidate]
    api_key = getattr(settings, key_setting)
    if not api_key:
        logger.warning("provider_key_missing provider=%s setting=%s fallback=mock", candidate, key_setting)
        return MockProvider()
    return provider_cls(api_key)
