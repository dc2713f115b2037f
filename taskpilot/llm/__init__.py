"""LLM provider adapters and transport."""

from taskpilot.exceptions import ConfigurationError
from taskpilot.llm.anthropic import AnthropicAdapter
from taskpilot.llm.base import (
    CanonicalRequest,
    GenerationSettings,
    ProviderAdapter,
    ProviderType,
    ToolDeclaration,
    is_loopback_url,
)
from taskpilot.llm.custom import CustomAdapter
from taskpilot.llm.google import GoogleAdapter
from taskpilot.llm.ollama import OllamaAdapter
from taskpilot.llm.openai import OpenAIAdapter
from taskpilot.llm.parsing import ParsedResponse, iter_payloads

_ADAPTERS: dict[ProviderType, type[ProviderAdapter]] = {
    ProviderType.GOOGLE: GoogleAdapter,
    ProviderType.OPENAI: OpenAIAdapter,
    ProviderType.ANTHROPIC: AnthropicAdapter,
    ProviderType.OLLAMA: OllamaAdapter,
    ProviderType.CUSTOM: CustomAdapter,
}

_PROVIDER_ALIASES = {
    "gemini": ProviderType.GOOGLE,
    "chatgpt": ProviderType.OPENAI,
    "claude": ProviderType.ANTHROPIC,
}


def resolve_provider_type(provider: str | ProviderType) -> ProviderType:
    """Normalize a provider name, accepting common aliases."""
    if isinstance(provider, ProviderType):
        return provider
    name = str(provider or "").strip().lower()
    if name in _PROVIDER_ALIASES:
        return _PROVIDER_ALIASES[name]
    try:
        return ProviderType(name)
    except ValueError:
        supported = ", ".join(p.value for p in ProviderType)
        raise ConfigurationError(
            f"Provider '{provider}' not supported. Use one of: {supported}"
        ) from None


def create_adapter(provider: str | ProviderType = "google", base_url: str | None = None) -> ProviderAdapter:
    """Create a provider adapter.

    Args:
        provider: Provider name (google, openai, anthropic, ollama, custom)
        base_url: Optional base URL override

    Returns:
        Configured ProviderAdapter instance
    """
    provider_type = resolve_provider_type(provider)
    return _ADAPTERS[provider_type](base_url or "")


__all__ = [
    "AnthropicAdapter",
    "CanonicalRequest",
    "CustomAdapter",
    "GenerationSettings",
    "GoogleAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ParsedResponse",
    "ProviderAdapter",
    "ProviderType",
    "ToolDeclaration",
    "create_adapter",
    "is_loopback_url",
    "iter_payloads",
    "resolve_provider_type",
]
