"""Generic adapter for user-configured endpoints."""

from typing import Any

from taskpilot.exceptions import ConfigurationError
from taskpilot.llm.base import CanonicalRequest, ProviderAdapter, ProviderType, is_loopback_url
from taskpilot.llm.google import GoogleAdapter
from taskpilot.llm.ollama import OllamaAdapter, ollama_chat_url
from taskpilot.llm.parsing import ParsedResponse


class CustomAdapter(ProviderAdapter):
    """Endpoint taken verbatim from configuration.

    Self-hosted URLs speak the Ollama protocol; anything else is treated as
    a full endpoint URL speaking the Gemini wire format.
    """

    provider = ProviderType.CUSTOM

    def __init__(self, base_url: str = ""):
        super().__init__(base_url)
        self._delegate: ProviderAdapter = (
            OllamaAdapter(self.base_url) if self.self_hosted else GoogleAdapter(self.base_url)
        )

    @property
    def self_hosted(self) -> bool:
        return is_loopback_url(self.base_url)

    def resolve_endpoint(self, model: str, credential: str) -> tuple[str, dict[str, str]]:
        if not self.base_url:
            raise ConfigurationError("Custom provider requires model.base_url")
        headers: dict[str, str] = {}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        if self.self_hosted:
            return ollama_chat_url(self.base_url), headers
        return self.base_url, headers

    def convert_request(self, request: CanonicalRequest, model: str) -> dict[str, Any]:
        return self._delegate.convert_request(request, model)

    def parse_response(self, raw_body: str) -> ParsedResponse:
        return self._delegate.parse_response(raw_body)
