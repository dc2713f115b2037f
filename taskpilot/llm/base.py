"""Provider-agnostic request types and the adapter interface."""

import ipaddress
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from taskpilot.exceptions import MalformedRequestError
from taskpilot.history import Content
from taskpilot.llm.parsing import ParsedResponse

OLLAMA_DEFAULT_PORT = 11434


class ProviderType(str, Enum):
    """Closed set of supported provider wire formats."""

    GOOGLE = "google"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    CUSTOM = "custom"


@dataclass
class ToolDeclaration:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any] | None  # JSON Schema

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolDeclaration":
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description", "") or ""),
            parameters=data.get("parameters"),
        )


@dataclass
class GenerationSettings:
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None


@dataclass
class CanonicalRequest:
    """Provider-agnostic request.

    ``contents`` holds Gemini-shaped dicts (``role`` + ``parts`` with
    ``text`` / ``functionCall`` / ``functionResponse``); ``Content`` objects
    are rendered on construction.
    """

    contents: list[dict[str, Any]] = field(default_factory=list)
    tools: list[ToolDeclaration] = field(default_factory=list)
    system_instruction: str = ""
    generation: GenerationSettings = field(default_factory=GenerationSettings)

    def __post_init__(self) -> None:
        self.contents = [
            item.to_wire() if isinstance(item, Content) else item
            for item in self.contents
        ]
        self.tools = [
            item if isinstance(item, ToolDeclaration) else ToolDeclaration.from_dict(item)
            for item in self.tools
        ]

    def prompt_size(self) -> int:
        """Rough character count of everything sent to the model."""
        size = len(self.system_instruction)
        for content in self.contents:
            for part in content.get("parts") or []:
                if isinstance(part, dict):
                    size += len(str(part.get("text", "")))
                    size += len(str(part.get("functionResponse", "")))
        return size


def is_loopback_url(url: str) -> bool:
    """Best-effort check whether a URL points at a self-hosted model server."""
    cleaned = str(url or "").strip()
    if not cleaned:
        return False
    if "://" not in cleaned:
        cleaned = f"http://{cleaned}"
    try:
        parsed = urlparse(cleaned)
        port = parsed.port
    except ValueError:
        return False

    host = (parsed.hostname or "").lower()
    if port == OLLAMA_DEFAULT_PORT:
        return True
    if host == "localhost" or host.endswith(".localhost") or "ollama" in host:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def role_for_chat(role: str) -> str:
    """Map canonical roles onto chat-completion roles."""
    return "assistant" if role == "model" else role


def iter_parts(content: dict[str, Any]) -> list[dict[str, Any]]:
    parts = content.get("parts")
    if parts is None:
        return []
    if not isinstance(parts, list):
        raise MalformedRequestError("content parts must be a list")
    return [part for part in parts if isinstance(part, dict)]


def require_call_args(call: Any, provider: str) -> dict[str, Any]:
    """Return a function call's arguments or fail the conversion."""
    if not isinstance(call, dict) or not call.get("name"):
        raise MalformedRequestError("function call without a name", provider)
    args = call.get("args")
    if not isinstance(args, dict):
        raise MalformedRequestError(
            f"function call '{call['name']}' has no args object", provider
        )
    return args


def require_response_payload(response: Any, provider: str) -> dict[str, Any]:
    """Return a function response's payload or fail the conversion."""
    if not isinstance(response, dict) or not response.get("name"):
        raise MalformedRequestError("function response without a name", provider)
    payload = response.get("response")
    if not isinstance(payload, dict):
        raise MalformedRequestError(
            f"function response '{response['name']}' has no response object", provider
        )
    return payload


def require_parameters(tool: ToolDeclaration, provider: str) -> dict[str, Any]:
    """Return a tool's JSON schema or fail the conversion."""
    if not tool.name:
        raise MalformedRequestError("tool declaration without a name", provider)
    if not isinstance(tool.parameters, dict):
        raise MalformedRequestError(
            f"tool declaration '{tool.name}' has no parameters object", provider
        )
    return tool.parameters


class ProviderAdapter(ABC):
    """Translate canonical requests to one provider's wire format and back."""

    provider: ProviderType

    def __init__(self, base_url: str = ""):
        self.base_url = (base_url or "").rstrip("/")

    @property
    def self_hosted(self) -> bool:
        """Whether requests go to a local model server (slow generation, no key)."""
        return False

    @property
    def requires_credential(self) -> bool:
        return not self.self_hosted

    @abstractmethod
    def resolve_endpoint(self, model: str, credential: str) -> tuple[str, dict[str, str]]:
        """Return the request URL and provider-specific headers."""
        pass

    @abstractmethod
    def convert_request(self, request: CanonicalRequest, model: str) -> dict[str, Any]:
        """Render a canonical request as the provider's JSON body.

        Raises:
            MalformedRequestError if a nested required field is missing
        """
        pass

    @abstractmethod
    def parse_response(self, raw_body: str) -> ParsedResponse:
        """Parse a raw response body.

        Raises:
            MalformedResponseError if nothing parseable was found
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"
