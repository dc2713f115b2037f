"""Ollama adapter - native ``/api/chat`` format."""

import json
from typing import Any

from taskpilot.exceptions import LLMAPIError
from taskpilot.llm.base import (
    CanonicalRequest,
    ProviderAdapter,
    ProviderType,
    iter_parts,
    require_call_args,
    require_response_payload,
    role_for_chat,
)
from taskpilot.llm.openai import openai_tools
from taskpilot.llm.parsing import (
    MAX_TOKENS,
    STOP,
    ParsedResponse,
    ResponseBuilder,
    iter_payloads,
    parse_json_arguments,
)

OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
OLLAMA_CHAT_PATH = "/api/chat"


def ollama_chat_url(base_url: str) -> str:
    """Append ``/api/chat`` unless the URL already ends with it."""
    base = (base_url or OLLAMA_NATIVE_BASE_URL).rstrip("/")
    if base.endswith(OLLAMA_CHAT_PATH):
        return base
    return f"{base}{OLLAMA_CHAT_PATH}"


class OllamaAdapter(ProviderAdapter):
    """Direct Ollama API adapter."""

    provider = ProviderType.OLLAMA

    @property
    def self_hosted(self) -> bool:
        return True

    def resolve_endpoint(self, model: str, credential: str) -> tuple[str, dict[str, str]]:
        headers: dict[str, str] = {}
        # Ollama usually doesn't need a key locally.
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return ollama_chat_url(self.base_url), headers

    def _convert_messages(self, request: CanonicalRequest) -> list[dict[str, Any]]:
        """Convert canonical contents to Ollama messages."""
        provider = self.provider.value
        result: list[dict[str, Any]] = []
        if request.system_instruction:
            result.append({"role": "system", "content": request.system_instruction})

        for content in request.contents:
            role = role_for_chat(content.get("role", "user"))
            text = ""
            tool_calls: list[dict[str, Any]] = []
            for part in iter_parts(content):
                if "functionCall" in part:
                    call = part["functionCall"]
                    args = require_call_args(call, provider)
                    tool_calls.append({"function": {"name": call["name"], "arguments": args}})
                elif "functionResponse" in part:
                    response = part["functionResponse"]
                    payload = require_response_payload(response, provider)
                    result.append({
                        "role": "tool",
                        "content": json.dumps(payload),
                        "tool_name": response["name"],
                    })
                elif "text" in part and not part.get("thought"):
                    text += str(part["text"])

            if text or tool_calls:
                entry: dict[str, Any] = {"role": role, "content": text}
                if tool_calls:
                    entry["tool_calls"] = tool_calls
                result.append(entry)
        return result

    def convert_request(self, request: CanonicalRequest, model: str) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": 65536,  # Large context window
        }
        settings = request.generation
        if settings.temperature is not None:
            options["temperature"] = settings.temperature
        if settings.top_p is not None:
            options["top_p"] = settings.top_p
        if settings.max_output_tokens:
            options["num_predict"] = settings.max_output_tokens

        body: dict[str, Any] = {
            "model": model,
            "messages": self._convert_messages(request),
            "stream": False,
            "options": options,
        }
        if request.tools:
            body["tools"] = openai_tools(request, self.provider.value)
        return body

    def parse_response(self, raw_body: str) -> ParsedResponse:
        builder = ResponseBuilder(self.provider.value)
        done = False
        done_reason = ""
        for payload in iter_payloads(raw_body, allow_ndjson=True):
            if payload.get("error"):
                raise LLMAPIError(f"Ollama API error: {payload['error']}")
            builder.saw_payload()

            message = payload.get("message") or {}
            builder.add_text(str(message.get("content") or ""))
            builder.add_thought(str(message.get("thinking") or ""))
            for tool_call in message.get("tool_calls") or []:
                function = tool_call.get("function") or {}
                if not function.get("name"):
                    continue
                builder.add_call(
                    function["name"],
                    parse_json_arguments(function.get("arguments")),
                    tool_call.get("id"),
                )
            if payload.get("done"):
                done = True
                done_reason = str(payload.get("done_reason") or "")

        response = builder.build()
        if done and not response.calls:
            response.finish_reason = MAX_TOKENS if done_reason == "length" else STOP
        return response
