"""OpenAI chat-completions adapter."""

import json
from typing import Any

from taskpilot.exceptions import LLMAPIError
from taskpilot.llm.base import (
    CanonicalRequest,
    ProviderAdapter,
    ProviderType,
    iter_parts,
    require_call_args,
    require_parameters,
    require_response_payload,
    role_for_chat,
)
from taskpilot.llm.parsing import (
    MAX_TOKENS,
    SAFETY,
    STOP,
    ParsedResponse,
    ResponseBuilder,
    iter_payloads,
    parse_json_arguments,
)

OPENAI_API_BASE_URL = "https://api.openai.com/v1"

_FINISH_REASONS: dict[str, str | None] = {
    "stop": STOP,
    "length": MAX_TOKENS,
    "content_filter": SAFETY,
    "tool_calls": None,
    "function_call": None,
}


def map_openai_finish_reason(reason: str | None) -> str | None:
    if not reason:
        return None
    if reason in _FINISH_REASONS:
        return _FINISH_REASONS[reason]
    return reason.upper()


def openai_tools(request: CanonicalRequest, provider: str) -> list[dict[str, Any]]:
    """Render tool declarations in the ``{"type": "function"}`` shape."""
    result = []
    for tool in request.tools:
        parameters = require_parameters(tool, provider)
        result.append({
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": parameters,
            },
        })
    return result


class OpenAIAdapter(ProviderAdapter):
    """OpenAI ``/chat/completions`` API."""

    provider = ProviderType.OPENAI

    def resolve_endpoint(self, model: str, credential: str) -> tuple[str, dict[str, str]]:
        base = self.base_url or OPENAI_API_BASE_URL
        return f"{base}/chat/completions", {"Authorization": f"Bearer {credential}"}

    def _convert_messages(self, request: CanonicalRequest) -> list[dict[str, Any]]:
        """Convert canonical contents to chat messages.

        Every ``tool`` message must follow an assistant message announcing
        its call id; responses whose call was never announced get a
        synthetic assistant message carrying the call.
        """
        provider = self.provider.value
        messages: list[dict[str, Any]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})

        announced: set[str] = set()
        for content in request.contents:
            role = role_for_chat(content.get("role", "user"))
            text = ""
            tool_calls: list[dict[str, Any]] = []
            for part in iter_parts(content):
                if "functionCall" in part:
                    call = part["functionCall"]
                    args = require_call_args(call, provider)
                    call_id = call.get("id", "")
                    announced.add(call_id)
                    tool_calls.append({
                        "id": call_id,
                        "type": "function",
                        "function": {"name": call["name"], "arguments": json.dumps(args)},
                    })
                elif "functionResponse" in part:
                    response = part["functionResponse"]
                    payload = require_response_payload(response, provider)
                    call_id = response.get("id", "")
                    if call_id not in announced:
                        messages.append({
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [{
                                "id": call_id,
                                "type": "function",
                                "function": {"name": response["name"], "arguments": "{}"},
                            }],
                        })
                        announced.add(call_id)
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call_id,
                        "content": json.dumps(payload),
                    })
                elif "text" in part and not part.get("thought"):
                    text += str(part["text"])

            if text or tool_calls:
                message: dict[str, Any] = {"role": role, "content": text or None}
                if tool_calls:
                    message["tool_calls"] = tool_calls
                messages.append(message)
        return messages

    def convert_request(self, request: CanonicalRequest, model: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": self._convert_messages(request),
            "stream": False,
        }
        if request.tools:
            body["tools"] = openai_tools(request, self.provider.value)
        settings = request.generation
        if settings.temperature is not None:
            body["temperature"] = settings.temperature
        if settings.top_p is not None:
            body["top_p"] = settings.top_p
        if settings.max_output_tokens:
            body["max_tokens"] = settings.max_output_tokens
        return body

    def parse_response(self, raw_body: str) -> ParsedResponse:
        builder = ResponseBuilder(self.provider.value)
        # Streamed tool calls arrive as fragments keyed by index.
        partial_calls: dict[int, dict[str, Any]] = {}

        for payload in iter_payloads(raw_body):
            error = payload.get("error")
            if isinstance(error, dict):
                raise LLMAPIError(f"Provider error: {error.get('message') or error}")
            builder.saw_payload()

            choices = payload.get("choices") or []
            if not choices or not isinstance(choices[0], dict):
                continue
            choice = choices[0]

            if isinstance(choice.get("message"), dict):
                message = choice["message"]
                builder.add_text(str(message.get("content") or ""))
                builder.add_thought(str(message.get("reasoning_content") or ""))
                for tool_call in message.get("tool_calls") or []:
                    function = tool_call.get("function") or {}
                    if not function.get("name"):
                        continue
                    builder.add_call(
                        function["name"],
                        parse_json_arguments(function.get("arguments")),
                        tool_call.get("id"),
                    )
            elif isinstance(choice.get("delta"), dict):
                delta = choice["delta"]
                builder.add_text(str(delta.get("content") or ""))
                builder.add_thought(str(delta.get("reasoning_content") or ""))
                for fragment in delta.get("tool_calls") or []:
                    index = int(fragment.get("index", len(partial_calls)))
                    entry = partial_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
                    function = fragment.get("function") or {}
                    entry["id"] = fragment.get("id") or entry["id"]
                    entry["name"] = function.get("name") or entry["name"]
                    entry["arguments"] += function.get("arguments") or ""

            builder.set_finish_reason(map_openai_finish_reason(choice.get("finish_reason")))

        for index in sorted(partial_calls):
            entry = partial_calls[index]
            if entry["name"]:
                builder.add_call(entry["name"], parse_json_arguments(entry["arguments"]), entry["id"])
        return builder.build()
