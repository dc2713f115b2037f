"""Anthropic messages API adapter."""

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

ANTHROPIC_API_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, str | None] = {
    "end_turn": STOP,
    "stop_sequence": STOP,
    "max_tokens": MAX_TOKENS,
    "tool_use": None,
    "refusal": SAFETY,
}


def map_anthropic_stop_reason(reason: str | None) -> str | None:
    if not reason:
        return None
    if reason in _STOP_REASONS:
        return _STOP_REASONS[reason]
    return reason.upper()


class AnthropicAdapter(ProviderAdapter):
    """Anthropic ``/messages`` API."""

    provider = ProviderType.ANTHROPIC

    def resolve_endpoint(self, model: str, credential: str) -> tuple[str, dict[str, str]]:
        base = self.base_url or ANTHROPIC_API_BASE_URL
        headers = {
            "x-api-key": credential,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        return f"{base}/messages", headers

    def _convert_messages(self, request: CanonicalRequest) -> list[dict[str, Any]]:
        provider = self.provider.value
        messages: list[dict[str, Any]] = []
        for content in request.contents:
            role = role_for_chat(content.get("role", "user"))
            blocks: list[dict[str, Any]] = []
            for part in iter_parts(content):
                if "functionCall" in part:
                    call = part["functionCall"]
                    args = require_call_args(call, provider)
                    blocks.append({
                        "type": "tool_use",
                        "id": call.get("id", ""),
                        "name": call["name"],
                        "input": args,
                    })
                elif "functionResponse" in part:
                    response = part["functionResponse"]
                    payload = require_response_payload(response, provider)
                    block: dict[str, Any] = {
                        "type": "tool_result",
                        "tool_use_id": response.get("id", ""),
                        "content": json.dumps(payload),
                    }
                    if "error" in payload:
                        block["is_error"] = True
                    blocks.append(block)
                elif "text" in part and not part.get("thought"):
                    if part["text"]:
                        blocks.append({"type": "text", "text": str(part["text"])})
            if not blocks:
                continue
            # Roles must alternate, so consecutive entries share one message.
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})
        return messages

    def convert_request(self, request: CanonicalRequest, model: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": request.generation.max_output_tokens or DEFAULT_MAX_TOKENS,
            "messages": self._convert_messages(request),
        }
        if request.system_instruction:
            body["system"] = request.system_instruction
        if request.tools:
            tools = []
            for tool in request.tools:
                parameters = require_parameters(tool, self.provider.value)
                tools.append({
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": parameters,
                })
            body["tools"] = tools
        if request.generation.temperature is not None:
            body["temperature"] = request.generation.temperature
        return body

    def parse_response(self, raw_body: str) -> ParsedResponse:
        builder = ResponseBuilder(self.provider.value)
        # Streaming content blocks, keyed by block index.
        blocks: dict[int, dict[str, Any]] = {}

        for payload in iter_payloads(raw_body):
            kind = payload.get("type")
            if kind == "error":
                error = payload.get("error") or {}
                raise LLMAPIError(f"Provider error: {error.get('message') or error}")
            builder.saw_payload()

            if kind == "message" or (kind is None and "content" in payload):
                for block in payload.get("content") or []:
                    self._apply_block(builder, block)
                builder.set_finish_reason(map_anthropic_stop_reason(payload.get("stop_reason")))
            elif kind == "content_block_start":
                block = dict(payload.get("content_block") or {})
                block.setdefault("text", "")
                block.setdefault("thinking", "")
                block["partial_json"] = ""
                blocks[int(payload.get("index", len(blocks)))] = block
            elif kind == "content_block_delta":
                block = blocks.setdefault(
                    int(payload.get("index", 0)),
                    {"type": "text", "text": "", "thinking": "", "partial_json": ""},
                )
                delta = payload.get("delta") or {}
                delta_type = delta.get("type")
                if delta_type == "text_delta":
                    block["text"] += delta.get("text", "")
                elif delta_type == "thinking_delta":
                    block["thinking"] += delta.get("thinking", "")
                elif delta_type == "input_json_delta":
                    block["partial_json"] += delta.get("partial_json", "")
            elif kind == "message_delta":
                delta = payload.get("delta") or {}
                builder.set_finish_reason(map_anthropic_stop_reason(delta.get("stop_reason")))

        for index in sorted(blocks):
            block = blocks[index]
            if block.get("type") == "tool_use" and block.get("partial_json"):
                block["input"] = parse_json_arguments(block["partial_json"])
            self._apply_block(builder, block)
        return builder.build()

    @staticmethod
    def _apply_block(builder: ResponseBuilder, block: Any) -> None:
        if not isinstance(block, dict):
            return
        block_type = block.get("type")
        if block_type == "text":
            builder.add_text(str(block.get("text") or ""))
        elif block_type == "thinking":
            builder.add_thought(str(block.get("thinking") or ""))
        elif block_type == "tool_use" and block.get("name"):
            builder.add_call(block["name"], parse_json_arguments(block.get("input")), block.get("id"))
