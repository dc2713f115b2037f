"""Google Gemini adapter; the canonical request vocabulary is Gemini's own."""

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
)
from taskpilot.llm.parsing import (
    MALFORMED_FUNCTION_CALL,
    ParsedResponse,
    ResponseBuilder,
    iter_payloads,
)

GOOGLE_API_BASE_URL = "https://generativelanguage.googleapis.com"


def convert_gemini_contents(
    contents: list[dict[str, Any]], provider: str
) -> list[dict[str, Any]]:
    """Validate canonical contents and merge adjacent same-role entries."""
    merged: list[dict[str, Any]] = []
    for content in contents:
        role = content.get("role", "user")
        parts: list[dict[str, Any]] = []
        for part in iter_parts(content):
            if "functionCall" in part:
                call = part["functionCall"]
                args = require_call_args(call, provider)
                entry = {"name": call["name"], "args": args}
                if call.get("id"):
                    entry["id"] = call["id"]
                parts.append({"functionCall": entry})
            elif "functionResponse" in part:
                response = part["functionResponse"]
                payload = require_response_payload(response, provider)
                entry = {"name": response["name"], "response": payload}
                if response.get("id"):
                    entry["id"] = response["id"]
                parts.append({"functionResponse": entry})
            elif "text" in part:
                parts.append(dict(part))
        if not parts:
            continue
        if merged and merged[-1]["role"] == role:
            merged[-1]["parts"].extend(parts)
        else:
            merged.append({"role": role, "parts": parts})
    return merged


class GoogleAdapter(ProviderAdapter):
    """Gemini ``generateContent`` REST API."""

    provider = ProviderType.GOOGLE

    def resolve_endpoint(self, model: str, credential: str) -> tuple[str, dict[str, str]]:
        base = self.base_url or GOOGLE_API_BASE_URL
        url = f"{base}/v1beta/models/{model}:generateContent?key={credential}"
        return url, {}

    def convert_request(self, request: CanonicalRequest, model: str) -> dict[str, Any]:
        provider = self.provider.value
        body: dict[str, Any] = {
            "contents": convert_gemini_contents(request.contents, provider),
        }
        if request.tools:
            declarations = []
            for tool in request.tools:
                parameters = require_parameters(tool, provider)
                declarations.append({
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": parameters,
                })
            body["tools"] = [{"functionDeclarations": declarations}]
        if request.system_instruction:
            body["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}

        generation: dict[str, Any] = {}
        settings = request.generation
        if settings.temperature is not None:
            generation["temperature"] = settings.temperature
        if settings.top_p is not None:
            generation["topP"] = settings.top_p
        if settings.max_output_tokens:
            generation["maxOutputTokens"] = settings.max_output_tokens
        if generation:
            body["generationConfig"] = generation
        return body

    def parse_response(self, raw_body: str) -> ParsedResponse:
        builder = ResponseBuilder(self.provider.value)
        for payload in iter_payloads(raw_body):
            apply_gemini_payload(builder, payload)
        return builder.build()


def apply_gemini_payload(builder: ResponseBuilder, payload: dict[str, Any]) -> None:
    """Fold one Gemini payload (one stream chunk) into the builder."""
    error = payload.get("error")
    if isinstance(error, dict):
        raise LLMAPIError(
            f"Provider error: {error.get('message') or error.get('status') or error}",
            status_code=error.get("code") if isinstance(error.get("code"), int) else None,
        )
    builder.saw_payload()

    candidates = payload.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return
    candidate = candidates[0]
    builder.set_finish_reason(candidate.get("finishReason"))

    content = candidate.get("content") or {}
    for part in content.get("parts") or []:
        if not isinstance(part, dict):
            continue
        if "text" in part:
            if part.get("thought"):
                builder.add_thought(str(part["text"]))
            else:
                builder.add_text(str(part["text"]))
        if "functionCall" in part:
            call = part["functionCall"] or {}
            name = call.get("name")
            if not name:
                builder.set_finish_reason(MALFORMED_FUNCTION_CALL)
                continue
            builder.add_call(name, call.get("args"), call.get("id"))
