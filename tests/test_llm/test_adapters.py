import json

import pytest

from taskpilot.exceptions import LLMAPIError, MalformedRequestError
from taskpilot.llm import (
    AnthropicAdapter,
    CanonicalRequest,
    GenerationSettings,
    GoogleAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ToolDeclaration,
)
from taskpilot.llm.parsing import MAX_TOKENS, SAFETY, STOP

SHELL_TOOL = ToolDeclaration(
    name="shell",
    description="Run a command",
    parameters={"type": "object", "properties": {"command": {"type": "string"}}, "required": ["command"]},
)


def _tool_round_trip_request(tools: list[ToolDeclaration] | None = None) -> CanonicalRequest:
    return CanonicalRequest(
        contents=[
            {"role": "user", "parts": [{"text": "list files"}]},
            {"role": "model", "parts": [
                {"text": "Sure."},
                {"functionCall": {"name": "shell", "args": {"command": "ls"}, "id": "call-1"}},
            ]},
            {"role": "user", "parts": [
                {"functionResponse": {"name": "shell", "response": {"output": "a.txt"}, "id": "call-1"}},
            ]},
        ],
        tools=tools if tools is not None else [SHELL_TOOL],
        system_instruction="Be brief.",
        generation=GenerationSettings(temperature=0.2, top_p=0.9, max_output_tokens=512),
    )


# Google


def test_google_request_body_shape():
    adapter = GoogleAdapter()
    url, headers = adapter.resolve_endpoint("gemini-2.0-flash", "k1")
    body = adapter.convert_request(_tool_round_trip_request(), "gemini-2.0-flash")

    assert url.endswith("/v1beta/models/gemini-2.0-flash:generateContent?key=k1")
    assert headers == {}
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["tools"] == [{"functionDeclarations": [{
        "name": "shell",
        "description": "Run a command",
        "parameters": SHELL_TOOL.parameters,
    }]}]
    assert body["generationConfig"] == {"temperature": 0.2, "topP": 0.9, "maxOutputTokens": 512}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]


def test_google_omits_tools_when_none_are_declared():
    body = GoogleAdapter().convert_request(_tool_round_trip_request(tools=[]), "m")

    assert "tools" not in body


def test_google_merges_adjacent_function_responses():
    request = CanonicalRequest(contents=[
        {"role": "model", "parts": [
            {"functionCall": {"name": "a", "args": {}, "id": "1"}},
            {"functionCall": {"name": "b", "args": {}, "id": "2"}},
        ]},
        {"role": "user", "parts": [{"functionResponse": {"name": "a", "response": {"output": 1}, "id": "1"}}]},
        {"role": "user", "parts": [{"functionResponse": {"name": "b", "response": {"output": 2}, "id": "2"}}]},
    ])

    body = GoogleAdapter().convert_request(request, "m")

    assert len(body["contents"]) == 2
    assert len(body["contents"][1]["parts"]) == 2


def test_google_error_payload_raises_api_error():
    body = json.dumps({"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}})

    with pytest.raises(LLMAPIError) as exc_info:
        GoogleAdapter().parse_response(body)

    assert exc_info.value.status_code == 429


# Malformed requests


@pytest.mark.parametrize("adapter_cls", [GoogleAdapter, OpenAIAdapter, AnthropicAdapter, OllamaAdapter])
def test_call_without_args_object_is_malformed(adapter_cls):
    request = CanonicalRequest(contents=[
        {"role": "model", "parts": [{"functionCall": {"name": "shell", "id": "x"}}]},
    ])

    with pytest.raises(MalformedRequestError):
        adapter_cls().convert_request(request, "m")


@pytest.mark.parametrize("adapter_cls", [GoogleAdapter, OpenAIAdapter, AnthropicAdapter, OllamaAdapter])
def test_response_without_payload_object_is_malformed(adapter_cls):
    request = CanonicalRequest(contents=[
        {"role": "model", "parts": [{"functionCall": {"name": "shell", "args": {}, "id": "x"}}]},
        {"role": "user", "parts": [{"functionResponse": {"name": "shell", "response": "ok", "id": "x"}}]},
    ])

    with pytest.raises(MalformedRequestError):
        adapter_cls().convert_request(request, "m")


@pytest.mark.parametrize("adapter_cls", [GoogleAdapter, OpenAIAdapter, AnthropicAdapter, OllamaAdapter])
def test_tool_without_parameters_is_malformed(adapter_cls):
    request = CanonicalRequest(
        contents=[{"role": "user", "parts": [{"text": "hi"}]}],
        tools=[ToolDeclaration(name="shell", description="", parameters=None)],
    )

    with pytest.raises(MalformedRequestError):
        adapter_cls().convert_request(request, "m")


# OpenAI


def test_openai_messages_pair_tool_results_with_announced_calls():
    body = OpenAIAdapter().convert_request(_tool_round_trip_request(), "gpt-4o-mini")
    messages = body["messages"]

    assert messages[0] == {"role": "system", "content": "Be brief."}
    assert messages[1] == {"role": "user", "content": "list files"}
    assert messages[2]["role"] == "assistant"
    assert messages[2]["tool_calls"][0]["id"] == "call-1"
    assert json.loads(messages[2]["tool_calls"][0]["function"]["arguments"]) == {"command": "ls"}
    assert messages[3] == {"role": "tool", "tool_call_id": "call-1", "content": json.dumps({"output": "a.txt"})}
    assert len(messages) == 4
    assert body["max_tokens"] == 512
    assert body["tools"][0]["function"]["name"] == "shell"


def test_openai_synthesizes_assistant_call_for_unannounced_response():
    request = CanonicalRequest(contents=[
        {"role": "user", "parts": [
            {"functionResponse": {"name": "shell", "response": {"error": "boom"}, "id": "orphan"}},
        ]},
    ])

    messages = OpenAIAdapter().convert_request(request, "m")["messages"]

    assert messages[0]["role"] == "assistant"
    assert messages[0]["tool_calls"][0]["id"] == "orphan"
    assert messages[1]["role"] == "tool"
    assert messages[1]["tool_call_id"] == "orphan"


def test_openai_parses_complete_message():
    body = json.dumps({
        "choices": [{
            "message": {
                "content": None,
                "tool_calls": [{
                    "id": "call_9",
                    "type": "function",
                    "function": {"name": "shell", "arguments": "{\"command\": \"pwd\"}"},
                }],
            },
            "finish_reason": "tool_calls",
        }]
    })

    response = OpenAIAdapter().parse_response(body)

    assert response.finish_reason is None
    assert response.calls[0].id == "call_9"
    assert response.calls[0].args == {"command": "pwd"}


def test_openai_accumulates_streamed_tool_call_fragments():
    chunks = [
        {"choices": [{"delta": {"content": "Let me check."}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "shell", "arguments": "{\"comm"}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "and\": \"ls\"}"}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
    ]
    body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks) + "data: [DONE]\n\n"

    response = OpenAIAdapter().parse_response(body)

    assert response.text == "Let me check."
    assert len(response.calls) == 1
    assert response.calls[0].args == {"command": "ls"}


@pytest.mark.parametrize(
    ("reason", "expected"),
    [("stop", STOP), ("length", MAX_TOKENS), ("content_filter", SAFETY)],
)
def test_openai_finish_reason_mapping(reason, expected):
    body = json.dumps({"choices": [{"message": {"content": "x"}, "finish_reason": reason}]})

    assert OpenAIAdapter().parse_response(body).finish_reason == expected


# Anthropic


def test_anthropic_request_uses_tool_blocks_and_top_level_system():
    adapter = AnthropicAdapter()
    url, headers = adapter.resolve_endpoint("claude-3-5-sonnet-latest", "ak")
    body = adapter.convert_request(_tool_round_trip_request(), "claude-3-5-sonnet-latest")

    assert url.endswith("/messages")
    assert headers["x-api-key"] == "ak"
    assert "anthropic-version" in headers
    assert body["system"] == "Be brief."
    assert body["tools"][0]["input_schema"] == SHELL_TOOL.parameters
    assert body["messages"][1]["content"][1] == {
        "type": "tool_use", "id": "call-1", "name": "shell", "input": {"command": "ls"},
    }
    tool_result = body["messages"][2]["content"][0]
    assert tool_result["type"] == "tool_result"
    assert tool_result["tool_use_id"] == "call-1"
    assert "is_error" not in tool_result


def test_anthropic_default_max_tokens_when_unset():
    request = CanonicalRequest(contents=[{"role": "user", "parts": [{"text": "hi"}]}])

    assert AnthropicAdapter().convert_request(request, "m")["max_tokens"] > 0


def test_anthropic_parses_message_body():
    body = json.dumps({
        "type": "message",
        "content": [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Running it."},
            {"type": "tool_use", "id": "tu_1", "name": "shell", "input": {"command": "ls"}},
        ],
        "stop_reason": "tool_use",
    })

    response = AnthropicAdapter().parse_response(body)

    assert response.text == "Running it."
    assert response.thoughts == ["hmm"]
    assert response.calls[0].id == "tu_1"
    assert response.finish_reason is None


def test_anthropic_parses_event_stream():
    events = [
        {"type": "message_start", "message": {"id": "m"}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
        {"type": "message_stop"},
    ]
    body = "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)

    response = AnthropicAdapter().parse_response(body)

    assert response.text == "Hello"
    assert response.finish_reason == STOP


# Ollama


def test_ollama_request_body_and_tool_messages():
    body = OllamaAdapter().convert_request(_tool_round_trip_request(), "llama3.2")

    assert body["stream"] is False
    assert body["options"]["num_predict"] == 512
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][2]["tool_calls"][0]["function"]["arguments"] == {"command": "ls"}
    assert body["messages"][3]["role"] == "tool"
    assert body["messages"][3]["tool_name"] == "shell"


def test_ollama_parses_ndjson_stream():
    lines = [
        {"message": {"role": "assistant", "content": "Hi"}, "done": False},
        {"message": {"role": "assistant", "content": " there"}, "done": True, "done_reason": "stop"},
    ]
    body = "\n".join(json.dumps(line) for line in lines)

    response = OllamaAdapter().parse_response(body)

    assert response.text == "Hi there"
    assert response.finish_reason == STOP


def test_ollama_length_done_reason_maps_to_max_tokens():
    body = json.dumps({"message": {"content": "partial"}, "done": True, "done_reason": "length"})

    assert OllamaAdapter().parse_response(body).finish_reason == MAX_TOKENS


def test_ollama_error_payload_raises():
    with pytest.raises(LLMAPIError):
        OllamaAdapter().parse_response(json.dumps({"error": "model not found"}))
