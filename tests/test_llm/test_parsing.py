import json

import pytest

from taskpilot.exceptions import MalformedResponseError
from taskpilot.llm import GoogleAdapter
from taskpilot.llm.parsing import (
    MALFORMED_FUNCTION_CALL,
    MAX_TOKENS,
    STOP,
    ResponseBuilder,
    iter_payloads,
    parse_json_arguments,
)


def _gemini_chunk(text: str | None = None, finish: str | None = None, call: dict | None = None) -> dict:
    parts = []
    if text is not None:
        parts.append({"text": text})
    if call is not None:
        parts.append({"functionCall": call})
    candidate: dict = {"content": {"role": "model", "parts": parts}}
    if finish:
        candidate["finishReason"] = finish
    return {"candidates": [candidate]}


CHUNKS = [
    _gemini_chunk("Hello"),
    _gemini_chunk(", world"),
    _gemini_chunk(call={"name": "shell", "args": {"command": "ls"}, "id": "c1"}, finish="STOP"),
]


def test_array_and_event_stream_bodies_parse_identically():
    adapter = GoogleAdapter()
    array_body = json.dumps(CHUNKS)
    sse_body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in CHUNKS) + "data: [DONE]\n\n"

    from_array = adapter.parse_response(array_body)
    from_stream = adapter.parse_response(sse_body)

    assert from_array.text_fragments == from_stream.text_fragments == ["Hello", ", world"]
    assert [c.name for c in from_array.calls] == [c.name for c in from_stream.calls] == ["shell"]
    assert from_array.calls[0].args == from_stream.calls[0].args == {"command": "ls"}
    assert from_array.finish_reason == from_stream.finish_reason == STOP


def test_event_stream_skips_comments_bad_lines_and_stops_at_done():
    body = (
        ": keep-alive\n"
        "event: message\n"
        'data: {"a": 1}\n'
        "data: {not json}\n"
        "\n"
        'data: {"a": 2}\n'
        "data: [DONE]\n"
        'data: {"a": 3}\n'
    )

    assert list(iter_payloads(body)) == [{"a": 1}, {"a": 2}]


def test_single_object_body_yields_one_payload():
    assert list(iter_payloads('{"a": 1}')) == [{"a": 1}]


def test_ndjson_only_when_allowed():
    body = '{"a": 1}\n{"a": 2}\n'

    assert list(iter_payloads(body)) == []
    assert list(iter_payloads(body, allow_ndjson=True)) == [{"a": 1}, {"a": 2}]


def test_text_without_finish_reason_synthesizes_stop():
    response = GoogleAdapter().parse_response(json.dumps(_gemini_chunk("done")))

    assert response.finish_reason == STOP
    assert response.text == "done"


def test_last_non_null_finish_reason_wins():
    body = json.dumps([_gemini_chunk("a", finish="STOP"), _gemini_chunk("b", finish="MAX_TOKENS"), _gemini_chunk("c")])

    assert GoogleAdapter().parse_response(body).finish_reason == MAX_TOKENS


def test_calls_without_finish_reason_do_not_synthesize_stop():
    body = json.dumps(_gemini_chunk(call={"name": "shell", "args": {}}))

    response = GoogleAdapter().parse_response(body)

    assert response.finish_reason is None
    assert response.has_calls


def test_nameless_function_call_marks_malformed_finish():
    body = json.dumps(_gemini_chunk(call={"args": {}}))

    response = GoogleAdapter().parse_response(body)

    assert response.calls == []
    assert response.finish_reason == MALFORMED_FUNCTION_CALL


def test_thought_parts_are_kept_apart_from_text():
    body = json.dumps({
        "candidates": [{
            "content": {"parts": [{"text": "pondering", "thought": True}, {"text": "answer"}]},
            "finishReason": "STOP",
        }]
    })

    response = GoogleAdapter().parse_response(body)

    assert response.text == "answer"
    assert response.thoughts == ["pondering"]


@pytest.mark.parametrize("body", ["", "   ", "data: [DONE]\n", "not json at all"])
def test_zero_payloads_is_malformed_response(body):
    with pytest.raises(MalformedResponseError):
        GoogleAdapter().parse_response(body)


def test_builder_without_payloads_raises():
    with pytest.raises(MalformedResponseError):
        ResponseBuilder("google").build()


def test_parse_json_arguments_handles_strings_and_garbage():
    assert parse_json_arguments('{"command": "ls"}') == {"command": "ls"}
    assert parse_json_arguments({"x": 1}) == {"x": 1}
    assert parse_json_arguments("{broken") == {}
    assert parse_json_arguments("[1, 2]") == {}
    assert parse_json_arguments(None) == {}
