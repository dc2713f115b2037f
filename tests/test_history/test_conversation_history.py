import pytest

from taskpilot.exceptions import HistoryError
from taskpilot.history import (
    Content,
    ConversationHistory,
    FunctionCall,
    FunctionCallPart,
    FunctionResponse,
    TextPart,
)


def test_function_call_gets_generated_id_when_missing():
    call = FunctionCall(name="shell", args={"command": "ls"})

    assert call.id.startswith("shell-")
    assert call.id != FunctionCall(name="shell").id


def test_history_tracks_pending_calls_until_answered():
    history = ConversationHistory()
    history.add_user_text("list files")
    call = FunctionCall(name="shell", args={"command": "ls"}, id="call-1")
    history.add_model_parts([TextPart(text="Listing."), FunctionCallPart(function_call=call)])

    assert history.pending_call_ids() == ["call-1"]
    assert history.has_pending_call("call-1")

    history.add_function_response(
        FunctionResponse(name="shell", response={"output": "a.txt"}, id="call-1")
    )

    assert history.pending_call_ids() == []
    assert len(history) == 3
    assert history.has_call_id("call-1")
    assert not history.has_call_id("call-2")


def test_response_without_pending_call_is_rejected():
    history = ConversationHistory()

    with pytest.raises(HistoryError):
        history.add_function_response(
            FunctionResponse(name="shell", response={"output": ""}, id="missing")
        )


def test_duplicate_call_id_is_rejected():
    history = ConversationHistory()
    history.add_function_call(FunctionCall(name="shell", id="dup"))

    with pytest.raises(HistoryError):
        history.add_function_call(FunctionCall(name="shell", id="dup"))


def test_unknown_role_is_rejected():
    with pytest.raises(HistoryError):
        Content(role="system", parts=[TextPart(text="nope")])


def test_snapshot_is_isolated_from_history():
    history = ConversationHistory()
    history.add_user_text("hello")

    snapshot = history.snapshot()
    snapshot[0].parts.append(TextPart(text="mutated"))
    snapshot.clear()

    assert len(history) == 1
    assert history.snapshot()[0].text == "hello"


def test_to_wire_renders_gemini_shaped_contents():
    history = ConversationHistory()
    history.add_user_text("run it")
    history.add_function_call(FunctionCall(name="shell", args={"command": "make"}, id="c1"))
    history.add_function_response(FunctionResponse(name="shell", response={"error": "boom"}, id="c1"))

    assert history.to_wire() == [
        {"role": "user", "parts": [{"text": "run it"}]},
        {"role": "model", "parts": [{"functionCall": {"name": "shell", "args": {"command": "make"}, "id": "c1"}}]},
        {"role": "user", "parts": [{"functionResponse": {"name": "shell", "response": {"error": "boom"}, "id": "c1"}}]},
    ]


def test_thought_text_is_not_part_of_visible_text():
    content = Content(role="model", parts=[TextPart(text="thinking", thought=True), TextPart(text="answer")])

    assert content.text == "answer"


def test_clear_resets_pairing_state():
    history = ConversationHistory()
    history.add_function_call(FunctionCall(name="shell", id="c1"))

    history.clear()

    assert len(history) == 0
    assert history.pending_call_ids() == []
    history.add_function_call(FunctionCall(name="shell", id="c1"))
