"""Conversation history: contents, parts and the append-only log."""

import copy
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Union

from taskpilot.exceptions import HistoryError

USER_ROLE = "user"
MODEL_ROLE = "model"
_ROLES = {USER_ROLE, MODEL_ROLE}


def make_call_id(name: str) -> str:
    """Synthesize a correlation id for a call the provider left unnamed.

    Ids are unique within one conversation with high probability; they are
    not meant to be persisted or compared across sessions.
    """
    millis = int(time.time() * 1000)
    return f"{name}-{millis}-{secrets.token_hex(4)}"


@dataclass
class FunctionCall:
    """A tool call requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = make_call_id(self.name)


@dataclass
class FunctionResponse:
    """The model-facing result of one function call."""

    name: str
    response: dict[str, Any]
    id: str


@dataclass
class TextPart:
    text: str
    thought: bool = False


@dataclass
class FunctionCallPart:
    function_call: FunctionCall


@dataclass
class FunctionResponsePart:
    function_response: FunctionResponse


Part = Union[TextPart, FunctionCallPart, FunctionResponsePart]


@dataclass
class Content:
    """One conversation entry: a role plus its ordered parts."""

    role: str
    parts: list[Part] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise HistoryError(f"Unsupported content role: {self.role!r}")

    @property
    def text(self) -> str:
        return "".join(
            part.text for part in self.parts
            if isinstance(part, TextPart) and not part.thought
        )

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [part.function_call for part in self.parts if isinstance(part, FunctionCallPart)]

    @property
    def function_responses(self) -> list[FunctionResponse]:
        return [
            part.function_response for part in self.parts
            if isinstance(part, FunctionResponsePart)
        ]

    def to_wire(self) -> dict[str, Any]:
        """Render in the canonical (Gemini-shaped) request vocabulary."""
        parts: list[dict[str, Any]] = []
        for part in self.parts:
            if isinstance(part, TextPart):
                entry: dict[str, Any] = {"text": part.text}
                if part.thought:
                    entry["thought"] = True
                parts.append(entry)
            elif isinstance(part, FunctionCallPart):
                call = part.function_call
                parts.append({
                    "functionCall": {"name": call.name, "args": dict(call.args), "id": call.id},
                })
            elif isinstance(part, FunctionResponsePart):
                resp = part.function_response
                parts.append({
                    "functionResponse": {
                        "name": resp.name,
                        "response": dict(resp.response),
                        "id": resp.id,
                    },
                })
        return {"role": self.role, "parts": parts}


class ConversationHistory:
    """Append-only log of conversation contents.

    Owned by one conversation session. Only the turn engine and the tool
    execution coordinator append to it; everybody else reads snapshots.
    """

    def __init__(self, contents: list[Content] | None = None):
        self._contents: list[Content] = []
        self._open_calls: dict[str, FunctionCall] = {}
        self._answered: set[str] = set()
        for content in contents or []:
            self.append(content)

    def __len__(self) -> int:
        return len(self._contents)

    def __iter__(self) -> Iterator[Content]:
        return iter(self.snapshot())

    def append(self, content: Content) -> None:
        """Append a content entry, tracking call/response pairing."""
        for call in content.function_calls:
            if call.id in self._open_calls or call.id in self._answered:
                raise HistoryError(f"Duplicate function call id: {call.id}")
        for resp in content.function_responses:
            if resp.id not in self._open_calls:
                raise HistoryError(f"Function response without a pending call: {resp.id}")

        for call in content.function_calls:
            self._open_calls[call.id] = call
        for resp in content.function_responses:
            self._open_calls.pop(resp.id, None)
            self._answered.add(resp.id)
        self._contents.append(content)

    def add_user_text(self, text: str) -> Content:
        content = Content(role=USER_ROLE, parts=[TextPart(text=text)])
        self.append(content)
        return content

    def add_model_parts(self, parts: list[Part]) -> Content:
        content = Content(role=MODEL_ROLE, parts=list(parts))
        self.append(content)
        return content

    def add_function_call(self, call: FunctionCall) -> Content:
        return self.add_model_parts([FunctionCallPart(function_call=call)])

    def add_function_response(self, response: FunctionResponse) -> Content:
        content = Content(
            role=USER_ROLE,
            parts=[FunctionResponsePart(function_response=response)],
        )
        self.append(content)
        return content

    def pending_call_ids(self) -> list[str]:
        """Ids of calls that still wait for their response, in call order."""
        return list(self._open_calls)

    def has_pending_call(self, call_id: str) -> bool:
        return call_id in self._open_calls

    def has_call_id(self, call_id: str) -> bool:
        """True once a call with this id was recorded, answered or not."""
        return call_id in self._open_calls or call_id in self._answered

    def snapshot(self) -> list[Content]:
        """Deep copy of the log; mutating it never touches the history."""
        return copy.deepcopy(self._contents)

    def to_wire(self) -> list[dict[str, Any]]:
        return [content.to_wire() for content in self._contents]

    def clear(self) -> None:
        self._contents.clear()
        self._open_calls.clear()
        self._answered.clear()
