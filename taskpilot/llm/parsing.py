"""Response body parsing shared by all provider adapters.

Provider bodies arrive in three physical shapes: one JSON object, a JSON
array of objects, or a line-oriented event stream where ``data:`` lines
carry payloads and ``[DONE]`` ends the stream. ``iter_payloads`` flattens
all three into a sequence of payload dicts so every adapter only has to
understand a single payload.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Iterator

from taskpilot.exceptions import MalformedResponseError
from taskpilot.history import FunctionCall
from taskpilot.logging import get_logger

log = get_logger(__name__)

STOP = "STOP"
MAX_TOKENS = "MAX_TOKENS"
SAFETY = "SAFETY"
MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass
class ParsedResponse:
    """Everything one provider response contributed to a turn."""

    text_fragments: list[str] = field(default_factory=list)
    calls: list[FunctionCall] = field(default_factory=list)
    finish_reason: str | None = None
    thoughts: list[str] = field(default_factory=list)

    @property
    def text_events(self) -> Iterator[str]:
        """Lazy sequence of user-visible text fragments."""
        return (fragment for fragment in self.text_fragments)

    @property
    def text(self) -> str:
        return "".join(self.text_fragments)

    @property
    def has_calls(self) -> bool:
        return bool(self.calls)


def _decode_line(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        log.warning("Skipping unparseable stream line", error=str(e), line=payload[:200])
        return None


def iter_payloads(raw_body: str | bytes, allow_ndjson: bool = False) -> Iterator[dict[str, Any]]:
    """Yield JSON payload objects from a raw response body.

    Args:
        raw_body: Response body text
        allow_ndjson: Also accept bare JSON lines (newline-delimited JSON)

    Yields:
        Payload dicts in body order
    """
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    body = (raw_body or "").strip()
    if not body:
        return

    if body[0] in "{[":
        try:
            document = json.loads(body)
        except json.JSONDecodeError:
            document = None
        if isinstance(document, dict):
            yield document
            return
        if isinstance(document, list):
            for item in document:
                if isinstance(item, dict):
                    yield item
            return

    for line in body.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            continue
        if stripped.startswith(DATA_PREFIX):
            payload = stripped[len(DATA_PREFIX):].strip()
            if payload == DONE_SENTINEL:
                return
            if not payload:
                continue
        elif allow_ndjson and stripped.startswith("{"):
            payload = stripped
        else:
            # event:, id:, retry: and stray text carry no payload.
            continue
        decoded = _decode_line(payload)
        if isinstance(decoded, dict):
            yield decoded


class ResponseBuilder:
    """Accumulates payload contributions into a ``ParsedResponse``."""

    def __init__(self, provider: str):
        self.provider = provider
        self.payload_count = 0
        self._response = ParsedResponse()

    def saw_payload(self) -> None:
        self.payload_count += 1

    def add_text(self, text: str) -> None:
        if text:
            self._response.text_fragments.append(text)

    def add_thought(self, text: str) -> None:
        if text:
            self._response.thoughts.append(text)

    def add_call(self, name: str, args: Any, call_id: str | None = None) -> None:
        if not isinstance(args, dict):
            args = {}
        self._response.calls.append(FunctionCall(name=name, args=args, id=call_id or ""))

    def set_finish_reason(self, reason: str | None) -> None:
        """Record a finish reason; the last non-null value wins."""
        if reason:
            self._response.finish_reason = reason

    def build(self) -> ParsedResponse:
        if self.payload_count == 0:
            raise MalformedResponseError("No parseable payload in response body", self.provider)
        response = self._response
        if response.finish_reason is None and response.text_fragments and not response.calls:
            response.finish_reason = STOP
        log.debug(
            "Parsed provider response",
            provider=self.provider,
            payloads=self.payload_count,
            text_chars=len(response.text),
            calls=len(response.calls),
            thoughts=len(response.thoughts),
            finish_reason=response.finish_reason,
        )
        return response


def parse_json_arguments(raw: Any) -> dict[str, Any]:
    """Decode tool-call arguments that may arrive as a JSON string or object."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Tool call arguments are not valid JSON", arguments=raw[:200])
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}
