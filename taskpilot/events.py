"""Typed events emitted by the turn engine and an asyncio channel to carry them."""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Union

from taskpilot.history import FunctionCall
from taskpilot.tools.registry import ToolResult


@dataclass(frozen=True)
class TextChunk:
    """Visible model text, forwarded as soon as it is parsed."""

    text: str


@dataclass(frozen=True)
class ToolCallRequested:
    call: FunctionCall


@dataclass(frozen=True)
class ToolCallCompleted:
    name: str
    result: ToolResult


@dataclass(frozen=True)
class CredentialsExhausted:
    """Every credential for the active provider was rate limited or rejected."""

    message: str


@dataclass(frozen=True)
class Failed:
    message: str


@dataclass(frozen=True)
class Completed:
    pass


Event = Union[TextChunk, ToolCallRequested, ToolCallCompleted, CredentialsExhausted, Failed, Completed]

TERMINAL_EVENTS = (Completed, Failed, CredentialsExhausted)


def is_terminal(event: Event) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


class EventChannel:
    """Single-consumer event queue.

    Producers ``publish``; the caller iterates ``subscribe()`` once, which
    stops after the first terminal event or when the channel is closed.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError("Event channel is closed")
        await self._queue.put(event)

    def publish_nowait(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError("Event channel is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Close the channel; a pending subscriber drains and stops."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    async def subscribe(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item  # type: ignore[misc]
            if is_terminal(item):  # type: ignore[arg-type]
                return
