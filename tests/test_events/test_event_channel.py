import asyncio

import pytest

from taskpilot.events import (
    Completed,
    CredentialsExhausted,
    EventChannel,
    Failed,
    TextChunk,
    is_terminal,
)


async def collect(channel: EventChannel) -> list:
    return [event async for event in channel.subscribe()]


def test_terminal_events():
    assert is_terminal(Completed())
    assert is_terminal(Failed("boom"))
    assert is_terminal(CredentialsExhausted("all keys rate limited"))
    assert not is_terminal(TextChunk("hi"))


@pytest.mark.asyncio
async def test_subscription_stops_after_terminal_event():
    channel = EventChannel()
    await channel.publish(TextChunk("a"))
    await channel.publish(TextChunk("b"))
    await channel.publish(Completed())
    await channel.publish(TextChunk("after"))

    events = await collect(channel)

    assert events == [TextChunk("a"), TextChunk("b"), Completed()]


@pytest.mark.asyncio
async def test_close_ends_a_waiting_subscriber():
    channel = EventChannel()
    consumer = asyncio.create_task(collect(channel))

    channel.publish_nowait(TextChunk("partial"))
    await asyncio.sleep(0)
    channel.close()

    assert await asyncio.wait_for(consumer, timeout=1) == [TextChunk("partial")]
    assert channel.closed


@pytest.mark.asyncio
async def test_publish_after_close_raises():
    channel = EventChannel()
    channel.close()
    channel.close()

    with pytest.raises(RuntimeError):
        await channel.publish(TextChunk("late"))
    with pytest.raises(RuntimeError):
        channel.publish_nowait(Completed())
