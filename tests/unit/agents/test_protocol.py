"""Tests for the agent event channel."""
import asyncio

import pytest

from patchpilot.agents.protocol import EventChannel


@pytest.mark.asyncio
async def test_channel_drains_items_then_stops():
    channel = EventChannel()
    channel.push(1)
    channel.push(2)
    channel.close()

    assert [item async for item in channel] == [1, 2]
    assert [item async for item in channel] == []


@pytest.mark.asyncio
async def test_push_after_close_is_ignored():
    channel = EventChannel()
    channel.close()
    channel.push(1)

    assert channel.done
    assert [item async for item in channel] == []


@pytest.mark.asyncio
async def test_fail_raises_after_buffered_items():
    channel = EventChannel()
    channel.push("a")
    channel.fail(RuntimeError("crashed"))

    received = []
    with pytest.raises(RuntimeError, match="crashed"):
        async for item in channel:
            received.append(item)
    assert received == ["a"]


@pytest.mark.asyncio
async def test_reader_waits_for_producer():
    channel = EventChannel()

    async def produce():
        await asyncio.sleep(0.01)
        channel.push("late")
        channel.close()

    producer = asyncio.create_task(produce())
    items = [item async for item in channel]
    await producer

    assert items == ["late"]
