"""Broadcaster and observer channel tests."""

from __future__ import annotations

import asyncio
import json

import pytest

from conftest import make_event
from netsniffer.errors import BroadcastError
from netsniffer.events import hydrate_record
from netsniffer.metrics import MetricsRegistry
from netsniffer.models import STORAGE_COLUMNS
from netsniffer.realtime import (
    CONNECTED_MESSAGE,
    KEEPALIVE_FRAME,
    NEW_EVENT_TYPE,
    Broadcaster,
    ObserverChannel,
    format_sse,
)


def _record(event_id: int, **overrides):
    return hydrate_record(event_id, make_event(**overrides))


async def _never_disconnected() -> bool:
    return False


async def _always_disconnected() -> bool:
    return True


def test_subscribe_queues_connected_acknowledgement() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    assert channel in broadcaster
    assert len(broadcaster) == 1
    assert channel.drain() == [CONNECTED_MESSAGE]


def test_publish_delivers_in_order_to_every_channel() -> None:
    broadcaster = Broadcaster()
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()
    first.drain()
    second.drain()

    assert broadcaster.publish(_record(1)) == 2
    assert broadcaster.publish(_record(2)) == 2

    for channel in (first, second):
        messages = channel.drain()
        assert [m["type"] for m in messages] == [NEW_EVENT_TYPE, NEW_EVENT_TYPE]
        assert [m["event"]["id"] for m in messages] == [1, 2]


def test_broadcast_payload_omits_storage_columns() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    channel.drain()
    broadcaster.publish(_record(3, reqHeaders={"Cookie": "a=1"}))

    (message,) = channel.drain()
    event = message["event"]
    assert event["id"] == 3
    assert event["req_headers"] == {"Cookie": "[redacted]"}
    for column in STORAGE_COLUMNS:
        assert column not in event


def test_publish_without_observers_is_a_noop() -> None:
    assert Broadcaster().publish(_record(1)) == 0


def test_closed_channel_is_dropped_on_publish() -> None:
    metrics = MetricsRegistry()
    broadcaster = Broadcaster(metrics=metrics)
    healthy = broadcaster.subscribe()
    broken = broadcaster.subscribe()
    broken.close()

    assert broadcaster.publish(_record(1)) == 1
    assert broken not in broadcaster
    assert healthy in broadcaster
    assert metrics.broadcast_drops_total.get() == 1
    assert metrics.active_observers.get() == 1


def test_full_channel_is_dropped_without_blocking() -> None:
    broadcaster = Broadcaster(max_queue_size=2)
    slow = broadcaster.subscribe()  # connected message occupies one slot
    fast = broadcaster.subscribe()
    fast.drain()

    assert broadcaster.publish(_record(1)) == 2
    fast.drain()
    assert broadcaster.publish(_record(2)) == 1
    assert slow not in broadcaster
    assert fast in broadcaster
    assert slow.closed


def test_channel_write_errors() -> None:
    channel = ObserverChannel("c1", max_queue_size=1)
    channel.write({"type": "x"})
    with pytest.raises(BroadcastError, match="full"):
        channel.write({"type": "y"})
    channel.close()
    with pytest.raises(BroadcastError, match="closed"):
        channel.write({"type": "z"})


def test_unsubscribe_is_idempotent() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    assert broadcaster.unsubscribe(channel) is True
    assert broadcaster.unsubscribe(channel) is False
    assert channel.closed
    assert len(broadcaster) == 0


def test_close_shuts_every_channel() -> None:
    broadcaster = Broadcaster()
    channels = [broadcaster.subscribe() for _ in range(3)]
    broadcaster.close()
    assert len(broadcaster) == 0
    assert all(channel.closed for channel in channels)

    late = broadcaster.subscribe()
    assert late.closed
    assert late not in broadcaster


def test_format_sse() -> None:
    frame = format_sse({"type": "connected"})
    assert frame == 'data: {"type":"connected"}\n\n'


@pytest.mark.asyncio
async def test_channel_get_times_out_then_returns_none_after_close() -> None:
    channel = ObserverChannel("c2")
    with pytest.raises(TimeoutError):
        await channel.get(timeout=0.01)
    channel.write({"type": "x"})
    channel.close()
    assert await channel.get() == {"type": "x"}
    assert await channel.get() is None


@pytest.mark.asyncio
async def test_channel_messages_iterates_until_close() -> None:
    channel = ObserverChannel("c3")
    channel.write({"n": 1})
    channel.write({"n": 2})
    channel.close()
    assert [message async for message in channel.messages()] == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_stream_yields_frames_and_unsubscribes_on_close() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    frames = broadcaster.stream(channel, _never_disconnected, keepalive_seconds=1.0)

    first = await frames.__anext__()
    assert json.loads(first.removeprefix("data: ")) == CONNECTED_MESSAGE

    broadcaster.publish(_record(9))
    second = await frames.__anext__()
    payload = json.loads(second.removeprefix("data: "))
    assert payload["type"] == NEW_EVENT_TYPE
    assert payload["event"]["id"] == 9

    await frames.aclose()
    assert channel not in broadcaster


@pytest.mark.asyncio
async def test_stream_sends_keepalive_until_disconnect() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    channel.drain()

    frames = broadcaster.stream(channel, _never_disconnected, keepalive_seconds=0.01)
    assert await frames.__anext__() == KEEPALIVE_FRAME
    await frames.aclose()

    other = broadcaster.subscribe()
    other.drain()
    frames = broadcaster.stream(other, _always_disconnected, keepalive_seconds=0.01)
    assert [frame async for frame in frames] == []
    assert other not in broadcaster


@pytest.mark.asyncio
async def test_stream_ends_when_broadcaster_closes() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    frames = broadcaster.stream(channel, _never_disconnected, keepalive_seconds=1.0)

    async def collect() -> list[str]:
        return [frame async for frame in frames]

    task = asyncio.create_task(collect())
    await asyncio.sleep(0)
    broadcaster.close()
    collected = await asyncio.wait_for(task, timeout=1.0)
    assert len(collected) == 1


def test_active_observer_gauge_tracks_subscriptions() -> None:
    metrics = MetricsRegistry()
    broadcaster = Broadcaster(metrics=metrics)
    first = broadcaster.subscribe()
    broadcaster.subscribe()
    assert metrics.active_observers.get() == 2
    broadcaster.unsubscribe(first)
    broadcaster.unsubscribe(first)
    assert metrics.active_observers.get() == 1
    broadcaster.close()
    assert metrics.active_observers.get() == 0


@pytest.mark.asyncio
async def test_publish_from_worker_thread_wakes_waiting_reader() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    channel.drain()

    reader = asyncio.create_task(channel.get(timeout=2.0))
    await asyncio.sleep(0)
    delivered = await asyncio.to_thread(broadcaster.publish, _record(11))
    assert delivered == 1

    message = await asyncio.wait_for(reader, timeout=1.0)
    assert message is not None
    assert message["event"]["id"] == 11


@pytest.mark.asyncio
async def test_close_from_worker_thread_ends_stream() -> None:
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    channel.drain()

    reader = asyncio.create_task(channel.get(timeout=2.0))
    await asyncio.sleep(0)
    await asyncio.to_thread(broadcaster.unsubscribe, channel)
    assert await asyncio.wait_for(reader, timeout=1.0) is None
