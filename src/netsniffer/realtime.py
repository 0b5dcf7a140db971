"""Live fan-out of stored events to connected observers.

Each observer owns an :class:`ObserverChannel`, a bounded in-memory queue
drained by its Server-Sent Events response. :meth:`Broadcaster.publish`
never blocks and never raises: a channel that is closed or cannot keep up
is dropped from the registry and the publisher carries on. Delivery is
best-effort; there is no replay for observers that connect late or fall
behind.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from threading import Lock
from typing import Any
from uuid import uuid4

from netsniffer.errors import BroadcastError
from netsniffer.logging import get_logger
from netsniffer.metrics import MetricsRegistry
from netsniffer.models import EventRecord

logger = get_logger(__name__)

CONNECTED_MESSAGE: dict[str, Any] = {"type": "connected"}
NEW_EVENT_TYPE = "new-event"
KEEPALIVE_FRAME = ": keepalive\n\n"

_CLOSED = object()


def format_sse(message: dict[str, Any]) -> str:
    """Render one message as a Server-Sent Events data frame."""
    return f"data: {json.dumps(message, separators=(',', ':'), default=str)}\n\n"


def build_event_message(record: EventRecord) -> dict[str, Any]:
    """Wrap a stored record in the ``new-event`` envelope."""
    return {
        "type": NEW_EVENT_TYPE,
        "event": record.to_wire(include_storage_columns=False),
    }


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class ObserverChannel:
    """Single-reader FIFO queue feeding one live observer.

    The queue belongs to the event loop the channel was created on. Writers
    on other threads (a synchronous ``IngestionService.ingest`` call, for
    instance) hand their message to that loop with ``call_soon_threadsafe``
    so a reader blocked in :meth:`get` is woken up.
    """

    def __init__(
        self,
        channel_id: str,
        max_queue_size: int = 1000,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.channel_id = channel_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._capacity = max_queue_size
        self._loop = loop
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Any) -> None:
        loop = self._loop
        if loop is None or loop is _running_loop():
            self._queue.put_nowait(item)
            return
        loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def write(self, message: dict[str, Any]) -> None:
        """Enqueue a message without blocking.

        Raises:
            BroadcastError: if the channel is closed, its queue is full or
                its event loop has shut down.
        """
        if self._closed:
            raise BroadcastError(f"observer {self.channel_id} is closed")
        if self._queue.qsize() >= self._capacity:
            raise BroadcastError(f"observer {self.channel_id} queue is full")
        try:
            self._put(message)
        except RuntimeError as exc:
            raise BroadcastError(f"observer {self.channel_id} loop is closed") from exc

    def close(self) -> None:
        """Mark the channel closed and wake a pending reader."""
        if self._closed:
            return
        self._closed = True
        # A stopped loop has no reader left to wake.
        with suppress(RuntimeError):
            self._put(_CLOSED)

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Return the next message, or None once the channel is closed.

        Raises:
            TimeoutError: if ``timeout`` elapses with nothing queued.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> list[dict[str, Any]]:
        """Return every message queued right now without waiting."""
        messages: list[dict[str, Any]] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            messages.append(item)
        return messages

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield queued messages until the channel is closed."""
        while True:
            message = await self.get()
            if message is None:
                return
            yield message


class Broadcaster:
    """Registry of live observer channels.

    Owned by the application instance; the registry is guarded by a lock so
    subscribe/unsubscribe are safe while a publish is iterating. Writes
    happen outside the lock on a snapshot of the registry.
    """

    def __init__(
        self,
        *,
        max_queue_size: int = 1000,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.max_queue_size = max_queue_size
        self.metrics = metrics or MetricsRegistry()
        self._channels: dict[str, ObserverChannel] = {}
        self._lock = Lock()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def __contains__(self, channel: object) -> bool:
        if not isinstance(channel, ObserverChannel):
            return False
        with self._lock:
            return self._channels.get(channel.channel_id) is channel

    def subscribe(self) -> ObserverChannel:
        """Register a new observer and queue its ``connected`` acknowledgement.

        Called from a coroutine, the channel is bound to the running loop so
        publishers on other threads can still wake its reader.
        """
        channel = ObserverChannel(uuid4().hex, self.max_queue_size, loop=_running_loop())
        channel.write(dict(CONNECTED_MESSAGE))
        with self._lock:
            if self._closed:
                channel.close()
                return channel
            self._channels[channel.channel_id] = channel
            count = len(self._channels)
        self.metrics.active_observers.inc()
        logger.info("observer_connected", channel_id=channel.channel_id, observers=count)
        return channel

    def unsubscribe(self, channel: ObserverChannel) -> bool:
        """Remove and close a channel. Returns False if it was not registered."""
        with self._lock:
            removed = self._channels.pop(channel.channel_id, None) is not None
            count = len(self._channels)
        channel.close()
        if removed:
            self.metrics.active_observers.dec()
            logger.info(
                "observer_disconnected", channel_id=channel.channel_id, observers=count
            )
        return removed

    def publish(self, record: EventRecord) -> int:
        """Deliver a record to every open channel; returns the delivery count.

        Fire-and-forget: per-channel failures drop that channel and are
        logged, never raised.
        """
        message = build_event_message(record)
        with self._lock:
            channels = list(self._channels.values())

        delivered = 0
        failed: list[ObserverChannel] = []
        for channel in channels:
            try:
                channel.write(message)
            except BroadcastError as exc:
                failed.append(channel)
                logger.warning(
                    "observer_dropped",
                    channel_id=channel.channel_id,
                    event_id=record.id,
                    error=str(exc),
                )
                continue
            delivered += 1

        for channel in failed:
            if self.unsubscribe(channel):
                self.metrics.broadcast_drops_total.inc()
        return delivered

    async def stream(
        self,
        channel: ObserverChannel,
        is_disconnected: Callable[[], Awaitable[bool]],
        *,
        keepalive_seconds: float = 15.0,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for a channel until the observer goes away.

        The channel is unsubscribed when the generator finishes for any
        reason, including cancellation on transport disconnect.
        """
        try:
            while True:
                try:
                    message = await channel.get(timeout=keepalive_seconds)
                except TimeoutError:
                    if await is_disconnected():
                        return
                    yield KEEPALIVE_FRAME
                    continue
                if message is None:
                    return
                yield format_sse(message)
        finally:
            self.unsubscribe(channel)

    def close(self) -> None:
        """Close every channel; later subscribers are closed immediately."""
        with self._lock:
            self._closed = True
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            channel.close()
        self.metrics.active_observers.set(0)
