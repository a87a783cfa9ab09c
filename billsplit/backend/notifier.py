"""Per-session fan-out of snapshots to subscriber channels.

The notifier knows nothing about HTTP; transports wrap their connections in
an object with async ``send`` and ``close`` methods. A channel that fails to
accept a message is dropped without affecting the other subscribers.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """Raised by a channel that can no longer deliver messages."""


class SubscriberChannel(Protocol):
    async def send(self, message: dict[str, Any]) -> None:
        """Hand over one snapshot without waiting on the network, or raise ChannelClosed."""

    async def close(self) -> None:
        """End the stream from the server side."""


_END_OF_STREAM = object()


class QueueChannel:
    """Bounded in-process channel, drained by a streaming response.

    A subscriber that falls ``maxsize`` messages behind is treated as broken.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelClosed("channel already closed")
        if self._queue.qsize() >= self._maxsize:
            self._finish()
            raise ChannelClosed("subscriber fell behind")
        self._queue.put_nowait(message)

    async def close(self) -> None:
        self._finish()

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        # One slot is reserved for the end marker.
        self._queue.put_nowait(_END_OF_STREAM)

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            message = await self._queue.get()
            if message is _END_OF_STREAM:
                return
            yield message

    async def pipe_to(self, send: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        """Forward queued messages to a transport until the channel ends."""
        async for message in self.messages():
            await send(message)


@dataclass(frozen=True, eq=False)
class SubscriptionHandle:
    session_id: str
    channel: SubscriberChannel
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class SessionNotifier:
    def __init__(self, send_timeout_seconds: float = 5.0) -> None:
        self.send_timeout_seconds = send_timeout_seconds
        # handle -> version of the last snapshot delivered to it
        self._subscribers: dict[str, dict[SubscriptionHandle, int]] = {}

    def subscribe(self, session_id: str, channel: SubscriberChannel) -> SubscriptionHandle:
        handle = SubscriptionHandle(session_id=session_id, channel=channel)
        self._subscribers.setdefault(session_id, {})[handle] = 0
        logger.debug("Subscriber %s joined session %s", handle.id, session_id)
        return handle

    def unsubscribe(self, session_id: str, handle: SubscriptionHandle) -> None:
        subscribers = self._subscribers.get(session_id)
        if subscribers is None:
            return
        subscribers.pop(handle, None)
        if not subscribers:
            self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, {}))

    async def send_initial(self, handle: SubscriptionHandle, snapshot: dict[str, Any]) -> bool:
        return await self._deliver(handle, snapshot)

    async def notify(self, session_id: str, snapshot: dict[str, Any]) -> int:
        """Send one snapshot to every current subscriber; return how many got it."""
        handles = list(self._subscribers.get(session_id, {}))
        if not handles:
            return 0
        results = await asyncio.gather(*(self._deliver(handle, snapshot) for handle in handles))
        delivered = sum(1 for result in results if result)
        logger.debug(
            "Broadcast version %s of session %s to %d/%d subscribers",
            snapshot["session"]["version"],
            session_id,
            delivered,
            len(handles),
        )
        return delivered

    async def close_session(self, session_id: str) -> None:
        subscribers = self._subscribers.pop(session_id, {})
        for handle in subscribers:
            try:
                await handle.channel.close()
            except ChannelClosed:
                continue
        if subscribers:
            logger.info("Closed %d subscriber(s) of session %s", len(subscribers), session_id)

    async def _deliver(self, handle: SubscriptionHandle, snapshot: dict[str, Any]) -> bool:
        subscribers = self._subscribers.get(handle.session_id)
        if subscribers is None or handle not in subscribers:
            return False
        version = int(snapshot["session"]["version"])
        if version <= subscribers[handle]:
            return False

        try:
            await asyncio.wait_for(handle.channel.send(snapshot), timeout=self.send_timeout_seconds)
        except (ChannelClosed, asyncio.TimeoutError) as exc:
            logger.info("Dropping subscriber %s of session %s: %s", handle.id, handle.session_id, str(exc) or "send timed out")
            self.unsubscribe(handle.session_id, handle)
            return False

        if handle in subscribers:
            subscribers[handle] = version
        return True
