"""In-memory fan-out of live events, one channel per search id.

A channel is created on first use and dropped once its last subscriber
leaves. Nothing is persisted: an event broadcast while nobody listens is
simply delivered to zero subscribers.

Event wire format (Server-Sent Events):
    : connected\\n\\n                         (sent once on subscribe)
    event: pep_results\\ndata: {...}\\n\\n      (one per broadcast)
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "pep_results"
SSE_CONNECTED = ": connected\n\n"
SSE_KEEPALIVE = ": keep-alive\n\n"


@dataclass(frozen=True)
class Event:
    """A named event with a JSON-serializable payload."""

    event: str
    payload: Any

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "payload": self.payload}

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.payload)}\n\n"


@dataclass(frozen=True)
class BroadcastResult:
    sent: int
    failed: int
    total_connections: int


class SubscriptionClosed(Exception):
    """Raised when delivering to a subscriber that has gone away."""


class Subscription:
    """One connected client. Events queue up until the transport drains them."""

    def __init__(self, channel: str, max_pending: int = 100) -> None:
        self.id = str(uuid.uuid4())
        self.channel = channel
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    def deliver(self, event: Event) -> None:
        if self.closed:
            raise SubscriptionClosed(self.id)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            raise SubscriptionClosed(f"{self.id} is not draining events") from None

    async def next_event(self, timeout: float | None = None) -> Event | None:
        """Wait for the next event. Returns None if *timeout* elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self.closed = True


class Channel:
    """The subscriber set of one search id."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: dict[str, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def add(self, subscription: Subscription) -> None:
        self._subscribers[subscription.id] = subscription

    def remove(self, subscription: Subscription) -> None:
        self._subscribers.pop(subscription.id, None)

    def broadcast(self, event: Event) -> BroadcastResult:
        """Deliver *event* to every live subscriber, dropping dead ones."""
        sent = 0
        failed = 0
        for sub_id, subscription in list(self._subscribers.items()):
            try:
                subscription.deliver(event)
                sent += 1
            except SubscriptionClosed:
                logger.warning("Dropping subscriber %s on channel %s", sub_id, self.name)
                self._subscribers.pop(sub_id, None)
                failed += 1
        return BroadcastResult(sent=sent, failed=failed, total_connections=len(self._subscribers))


class EventBroadcaster:
    """Registry mapping search ids to channels.

    Usage:
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe("search-1")
        broadcaster.broadcast("search-1", "pep_results", {"matches": []})  # sent == 1
        event = await sub.next_event()
        broadcaster.unsubscribe(sub)
    """

    def __init__(self, max_pending: int = 100) -> None:
        self._channels: dict[str, Channel] = {}
        self._lock = threading.Lock()
        self._max_pending = max_pending

    def channel_count(self) -> int:
        return len(self._channels)

    def subscriber_count(self, name: str) -> int:
        channel = self._channels.get(name)
        return len(channel) if channel else 0

    def subscribe(self, name: str) -> Subscription:
        subscription = Subscription(name, max_pending=self._max_pending)
        with self._lock:
            channel = self._channels.setdefault(name, Channel(name))
            channel.add(subscription)
            total = len(channel)
        logger.info("Client %s connected to %s. Total connections: %d", subscription.id, name, total)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            channel = self._channels.get(subscription.channel)
            if channel is None:
                return
            channel.remove(subscription)
            remaining = len(channel)
            if not remaining:
                del self._channels[subscription.channel]
        logger.info(
            "Client %s disconnected from %s. Remaining: %d",
            subscription.id, subscription.channel, remaining,
        )

    def broadcast(self, name: str, event: str | None, payload: Any) -> BroadcastResult:
        """Send an event to every subscriber of *name*. Returns delivery counts."""
        message = Event(event=event or DEFAULT_EVENT, payload=payload)
        with self._lock:
            channel = self._channels.get(name)
            if channel is None:
                result = BroadcastResult(sent=0, failed=0, total_connections=0)
            else:
                result = channel.broadcast(message)
                if not len(channel):
                    del self._channels[name]
        logger.info(
            "Broadcast %s on %s complete. Sent: %d, Failed: %d, Remaining: %d",
            message.event, name, result.sent, result.failed, result.total_connections,
        )
        return result
