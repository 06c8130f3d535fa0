"""Tests for the in-memory event broadcaster."""

from __future__ import annotations

import json

import pytest

from tripwire.events.broadcaster import (
    DEFAULT_EVENT,
    Event,
    EventBroadcaster,
    Subscription,
    SubscriptionClosed,
)


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


def test_event_sse_format():
    event = Event("pep_results", {"isPep": True})
    assert event.to_sse() == 'event: pep_results\ndata: {"isPep": true}\n\n'
    assert event.to_dict() == {"event": "pep_results", "payload": {"isPep": True}}


def test_broadcast_without_subscribers(broadcaster):
    result = broadcaster.broadcast("search-1", "pep_results", {})
    assert (result.sent, result.failed, result.total_connections) == (0, 0, 0)
    assert broadcaster.channel_count() == 0


async def test_subscribers_receive_event(broadcaster):
    first = broadcaster.subscribe("search-1")
    second = broadcaster.subscribe("search-1")
    other = broadcaster.subscribe("search-2")

    result = broadcaster.broadcast("search-1", "pep_results", {"n": 1})
    assert result.sent == 2
    assert result.total_connections == 2

    for sub in (first, second):
        event = await sub.next_event(timeout=1)
        assert event == Event("pep_results", {"n": 1})
    assert await other.next_event(timeout=0.01) is None


async def test_default_event_name(broadcaster):
    sub = broadcaster.subscribe("search-1")
    broadcaster.broadcast("search-1", None, {"x": 1})
    event = await sub.next_event(timeout=1)
    assert event.event == DEFAULT_EVENT


def test_unsubscribe_drops_empty_channel(broadcaster):
    sub = broadcaster.subscribe("search-1")
    assert broadcaster.subscriber_count("search-1") == 1
    broadcaster.unsubscribe(sub)
    assert broadcaster.subscriber_count("search-1") == 0
    assert broadcaster.channel_count() == 0


def test_closed_subscriber_is_dropped_on_broadcast(broadcaster):
    alive = broadcaster.subscribe("search-1")
    dead = broadcaster.subscribe("search-1")
    dead.close()

    result = broadcaster.broadcast("search-1", "pep_results", {})
    assert result.sent == 1
    assert result.failed == 1
    assert result.total_connections == 1
    assert broadcaster.subscriber_count("search-1") == 1
    assert not alive.closed


def test_full_queue_counts_as_failure():
    broadcaster = EventBroadcaster(max_pending=1)
    broadcaster.subscribe("search-1")
    assert broadcaster.broadcast("search-1", "a", {}).sent == 1
    result = broadcaster.broadcast("search-1", "b", {})
    assert result.failed == 1
    assert broadcaster.channel_count() == 0


def test_deliver_to_closed_subscription_raises():
    sub = Subscription("search-1")
    sub.close()
    with pytest.raises(SubscriptionClosed):
        sub.deliver(Event("pep_results", {}))


def test_payload_serializes_as_json():
    event = Event("pep_failed", {"searchId": "s1", "error": None})
    data_line = event.to_sse().splitlines()[1]
    assert json.loads(data_line.removeprefix("data: ")) == {"searchId": "s1", "error": None}
