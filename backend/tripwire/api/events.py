"""Live event subscriptions for a search id.

Two transports share the same broadcaster channel:

    GET /events/{search_id}     Server-Sent Events
        ": connected\\n\\n", then "event: <name>\\ndata: <json>\\n\\n" per event,
        with ": keep-alive\\n\\n" comments while idle.

    WS  /ws/events/{search_id}  JSON frames
        Server -> Client: {"event": "connected", "payload": {"searchId": ...}}
        Server -> Client: {"event": "<name>", "payload": {...}}
        Client frames are ignored; the socket only signals disconnects.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from tripwire.events.broadcaster import (
    SSE_CONNECTED,
    SSE_KEEPALIVE,
    EventBroadcaster,
    Subscription,
)

logger = logging.getLogger(__name__)

router = APIRouter()

KEEPALIVE_SECONDS = 15.0
WS_POLL_SECONDS = 0.5


async def event_stream(
    broadcaster: EventBroadcaster,
    subscription: Subscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """SSE frames for *subscription* until the client goes away."""
    try:
        yield SSE_CONNECTED
        while not await is_disconnected():
            event = await subscription.next_event(timeout=keepalive_seconds)
            yield event.to_sse() if event is not None else SSE_KEEPALIVE
    finally:
        broadcaster.unsubscribe(subscription)


@router.get("/events/{search_id}")
async def subscribe_events(search_id: str, request: Request) -> StreamingResponse:
    """Server-Sent Events stream of a search's live events."""
    broadcaster: EventBroadcaster = request.app.state.broadcaster
    subscription = broadcaster.subscribe(search_id)
    return StreamingResponse(
        event_stream(broadcaster, subscription, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def _send_json(ws: WebSocket, data: dict[str, Any]) -> None:
    """Send a JSON frame, ignoring connections that already went away."""
    try:
        await ws.send_json(data)
    except (WebSocketDisconnect, RuntimeError):
        logger.debug("Dropping frame for closed websocket")


async def _wait_for_disconnect(ws: WebSocket) -> None:
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/events/{search_id}")
async def events_websocket(websocket: WebSocket, search_id: str) -> None:
    """WebSocket stream of a search's live events."""
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    subscription = broadcaster.subscribe(search_id)
    await _send_json(websocket, {"event": "connected", "payload": {"searchId": search_id}})

    listener = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        while not listener.done():
            event = await subscription.next_event(timeout=WS_POLL_SECONDS)
            if event is not None:
                await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for search %s", search_id)
    finally:
        listener.cancel()
        broadcaster.unsubscribe(subscription)
