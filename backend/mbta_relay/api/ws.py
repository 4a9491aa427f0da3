"""WebSocket endpoint for filtered real-time cache events."""

import asyncio
import logging

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from mbta_relay.config import settings
from mbta_relay.core.subscriptions import Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


async def _receive_filters(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000))
        raw = message.get("text")
        if raw is None:
            raw = message.get("bytes")
        if raw is not None:
            subscription.receive(raw)


async def _send_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.queue.get()
        await websocket.send_bytes(orjson.dumps(message))


@router.websocket("/ws")
async def cache_ws(websocket: WebSocket) -> None:
    """Stream cache events matching the filter the client last sent."""
    await websocket.accept()

    cache = getattr(websocket.app.state, "cache", None)
    if cache is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    subscription = Subscription(cache, queue_size=settings.connection_queue_size)
    tasks = [
        asyncio.create_task(_receive_filters(websocket, subscription)),
        asyncio.create_task(_send_events(websocket, subscription)),
    ]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("WebSocket error: %r", exc)
    finally:
        subscription.close()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
