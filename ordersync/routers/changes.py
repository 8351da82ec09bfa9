"""
WebSocket /ws/changes — live change-event stream.

Each connected client gets its own subscription on the reconciler feed and
receives ``{orderId, updateType, newState, timestamp}`` frames. The
subscription is dropped when the client goes away, even while the feed is
idle.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ordersync.models.sync import ChangeEvent
from ordersync.services.event_feed import Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


async def _watch_disconnect(websocket: WebSocket, subscription: Subscription) -> None:
    """Read (and ignore) client frames until the client leaves."""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        subscription.unsubscribe()


@router.websocket("/ws/changes")
async def change_stream(websocket: WebSocket, order_id: Optional[str] = None):
    runtime = websocket.app.state.runtime
    # Subscribed before the handshake completes so no later event is missed
    subscription = runtime.reconciler.subscribe()
    try:
        await websocket.accept()
    except Exception:
        subscription.unsubscribe()
        raise
    watcher = asyncio.create_task(_watch_disconnect(websocket, subscription))
    logger.info("Change stream client connected (order filter: %s)", order_id)
    try:
        async for event in subscription:
            if not isinstance(event, ChangeEvent):
                continue
            if order_id is not None and event.order_id != order_id:
                continue
            await websocket.send_json(event.to_wire())
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        logger.info("Change stream client disconnected")
