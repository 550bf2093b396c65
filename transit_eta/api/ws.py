"""WebSocket endpoint for real-time vehicle predictions."""

import asyncio
import logging

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
broadcaster = None


def filter_payload(payload: bytes, route: int | None, message_type: str | None = None) -> bytes:
    """Restrict a broadcast payload to one route and optionally retag it."""
    if route is None and message_type is None:
        return payload
    message = orjson.loads(payload)
    if route is not None:
        message["vehicles"] = [v for v in message["vehicles"] if str(v.get("route_id")) == str(route)]
    if message_type is not None:
        message["type"] = message_type
    return orjson.dumps(message)


@router.websocket("/ws/vehicles")
async def vehicle_ws(websocket: WebSocket, route: int | None = None) -> None:
    """Send the latest snapshot, then stream every poll update (optionally for one route)."""
    await websocket.accept()

    if broadcaster is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    state_data = broadcaster.get_current_state()
    if state_data:
        await websocket.send_bytes(filter_payload(state_data, route, "snapshot"))

    queue = broadcaster.subscribe()
    try:
        while True:
            data = await queue.get()
            await websocket.send_bytes(filter_payload(data, route))
    except (WebSocketDisconnect, asyncio.CancelledError):
        pass
    except Exception:
        logger.exception("WebSocket error")
    finally:
        broadcaster.unsubscribe(queue)
