"""WebSocket endpoint streaming incremental feed updates."""

import asyncio
import logging

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from rtbridge.core.broadcaster import CHANNELS

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
broadcaster = None


@router.websocket("/ws/{channel}")
async def feed_ws(websocket: WebSocket, channel: str) -> None:
    """Send the channel's full snapshot, then every incremental update."""
    await websocket.accept()

    if broadcaster is None:
        await websocket.close(code=1011, reason="Service not ready")
        return
    if channel not in CHANNELS:
        await websocket.close(code=1008, reason=f"Unknown channel {channel}")
        return

    sink = broadcaster.sink(channel)

    # Subscribe before sending the snapshot so no increment falls in between
    queue = sink.subscribe()
    try:
        snapshot = sink.snapshot().model_dump(exclude_none=True)
        snapshot["type"] = "snapshot"
        await websocket.send_bytes(orjson.dumps(snapshot))
        while True:
            data = await queue.get()
            await websocket.send_bytes(data)
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("WebSocket error")
    finally:
        sink.unsubscribe(queue)
