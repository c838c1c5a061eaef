"""
Drone Relay - Live Stream WebSocket

Each connection becomes a viewer: it receives binary MPEG-TS chunks and
droneState JSON text messages until it disconnects.
"""

import logging

from fastapi import APIRouter, WebSocket

from drone_relay.config import STREAMING_CONFIG
from drone_relay.services.relay_service import get_relay_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])


@router.websocket(STREAMING_CONFIG["websocket_path"])
async def stream_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for the live video relay.
    Inbound messages are ignored; the connection only ends on disconnect.
    """
    service = get_relay_service()
    await websocket.accept()
    viewer_id = service.registry.register(websocket)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except Exception as e:
        logger.warning(f"Stream WebSocket error for viewer {viewer_id}: {e}")
    finally:
        service.registry.unregister(websocket)
