"""
Drone Relay - Control API Endpoints

Features:
- Drone command relay (SDK mode, stream on/off, read-commands, flight commands)
- Recording start/stop
- Photo capture from the live still image and browser-supplied photos
- Telemetry and relay status
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from drone_relay.api.response_formatter import ResponseFormatter
from drone_relay.services.errors import RelayError
from drone_relay.services.relay_service import get_relay_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["drone"])


class SavePhotoRequest(BaseModel):
    """Browser canvas capture, usually a PNG data URL"""
    imageData: Optional[str] = None


@router.get("/drone/state")
async def get_drone_state():
    """Latest telemetry snapshot"""
    return ResponseFormatter.success(get_relay_service().get_telemetry())


@router.get("/drone/{command}")
async def send_drone_command(command: str):
    """
    Relay one drone command token.

    `command` enters SDK mode and starts telemetry polling, `streamon` starts
    the transcoder, `streamoff` stops it; anything else is forwarded as is.
    """
    start_time = time.time()
    try:
        result = await get_relay_service().send_command(command)
        logger.info(f"Drone command relayed: {result.command} -> {result.response}")
        return ResponseFormatter.success(
            result.to_dict(), message=f"Command sent: {result.command}", start_time=start_time
        )
    except RelayError as e:
        logger.warning(f"Drone command {command!r} rejected: {e.message}")
        return ResponseFormatter.from_relay_error(e)
    except Exception as e:
        return ResponseFormatter.from_exception(e)


@router.post("/start-recording")
async def start_recording():
    """Begin recording the live stream to a new MP4 file"""
    try:
        session = await get_relay_service().start_recording()
        data = {"fileName": session.file_name}
        if session.ts_file_name:
            data["tsFileName"] = session.ts_file_name
        return ResponseFormatter.success(data, message="Recording started")
    except RelayError as e:
        return ResponseFormatter.from_relay_error(e)
    except Exception as e:
        return ResponseFormatter.from_exception(e)


@router.post("/stop-recording")
async def stop_recording():
    """Finish the active recording"""
    try:
        session = await get_relay_service().stop_recording()
        data = {"fileName": session.file_name}
        if session.last_error:
            data["warning"] = session.last_error
        return ResponseFormatter.success(data, message="Recording stopped")
    except RelayError as e:
        return ResponseFormatter.from_relay_error(e)
    except Exception as e:
        return ResponseFormatter.from_exception(e)


@router.post("/capture-photo")
async def capture_photo():
    """Save the current video frame as a photo"""
    try:
        return ResponseFormatter.success(await get_relay_service().capture_photo(), message="Photo captured")
    except RelayError as e:
        return ResponseFormatter.from_relay_error(e)
    except Exception as e:
        return ResponseFormatter.from_exception(e)


@router.post("/save-photo")
async def save_photo(request: SavePhotoRequest):
    try:
        result = await get_relay_service().save_photo_data(request.imageData)
        return ResponseFormatter.success(result, message="Photo saved")
    except RelayError as e:
        return ResponseFormatter.from_relay_error(e)
    except Exception as e:
        return ResponseFormatter.from_exception(e)


@router.get("/status")
async def get_status():
    """Stream, recording, viewer and telemetry status"""
    start_time = time.time()
    try:
        return ResponseFormatter.success(get_relay_service().get_status(), start_time=start_time)
    except Exception as e:
        return ResponseFormatter.from_exception(e)
