"""
Drone relay service.

Wires the connection state store, transcoder supervisor, frame chunker,
viewer registry, recording sink and command relay into one pipeline and
exposes the operations the HTTP and WebSocket layers call.
"""

import asyncio
import base64
import binascii
import logging
import shutil
from datetime import datetime
from typing import Any, Dict, Optional

from drone_relay.config import settings
from drone_relay.constants import PHOTO_PREFIX
from drone_relay.models import RecordingSession
from drone_relay.services.command_relay import CommandRelay, CommandResult
from drone_relay.services.connection_state import ConnectionStateStore
from drone_relay.services.errors import PhotoDataMissing, SnapshotUnavailable
from drone_relay.services.frame_chunker import FrameChunker
from drone_relay.services.recording import RecordingSink
from drone_relay.services.transcoder import TranscoderSupervisor
from drone_relay.services.viewer_registry import ViewerRegistry
from drone_relay.utils.media_paths import MediaPathManager, get_path_manager

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = "base64,"


class DroneRelayService:
    """
    Main service for the drone video/telemetry relay.

    Frame path: transcoder stdout -> chunker -> recording tee, then viewer
    outboxes. Neither consumer can hold up the transcoder pump.
    """

    def __init__(self, paths: Optional[MediaPathManager] = None,
                 state: Optional[ConnectionStateStore] = None):
        self.paths = paths or get_path_manager()
        self.state = state or ConnectionStateStore()

        self.chunker = FrameChunker()
        self.registry = ViewerRegistry(self.state)
        self.recorder = RecordingSink(
            self.state,
            recordings_path=self.paths.recordings_path,
            ts_recordings_path=self.paths.ts_recordings_path,
        )
        self.supervisor = TranscoderSupervisor(
            self.state,
            on_output=self._handle_output,
            snapshot_path=self.paths.current_frame_path,
            on_launch=self.chunker.reset,
            on_give_up=self.recorder.force_stop,
        )
        self.commands = CommandRelay(
            self.state,
            self.registry,
            on_stream_on=self.start_stream,
            on_stream_off=self.stop_stream,
        )

        self.started = False
        self.service_started_at = datetime.now()
        logger.info("Relay | event=service_init | media_root=%s", self.paths.root_path)

    async def startup(self) -> None:
        """
        Prepare storage and open the command socket.

        Raises:
            OSError: media directories could not be created
        """
        if self.started:
            return
        self.paths.ensure_directories()
        self.state.telemetry.reset()
        await self.commands.open()
        self.started = True
        self.service_started_at = datetime.now()
        logger.info("Relay | event=service_started")

    async def shutdown(self, send_emergency: Optional[bool] = None) -> None:
        """Stop everything in dependency order; safe to call twice."""
        if send_emergency is None:
            send_emergency = settings.EMERGENCY_ON_SHUTDOWN

        await self.commands.stop_polling()
        if send_emergency:
            self.commands.send_emergency()
        await self.recorder.shutdown()
        await self.supervisor.shutdown()
        await self.registry.close_all()
        await self.commands.close()
        self.started = False
        logger.info("Relay | event=service_stopped")

    # Frame path

    async def _handle_output(self, block: bytes) -> None:
        await self.chunker.push(block, self._distribute)

    async def _distribute(self, chunk: bytes) -> None:
        self.recorder.write(chunk)
        self.registry.broadcast(chunk)

    # Stream lifecycle

    async def start_stream(self) -> bool:
        if self.supervisor.is_running:
            logger.debug("Relay | event=stream_start_ignored | reason=already_running")
            return False
        return await self.supervisor.start()

    async def stop_stream(self) -> None:
        # Recording cannot outlive its source
        await self.recorder.force_stop()
        await self.supervisor.stop()
        logger.info("Relay | event=stream_stopped")

    # Recording

    async def start_recording(self) -> RecordingSession:
        return await self.recorder.start()

    async def stop_recording(self) -> RecordingSession:
        return await self.recorder.stop()

    # Photos

    def _photo_path(self, extension: str):
        stamp = int(datetime.now().timestamp() * 1000)
        return self.paths.photos_path / f"{PHOTO_PREFIX}{stamp}{extension}", stamp

    async def capture_photo(self) -> Dict[str, Any]:
        """
        Copy the transcoder's current still image to a timestamped photo.

        Raises:
            SnapshotUnavailable: no still image has been written yet
        """
        source = self.paths.current_frame_path
        if not source.exists() or source.stat().st_size == 0:
            raise SnapshotUnavailable()

        target, stamp = self._photo_path(source.suffix)
        try:
            await asyncio.to_thread(shutil.copyfile, source, target)
        except FileNotFoundError as e:
            raise SnapshotUnavailable() from e

        logger.info("Relay | event=photo_captured | file=%s", target.name)
        return {"fileName": target.name, "timestamp": stamp}

    async def save_photo_data(self, image_data: Optional[str]) -> Dict[str, Any]:
        """
        Store a browser-supplied base64 PNG (optionally a data URL).

        Raises:
            PhotoDataMissing: no decodable image data was supplied
        """
        if not image_data:
            raise PhotoDataMissing()
        _, _, encoded = image_data.rpartition(_DATA_URL_PREFIX)
        try:
            content = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PhotoDataMissing("Image data is not valid base64") from e
        if not content:
            raise PhotoDataMissing()

        target, stamp = self._photo_path(".png")
        await asyncio.to_thread(target.write_bytes, content)
        logger.info("Relay | event=photo_saved | file=%s | bytes=%s", target.name, len(content))
        return {"fileName": target.name, "timestamp": stamp}

    # Commands

    async def send_command(self, command: str) -> CommandResult:
        return await self.commands.send(command)

    def get_telemetry(self) -> Dict[str, Any]:
        return self.state.get_telemetry().to_dict()

    def get_status(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.service_started_at).total_seconds()
        return {
            "started": self.started,
            "uptime_seconds": round(uptime, 1),
            "stream": self.supervisor.get_status(),
            "recording": self.recorder.get_status(),
            "viewers": self.registry.get_stats(),
            "chunker": {
                "chunk_size": self.chunker.chunk_size,
                "chunks_emitted": self.chunker.chunks_emitted,
                "pending_bytes": self.chunker.pending,
                "resets": self.chunker.resets,
            },
            "commands": self.commands.get_status(),
            "drone_connected": self.state.drone_connected,
            "telemetry": self.get_telemetry(),
        }


# Global instance access
_service_instance: Optional[DroneRelayService] = None


def get_relay_service() -> DroneRelayService:
    """
    Get the global drone relay service instance.

    Returns:
        The global DroneRelayService instance
    """
    global _service_instance
    if _service_instance is None:
        _service_instance = DroneRelayService()
    return _service_instance
