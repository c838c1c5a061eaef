"""
Connection state store.

Single source of truth for the streaming transcoder handle, the recording
session, the connected viewers, the last issued command and the latest
telemetry snapshot. Components read and write through one shared instance
instead of keeping private copies, so two components can never both believe
they own the same subprocess. All mutation happens on the event loop.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from drone_relay.models import (
    RecordingSession, SessionStatus, StreamSession, TelemetrySnapshot,
    Viewer, ViewerState
)

logger = logging.getLogger(__name__)


class ConnectionStateStore:
    """Shared mutable record of relay state."""

    def __init__(self):
        self.stream = StreamSession()
        self.recording: Optional[RecordingSession] = None
        self.viewers: Dict[int, Viewer] = {}
        self.next_viewer_id = 1
        self.drone_connected = False
        self.last_command = ""
        self.last_command_at: Optional[datetime] = None
        self.telemetry = TelemetrySnapshot()

    # Stream session

    def set_stream_process(self, process=None) -> None:
        """Record the transcoder handle; None clears it and marks the session idle."""
        self.stream.process = process
        if process is None:
            self.stream.status = SessionStatus.IDLE
            self.stream.started_at = None
        else:
            self.stream.status = SessionStatus.ACTIVE
            self.stream.started_at = datetime.now()

    def get_stream_process(self):
        return self.stream.process

    def mark_stream_starting(self) -> None:
        self.stream.status = SessionStatus.STARTING

    def is_stream_active(self) -> bool:
        return self.stream.is_active

    def set_stream_error(self, error: Optional[str]) -> None:
        self.stream.last_error = error

    # Recording session

    def set_recording(self, session: Optional[RecordingSession]) -> None:
        self.recording = session

    def get_recording(self) -> Optional[RecordingSession]:
        return self.recording

    def is_recording_active(self) -> bool:
        return self.recording is not None and self.recording.active

    # Viewers

    def add_viewer(self, connection: Any) -> Viewer:
        viewer = Viewer(viewer_id=self.next_viewer_id, connection=connection)
        self.next_viewer_id += 1
        self.viewers[viewer.viewer_id] = viewer
        return viewer

    def find_viewer(self, connection: Any) -> Optional[Viewer]:
        for viewer in self.viewers.values():
            if viewer.connection is connection:
                return viewer
        return None

    def remove_viewer(self, viewer_id: int) -> Optional[Viewer]:
        return self.viewers.pop(viewer_id, None)

    def get_viewers(self) -> List[Viewer]:
        """Snapshot of registered viewers, safe to iterate while the set changes."""
        return list(self.viewers.values())

    def get_open_viewers(self) -> List[Viewer]:
        return [v for v in self.viewers.values() if v.state is ViewerState.OPEN]

    # Drone command / telemetry

    def set_drone_connection(self, connected: bool) -> None:
        self.drone_connected = connected

    def set_last_command(self, command: str) -> None:
        self.last_command = command
        self.last_command_at = datetime.now()

    def get_last_command(self) -> str:
        return self.last_command

    def update_telemetry(self, name: str, value: Any) -> None:
        self.telemetry.update(name, value)

    def get_telemetry(self) -> TelemetrySnapshot:
        return self.telemetry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stream": self.stream.to_dict(),
            "recording": self.recording.to_dict() if self.recording else None,
            "viewers": [v.to_dict() for v in self.viewers.values()],
            "viewer_count": len(self.viewers),
            "drone_connected": self.drone_connected,
            "last_command": self.last_command,
            "telemetry": self.telemetry.to_dict(),
        }
