"""
Drone Relay Data Models
Session, viewer and telemetry records shared through the connection state store.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Optional, Union


class SessionStatus(Enum):
    """Lifecycle state of a transcoder-backed session"""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"


class ViewerState(Enum):
    """Liveness of a connected viewer"""
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class StreamSession:
    """
    Lifecycle of the live video relay.
    Owns the streaming transcoder process handle exclusively.
    """
    status: SessionStatus = SessionStatus.IDLE
    process: Optional[asyncio.subprocess.Process] = None
    desired_active: bool = False           # Whether streaming was requested and not yet stopped
    last_error: Optional[str] = None       # Last failure line reported by the transcoder
    started_at: Optional[datetime] = None  # Launch time of the current process
    restart_count: int = 0                 # Consecutive restarts since the last stable launch

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE and self.process is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "status": self.status.value,
            "active": self.is_active,
            "desired_active": self.desired_active,
            "pid": self.process.pid if self.process is not None else None,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "restart_count": self.restart_count,
        }


@dataclass
class RecordingSession:
    """
    Capture of the active stream into a container file.
    The file path is assigned once at creation and never changes.
    """
    file_path: Path
    process: Optional[asyncio.subprocess.Process] = None
    ts_file: Optional[Any] = None          # Binary handle for the raw .ts companion copy
    ts_file_path: Optional[Path] = None
    active: bool = True
    started_at: datetime = field(default_factory=datetime.now)
    frames_written: int = 0
    bytes_written: int = 0
    last_error: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.file_path.name

    @property
    def ts_file_name(self) -> Optional[str]:
        return self.ts_file_path.name if self.ts_file_path else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "fileName": self.file_name,
            "tsFileName": self.ts_file_name,
            "active": self.active,
            "pid": self.process.pid if self.process is not None else None,
            "started_at": self.started_at.isoformat(),
            "frames_written": self.frames_written,
            "bytes_written": self.bytes_written,
            "last_error": self.last_error,
        }


@dataclass(eq=False)
class Viewer:
    """A single connected real-time consumer"""
    viewer_id: int
    connection: Any                        # WebSocket-like object with send_bytes/send_text/close
    state: ViewerState = ViewerState.OPEN
    connected_at: datetime = field(default_factory=datetime.now)
    frames_sent: int = 0
    bytes_sent: int = 0
    outbox: Deque[Union[bytes, str]] = field(default_factory=deque, repr=False)
    sender: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.viewer_id,
            "state": self.state.value,
            "connected_at": self.connected_at.isoformat(),
            "frames_sent": self.frames_sent,
            "bytes_sent": self.bytes_sent,
            "queued": len(self.outbox),
        }


@dataclass
class TelemetrySnapshot:
    """Last known drone state; every field stays None until first observed."""
    battery: Optional[int] = None          # Percent
    speed: Optional[float] = None          # cm/s as reported by the drone
    time: Optional[int] = None             # Elapsed flight time in seconds
    height: Optional[int] = None           # dm
    tof: Optional[int] = None              # mm
    wifi: Optional[int] = None             # SNR
    last_update: Optional[datetime] = None

    def update(self, name: str, value: Any, when: Optional[datetime] = None) -> None:
        if name not in self.field_names():
            raise KeyError(f"Unknown telemetry field: {name}")
        setattr(self, name, value)
        self.last_update = when or datetime.now()

    def reset(self) -> None:
        for name in self.field_names():
            setattr(self, name, None)
        self.last_update = None

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls) if f.name != "last_update"]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {name: getattr(self, name) for name in self.field_names()}
        payload["lastUpdate"] = int(self.last_update.timestamp() * 1000) if self.last_update else None
        return payload
