"""
Configuration Management for the Drone Relay
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


# Load environment variables from .env file
env_file = os.path.join(os.path.dirname(__file__), '.env')
if os.path.exists(env_file):
    load_dotenv(env_file)


def _env_flag(name: str, default: str = "0") -> bool:
    value = os.getenv(name, default)
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_optional_int(name: str) -> Optional[int]:
    """Parse an optional positive integer; unset, empty or non-positive means no limit."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


class Settings:
    """Server level settings"""

    # Server settings
    HOST: str = os.getenv("DRONE_RELAY_HOST", "0.0.0.0")
    PORT: int = _env_int("DRONE_RELAY_PORT", 3000)

    # Logging
    LOG_LEVEL: str = os.getenv("DRONE_RELAY_LOG_LEVEL", "INFO").upper()
    CONSOLE_LOG_LEVEL: str = os.getenv("DRONE_RELAY_CONSOLE_LOG_LEVEL", LOG_LEVEL).upper()
    LOG_RETENTION_DAYS: int = _env_int("DRONE_RELAY_LOG_RETENTION_DAYS", 14)
    LOG_ERROR_RETENTION_DAYS: int = _env_int("DRONE_RELAY_LOG_ERROR_RETENTION_DAYS", 30)
    LOG_JSON: bool = _env_flag("DRONE_RELAY_LOG_JSON")

    # Media storage; "uploads" mirrors the folder the browser UI expects
    PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent
    MEDIA_ROOT: Path = Path(os.getenv("DRONE_RELAY_MEDIA_ROOT", str(PROJECT_ROOT / "uploads")))

    # Shutdown behaviour
    EMERGENCY_ON_SHUTDOWN: bool = _env_flag("DRONE_RELAY_EMERGENCY_ON_SHUTDOWN")


# Drone network configuration
DRONE_CONFIG: Dict[str, Any] = {
    "ip": os.getenv("DRONE_RELAY_DRONE_IP", "192.168.10.1"),
    "command_port": _env_int("DRONE_RELAY_COMMAND_PORT", 8889),    # UDP text commands + replies
    "video_port": _env_int("DRONE_RELAY_VIDEO_PORT", 11111),       # UDP H.264 elementary stream
    "local_command_port": _env_int("DRONE_RELAY_LOCAL_COMMAND_PORT", 0),  # 0 = ephemeral
    "command_ack_timeout_seconds": _env_float("DRONE_RELAY_COMMAND_ACK_TIMEOUT", 5.0),
    "streamon_ack_timeout_seconds": 1.0,   # Wait for "ok" before launching the transcoder
    "streamoff_ack_timeout_seconds": 1.0,  # Wait for "ok" before tearing the transcoder down
}

# Streaming transcoder configuration
TRANSCODER_CONFIG: Dict[str, Any] = {
    "ffmpeg_path": os.getenv("DRONE_RELAY_FFMPEG", "ffmpeg"),
    "fifo_size": 50000000,                 # UDP receive buffer to absorb network jitter
    "video_codec": "mpeg1video",           # Decodable by JSMpeg in the browser
    "video_bitrate": "1000k",
    "max_bitrate": "1500k",
    "buffer_size": "4000k",
    "frame_size": "640x480",
    "frame_rate": 30,
    "quality": 5,
    "snapshot_enabled": _env_flag("DRONE_RELAY_SNAPSHOT_ENABLED", "1"),
    "snapshot_fps": 2,                     # Rate at which the still image is rewritten
    "restart_backoff_seconds": _env_float("DRONE_RELAY_RESTART_BACKOFF", 1.0),
    "max_restarts": _env_optional_int("DRONE_RELAY_MAX_RESTARTS"),  # None = unlimited
    "stop_timeout_seconds": 3.0,           # Grace period after SIGTERM before SIGKILL
    "benign_stderr": [
        "Last message repeated",
    ],
    "failure_vocabulary": [
        "error",
        "failed",
        "invalid",
        "could not",
        "no such file",
        "connection refused",
        "non-existing pps",
        "decode_slice_header",
    ],
}

# Frame chunking and viewer delivery
STREAMING_CONFIG: Dict[str, Any] = {
    "ts_packet_size": 188,                 # MPEG-TS atomic packet size
    "packets_per_chunk": 21,               # 21 * 188 = 3948 bytes per WebSocket message
    "websocket_path": "/stream",
}

# Recording sink configuration
RECORDING_CONFIG: Dict[str, Any] = {
    "container_extension": ".mp4",
    "video_codec": os.getenv("DRONE_RELAY_RECORDING_CODEC", "copy"),  # "copy" = remux, "libx264" = re-encode
    "stop_timeout_seconds": _env_float("DRONE_RELAY_RECORDING_STOP_TIMEOUT", 5.0),
    "keep_ts_copy": _env_flag("DRONE_RELAY_RECORDING_KEEP_TS"),
}

# Telemetry polling configuration
TELEMETRY_CONFIG: Dict[str, Any] = {
    "poll_schedule": {                     # read-command -> interval in seconds
        "battery?": 10,
        "time?": 5,
        "speed?": 2,
    },
    "poll_tick_seconds": 0.5,
    "poll_response_timeout_seconds": 1.0,
}

# Global settings instance
settings = Settings()
