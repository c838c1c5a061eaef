"""
Drone Relay Constants
Drone vocabulary, media naming and API error messages
"""

# Drone SDK commands with side effects in the relay
SDK_MODE_COMMAND = "command"
STREAM_ON_COMMAND = "streamon"
STREAM_OFF_COMMAND = "streamoff"
EMERGENCY_COMMAND = "emergency"

# Acknowledgment replies
ACK_OK = "ok"
ACK_ERROR = "error"

# Commands the drone never answers (stick input)
NO_REPLY_COMMANDS = ("rc",)

# Read-commands and the telemetry field each one fills
READ_COMMAND_FIELDS = {
    "battery?": "battery",
    "speed?": "speed",
    "time?": "time",
    "height?": "height",
    "tof?": "tof",
    "wifi?": "wifi",
}

# Reply units that identify a telemetry field regardless of the command in flight
TELEMETRY_UNIT_FIELDS = {
    "%": "battery",
    "s": "time",
    "cm/s": "speed",
    "dm/s": "speed",
    "dm": "height",
    "mm": "tof",
}

# Maximum accepted command token length (the drone ignores longer datagrams)
MAX_COMMAND_LENGTH = 64

# Viewer message types
DRONE_STATE_MESSAGE = "droneState"

# Media folders and names
SNAPSHOTS_DIR = "photos"
RECORDINGS_DIR = "mp4_recordings"
TS_RECORDINGS_DIR = "ts_recordings"
LOGS_DIR = "logs"
CURRENT_FRAME_FILE = "current.jpg"
PHOTO_PREFIX = "photo_"
RECORDING_PREFIX = "video_"

# Error messages
ERROR_MESSAGES = {
    "RECORDING_ALREADY_ACTIVE": "Recording already in progress",
    "RECORDING_NOT_ACTIVE": "No active recording",
    "STREAM_NOT_ACTIVE": "Video stream is not active",
    "SNAPSHOT_UNAVAILABLE": "No video frame available for capture",
    "INVALID_COMMAND": "Invalid drone command",
    "COMMAND_SEND_FAILED": "Error sending command",
    "COMMAND_TIMEOUT": "Drone did not respond",
    "PHOTO_DATA_MISSING": "No image data provided",
    "INTERNAL_SERVER_ERROR": "Internal server error occurred",
}
