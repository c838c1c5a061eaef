"""
Relay error taxonomy.

Resource conflicts and command failures are raised as RelayError subclasses
and converted to status/message pairs by the API layer.
"""

from typing import Optional

from drone_relay.constants import ERROR_MESSAGES


class RelayError(Exception):
    """Base class for errors surfaced to API callers."""

    error_code = "RELAY_ERROR"
    status_code = 500
    message_key = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: Optional[str] = None):
        self.message = message or ERROR_MESSAGES[self.message_key]
        super().__init__(self.message)


class RecordingAlreadyActive(RelayError):
    error_code = "RECORDING_ALREADY_ACTIVE"
    status_code = 409
    message_key = "RECORDING_ALREADY_ACTIVE"


class RecordingNotActive(RelayError):
    error_code = "RECORDING_NOT_ACTIVE"
    status_code = 400
    message_key = "RECORDING_NOT_ACTIVE"


class StreamNotActive(RelayError):
    error_code = "STREAM_NOT_ACTIVE"
    status_code = 409
    message_key = "STREAM_NOT_ACTIVE"


class SnapshotUnavailable(RelayError):
    error_code = "SNAPSHOT_UNAVAILABLE"
    status_code = 404
    message_key = "SNAPSHOT_UNAVAILABLE"


class InvalidCommand(RelayError):
    error_code = "INVALID_COMMAND"
    status_code = 400
    message_key = "INVALID_COMMAND"


class CommandSendError(RelayError):
    error_code = "COMMAND_SEND_FAILED"
    status_code = 502
    message_key = "COMMAND_SEND_FAILED"


class CommandTimeout(RelayError):
    error_code = "COMMAND_TIMEOUT"
    status_code = 504
    message_key = "COMMAND_TIMEOUT"


class PhotoDataMissing(RelayError):
    error_code = "PHOTO_DATA_MISSING"
    status_code = 400
    message_key = "PHOTO_DATA_MISSING"
