"""
Drone Relay API Response Envelope

Every HTTP endpoint answers with the same shape:
{
    "success": boolean,
    "message": "string",
    "data": any,
    "metadata": {"timestamp": "ISO string", "execution_time_ms": number},
    "error": {"message": "string", "code": "string", "details": any}   # failures only
}

Relay rejections (RelayError) keep their own status and error code; any
other exception becomes a 500 with SERVER_ERROR.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from drone_relay.constants import ERROR_MESSAGES
from drone_relay.services.errors import RelayError

logger = logging.getLogger(__name__)

SERVER_ERROR_CODE = "SERVER_ERROR"


def build_metadata(start_time: Optional[float] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    if start_time is not None:
        metadata["execution_time_ms"] = round((time.time() - start_time) * 1000, 2)
    return metadata


class ResponseFormatter:
    """Builds the relay's response envelope."""

    @staticmethod
    def success(
        data: Any = None,
        message: str = "Success",
        start_time: Optional[float] = None,
        status_code: int = 200
    ) -> JSONResponse:
        """
        Wrap a payload in a success envelope.

        Args:
            data: Payload placed under ``data``
            message: Human-readable summary
            start_time: ``time.time()`` at request start, adds execution_time_ms
            status_code: HTTP status code
        """
        return JSONResponse(status_code=status_code, content={
            "success": True,
            "message": message,
            "data": data,
            "metadata": build_metadata(start_time),
        })

    @staticmethod
    def error(message: str, error_code: str, status_code: int, details: Any = None) -> JSONResponse:
        error: Dict[str, Any] = {"message": message, "code": error_code}
        if details is not None:
            error["details"] = details
        return JSONResponse(status_code=status_code, content={
            "success": False,
            "message": message,
            "data": None,
            "metadata": build_metadata(),
            "error": error,
        })

    @staticmethod
    def from_relay_error(exception: RelayError) -> JSONResponse:
        """Convert a relay rejection into its status/message pair"""
        return ResponseFormatter.error(exception.message, exception.error_code, exception.status_code)

    @staticmethod
    def from_exception(exception: Exception) -> JSONResponse:
        """Relay rejections keep their status; anything else is logged and becomes a 500."""
        if isinstance(exception, RelayError):
            return ResponseFormatter.from_relay_error(exception)

        logger.error("Api | event=unhandled_error | error=%s", exception, exc_info=True)
        return ResponseFormatter.error(
            ERROR_MESSAGES["INTERNAL_SERVER_ERROR"],
            SERVER_ERROR_CODE,
            500,
            details=str(exception),
        )
