"""
Viewer registry and broadcaster for the live relay.

Tracks connected WebSocket viewers in the connection state store and
delivers every video frame and telemetry update to all of them, isolating
one viewer's failure from the rest and from the producer.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from drone_relay.models import Viewer, ViewerState
from drone_relay.services.connection_state import ConnectionStateStore

logger = logging.getLogger(__name__)


class ViewerRegistry:
    """
    Connected-viewer bookkeeping plus fan-out delivery.

    Features:
    - Sequential viewer identifiers for logging
    - Idempotent, never-raising unregistration
    - Snapshot iteration so registration changes mid-broadcast are safe
    - Per-viewer outbox drained by its own sender task, so a slow viewer
      only delays itself and frames and state messages keep their order
    """

    def __init__(self, state: ConnectionStateStore):
        self.state = state
        self.total_connections = 0
        self.total_frames = 0
        self.total_bytes = 0
        self.failed_sends = 0
        self.started_at = datetime.now()

    def register(self, connection: Any) -> int:
        """
        Register an accepted connection.

        Args:
            connection: WebSocket-like object (send_bytes/send_text/close)

        Returns:
            The viewer identifier assigned to the connection
        """
        existing = self.state.find_viewer(connection)
        if existing is not None:
            return existing.viewer_id

        viewer = self.state.add_viewer(connection)
        self.total_connections += 1
        logger.info("Viewers | event=connected | viewer=%s | total=%s", viewer.viewer_id, len(self.state.viewers))
        return viewer.viewer_id

    def unregister(self, connection: Any) -> bool:
        """
        Remove a connection from the open set and drop its queued messages.

        Safe to call repeatedly or for unknown connections; never raises.

        Returns:
            True if a viewer was removed by this call
        """
        try:
            viewer = connection if isinstance(connection, Viewer) else self.state.find_viewer(connection)
            if viewer is None:
                return False
            viewer.state = ViewerState.CLOSED
            self._stop_sender(viewer)
            removed = self.state.remove_viewer(viewer.viewer_id)
            if removed is None:
                return False
            logger.info("Viewers | event=disconnected | viewer=%s | total=%s", viewer.viewer_id, len(self.state.viewers))
            return True
        except Exception as e:
            logger.error("Viewers | event=unregister_error | error=%s", e)
            return False

    @property
    def count(self) -> int:
        return len(self.state.viewers)

    def broadcast(self, frame: bytes) -> int:
        """
        Queue one binary frame for every open viewer.

        Returns without waiting on any viewer. A viewer whose send raises is
        unregistered by its sender; delivery to the others continues.
        Must be called from the event loop.

        Returns:
            Number of viewers the frame was queued for
        """
        queued = self._enqueue(frame)
        if queued:
            self.total_frames += 1
        return queued

    def broadcast_json(self, message: Dict[str, Any]) -> int:
        """Queue one structured text message for every open viewer."""
        return self._enqueue(json.dumps(message))

    def _enqueue(self, message: Union[bytes, str]) -> int:
        viewers = self.state.get_open_viewers()
        for viewer in viewers:
            viewer.outbox.append(message)
            if viewer.sender is None or viewer.sender.done():
                viewer.sender = asyncio.create_task(self._drain_outbox(viewer))
        return len(viewers)

    async def _drain_outbox(self, viewer: Viewer) -> None:
        while viewer.outbox and viewer.state is ViewerState.OPEN:
            message = viewer.outbox.popleft()
            if not await self._send(viewer, message):
                break

    async def _send(self, viewer: Viewer, message: Union[bytes, str]) -> bool:
        try:
            if isinstance(message, bytes):
                await viewer.connection.send_bytes(message)
                self.total_bytes += len(message)
            else:
                await viewer.connection.send_text(message)
            viewer.frames_sent += 1
            viewer.bytes_sent += len(message)
            return True
        except Exception as e:
            self.failed_sends += 1
            logger.warning("Viewers | event=send_failed | viewer=%s | error=%s", viewer.viewer_id, e)
            self.unregister(viewer)
            return False

    def _stop_sender(self, viewer: Viewer) -> None:
        viewer.outbox.clear()
        sender = viewer.sender
        if sender is not None and not sender.done() and sender is not asyncio.current_task():
            sender.cancel()

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every viewer's queued messages to be sent.

        Returns:
            False if some viewer was still sending when ``timeout`` expired
        """
        senders = [
            viewer.sender for viewer in self.state.get_viewers()
            if viewer.sender is not None and not viewer.sender.done()
        ]
        if not senders:
            return True
        _, pending = await asyncio.wait(senders, timeout=timeout)
        return not pending

    async def close_all(self, code: int = 1001, reason: Optional[str] = "Server shutdown") -> None:
        """Close and unregister every viewer."""
        for viewer in self.state.get_viewers():
            viewer.state = ViewerState.CLOSING
            self._stop_sender(viewer)
            try:
                await viewer.connection.close(code=code, reason=reason)
            except Exception as e:
                logger.debug("Viewers | event=close_error | viewer=%s | error=%s", viewer.viewer_id, e)
            self.unregister(viewer)

    def get_stats(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.started_at).total_seconds()
        return {
            "active_viewers": self.count,
            "total_connections": self.total_connections,
            "frames_broadcast": self.total_frames,
            "bytes_sent": self.total_bytes,
            "failed_sends": self.failed_sends,
            "queued_messages": sum(len(viewer.outbox) for viewer in self.state.get_viewers()),
            "uptime_seconds": round(uptime, 1),
        }
