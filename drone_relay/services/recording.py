"""
Recording sink.

Tees the live chunk stream into a second ffmpeg process that remuxes it
into a fast-start MP4 file (optionally keeping a raw .ts copy as well).
The broadcast path never needs to know whether a recording is running:
writes are best effort and a dead recorder heals itself without raising.
"""

import asyncio
import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from drone_relay.config import RECORDING_CONFIG, TRANSCODER_CONFIG
from drone_relay.constants import RECORDING_PREFIX
from drone_relay.models import RecordingSession
from drone_relay.services.connection_state import ConnectionStateStore
from drone_relay.services.errors import (
    RecordingAlreadyActive, RecordingNotActive, StreamNotActive
)

logger = logging.getLogger(__name__)


class RecordingSink:
    """Start/stop lifecycle and frame tee for one recording at a time."""

    def __init__(
        self,
        state: ConnectionStateStore,
        recordings_path: Path,
        ts_recordings_path: Optional[Path] = None,
        config: Optional[Dict[str, Any]] = None,
        ffmpeg_path: str = TRANSCODER_CONFIG["ffmpeg_path"],
    ):
        self.state = state
        self.recordings_path = Path(recordings_path)
        self.ts_recordings_path = Path(ts_recordings_path) if ts_recordings_path else None
        self.config = config or RECORDING_CONFIG
        self.ffmpeg_path = ffmpeg_path
        self.last_error: Optional[str] = None
        self._exit_watchers: Dict[int, asyncio.Task] = {}

    @property
    def is_active(self) -> bool:
        return self.state.is_recording_active()

    def build_command(self, output_path: Path) -> List[str]:
        codec = self.config.get("video_codec", "copy")
        command = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-f", "mpegts",
            "-i", "pipe:0",
            "-map", "0:v:0",
            "-c:v", codec,
        ]
        if codec != "copy":
            command += ["-preset", "veryfast", "-pix_fmt", "yuv420p"]
        command += [
            "-an",
            "-movflags", "+faststart",
            "-y",
            str(output_path),
        ]
        return command

    def _unique_path(self, directory: Path, stamp: str, extension: str) -> Path:
        """Timestamp-derived path that never collides with an existing file."""
        candidate = directory / f"{RECORDING_PREFIX}{stamp}{extension}"
        counter = 1
        while candidate.exists():
            candidate = directory / f"{RECORDING_PREFIX}{stamp}_{counter}{extension}"
            counter += 1
        return candidate

    async def start(self) -> RecordingSession:
        """
        Begin recording the active stream.

        Raises:
            RecordingAlreadyActive: a recording session already exists
            StreamNotActive: there is no stream to record
            OSError: the recorder process could not be launched
        """
        if self.state.get_recording() is not None:
            raise RecordingAlreadyActive()
        if not self.state.is_stream_active():
            raise StreamNotActive()

        stamp = str(int(datetime.now().timestamp() * 1000))
        file_path = self._unique_path(self.recordings_path, stamp, self.config.get("container_extension", ".mp4"))
        session = RecordingSession(file_path=file_path)
        # Reserve the slot before awaiting so a concurrent start is rejected
        self.state.set_recording(session)

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(file_path),
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            self.state.set_recording(None)
            self.last_error = str(e)
            logger.error("Recording | event=launch_failed | file=%s | error=%s", file_path.name, e)
            raise

        session.process = process
        if self.state.get_recording() is not session:
            # Stopped while the recorder was launching
            process.kill()
            await process.wait()
            raise RecordingNotActive()

        if self.config.get("keep_ts_copy") and self.ts_recordings_path is not None:
            session.ts_file_path = self._unique_path(self.ts_recordings_path, stamp, ".ts")
            try:
                session.ts_file = open(session.ts_file_path, "wb")
            except OSError as e:
                logger.warning("Recording | event=ts_copy_unavailable | error=%s", e)
                session.ts_file_path = None

        self._exit_watchers[process.pid] = asyncio.create_task(self._watch_exit(session))
        self.last_error = None
        logger.info("Recording | event=started | file=%s | pid=%s", file_path.name, process.pid)
        return session

    def write(self, frame: bytes) -> bool:
        """
        Tee one frame into the recorder; never raises.

        Returns:
            True if the frame was handed to the recorder
        """
        session = self.state.get_recording()
        if session is None or not session.active or session.process is None:
            return False

        process = session.process
        stdin = process.stdin
        try:
            if process.returncode is not None or stdin is None or stdin.is_closing():
                raise BrokenPipeError(f"recorder exited with code {process.returncode}")
            stdin.write(frame)
            if session.ts_file is not None:
                session.ts_file.write(frame)
        except Exception as e:
            self._heal(session, e)
            return False

        session.frames_written += 1
        session.bytes_written += len(frame)
        return True

    def _heal(self, session: RecordingSession, error: BaseException) -> None:
        """Drop a broken recorder without disturbing the frame path."""
        message = f"Recorder failed: {error}"
        session.last_error = message
        self.last_error = message
        session.active = False
        logger.error("Recording | event=write_failed | file=%s | error=%s", session.file_name, error)

        process = session.process
        if process is not None and process.stdin is not None:
            try:
                process.stdin.close()
            except Exception as e:
                logger.debug("Recording | event=stdin_close_error | error=%s", e)
        self._close_ts_copy(session)
        session.process = None
        if self.state.get_recording() is session:
            self.state.set_recording(None)

    async def stop(self) -> RecordingSession:
        """
        Finish the recording: close the recorder's input, wait for it to
        flush the container trailer, force-terminate after the timeout.

        Raises:
            RecordingNotActive: nothing is recording
        """
        session = self.state.get_recording()
        if session is None:
            raise RecordingNotActive()

        # Clear first so a concurrent stop sees nothing to tear down
        self.state.set_recording(None)
        session.active = False
        self._close_ts_copy(session)

        process = session.process
        if process is not None:
            await self._drain(session, process)

        logger.info("Recording | event=stopped | file=%s | frames=%s | bytes=%s",
                    session.file_name, session.frames_written, session.bytes_written)
        return session

    async def _drain(self, session: RecordingSession, process) -> None:
        timeout = self.config.get("stop_timeout_seconds", 5.0)
        try:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
        except Exception as e:
            logger.debug("Recording | event=stdin_close_error | error=%s", e)

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Recording | event=stop_timeout | file=%s | timeout=%s", session.file_name, timeout)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

        if process.returncode not in (0, None):
            session.last_error = f"Recorder exited with code {process.returncode}"

    async def force_stop(self) -> Optional[RecordingSession]:
        """Stop any active recording, used when the source stream goes away."""
        if self.state.get_recording() is None:
            return None
        try:
            return await self.stop()
        except RecordingNotActive:
            return None

    async def _watch_exit(self, session: RecordingSession) -> None:
        """Heal the session if the recorder dies while still expected to run."""
        process = session.process
        if process is None:
            return
        try:
            if process.stderr is not None:
                while True:
                    line = await process.stderr.readline()
                    if not line:
                        break
                    text = line.decode("utf-8", errors="replace").strip()
                    if text:
                        session.last_error = text
                        logger.warning("Recording | event=stderr | file=%s | line=%s", session.file_name, text)
            code = await process.wait()
            if session.active and self.state.get_recording() is session:
                self._heal(session, BrokenPipeError(f"recorder exited with code {code}"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Recording | event=watch_error | error=%s", e)
        finally:
            self._exit_watchers.pop(process.pid, None)

    def _close_ts_copy(self, session: RecordingSession) -> None:
        if session.ts_file is None:
            return
        try:
            session.ts_file.close()
        except OSError as e:
            logger.warning("Recording | event=ts_close_failed | error=%s", e)
        session.ts_file = None

    async def shutdown(self) -> None:
        await self.force_stop()
        for task in list(self._exit_watchers.values()):
            task.cancel()
        if self._exit_watchers:
            await asyncio.gather(*self._exit_watchers.values(), return_exceptions=True)
        self._exit_watchers.clear()

    def get_status(self) -> Dict[str, Any]:
        session = self.state.get_recording()
        return {
            "active": self.is_active,
            "session": session.to_dict() if session else None,
            "last_error": self.last_error,
        }
