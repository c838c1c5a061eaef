"""
Streaming transcoder supervisor.

Owns exactly one ffmpeg process that listens for the drone's UDP H.264 feed
and writes a low-latency MPEG-TS stream to stdout (plus an optional
continuously overwritten still image). Output blocks are handed to an async
callback; crashes and launch failures are recovered by relaunching after a
fixed backoff while streaming is still desired.
"""

import asyncio
import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import psutil

from drone_relay.config import DRONE_CONFIG, TRANSCODER_CONFIG
from drone_relay.services.connection_state import ConnectionStateStore

logger = logging.getLogger(__name__)

OutputCallback = Callable[[bytes], Awaitable[None]]

READ_BLOCK_SIZE = 64 * 1024
STABLE_AFTER_SECONDS = 10.0  # A process alive this long resets the restart counter


class TranscoderSupervisor:
    """
    Lifecycle manager for the streaming ffmpeg subprocess.

    The process handle lives in the connection state store; a handle that is
    no longer the store's current one is treated as superseded and its exit
    never triggers a restart.
    """

    def __init__(
        self,
        state: ConnectionStateStore,
        on_output: OutputCallback,
        snapshot_path: Optional[Path] = None,
        config: Optional[Dict[str, Any]] = None,
        video_port: int = DRONE_CONFIG["video_port"],
        on_launch: Optional[Callable[[], None]] = None,
        on_give_up: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.state = state
        self.on_output = on_output
        self.config = config or TRANSCODER_CONFIG
        self.snapshot_path = snapshot_path if self.config.get("snapshot_enabled") else None
        self.video_port = video_port
        self.on_launch = on_launch
        self.on_give_up = on_give_up

        self._lock = asyncio.Lock()
        self._restart_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self.total_launches = 0
        self.total_exits = 0
        self.bytes_received = 0

    def build_command(self) -> List[str]:
        """Build and validate the ffmpeg argument list."""
        cfg = self.config
        if not isinstance(self.video_port, int) or not 0 < self.video_port < 65536:
            raise ValueError(f"Invalid video port: {self.video_port!r}")
        if int(cfg["frame_rate"]) <= 0 or int(cfg["fifo_size"]) <= 0:
            raise ValueError("frame_rate and fifo_size must be positive")

        source = f"udp://0.0.0.0:{self.video_port}?overrun_nonfatal=1&fifo_size={int(cfg['fifo_size'])}"
        command = [
            cfg["ffmpeg_path"],
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", source,
            # Live feed for the browser player
            "-map", "0:v:0",
            "-c:v", cfg["video_codec"],
            "-b:v", cfg["video_bitrate"],
            "-maxrate", cfg["max_bitrate"],
            "-bufsize", cfg["buffer_size"],
            "-an",
            "-s", cfg["frame_size"],
            "-r", str(int(cfg["frame_rate"])),
            "-q:v", str(int(cfg["quality"])),
            "-pix_fmt", "yuv420p",
            "-flush_packets", "1",
            "-f", "mpegts",
            "pipe:1",
        ]
        if self.snapshot_path is not None:
            command += [
                "-map", "0:v:0",
                "-vf", f"fps={cfg['snapshot_fps']}",
                "-q:v", "2",
                "-update", "1",
                "-f", "image2",
                str(self.snapshot_path),
            ]
        return command

    @property
    def is_running(self) -> bool:
        process = self.state.get_stream_process()
        return process is not None and process.returncode is None

    async def start(self) -> bool:
        """
        Launch the transcoder, replacing any process already owned.

        The previous process must be observed to exit, and its remaining
        output handled, before the new one is launched: two processes never
        race for the UDP video port and old bytes never follow the reset.

        Returns:
            True if a process was launched
        """
        async with self._lock:
            self.state.stream.desired_active = True
            self._cancel_restart()
            await self._terminate_current()
            return await self._launch()

    async def stop(self) -> None:
        """Terminate the owned process if present; a no-op otherwise."""
        async with self._lock:
            self.state.stream.desired_active = False
            self._cancel_restart()
            await self._terminate_current()
            self.state.stream.restart_count = 0

    async def shutdown(self) -> None:
        await self.stop()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _launch(self) -> bool:
        self.state.mark_stream_starting()
        if self.on_launch is not None:
            self.on_launch()

        try:
            command = self.build_command()
        except ValueError as e:
            logger.error("Transcoder | event=invalid_config | error=%s", e)
            self.state.set_stream_error(str(e))
            self.state.set_stream_process(None)
            self._give_up()
            return False

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Transcoder | event=launch_failed | error=%s", e)
            self.state.set_stream_error(str(e))
            self.state.set_stream_process(None)
            self._schedule_restart()
            return False

        self.total_launches += 1
        self.state.set_stream_process(process)
        self.state.set_stream_error(None)
        self._watch_task = asyncio.create_task(self._watch(process))
        self._track(self._watch_task)
        logger.info("Transcoder | event=process_started | pid=%s | port=%s", process.pid, self.video_port)
        return True

    async def _terminate_current(self) -> None:
        process = self.state.get_stream_process()
        watcher, self._watch_task = self._watch_task, None

        if process is not None:
            # Detach first so the exit watcher sees a superseded handle
            self.state.set_stream_process(None)
            if process.returncode is None:
                await self._stop_process(process)

        await self._finish_watcher(watcher)

    async def _stop_process(self, process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return

        timeout = self.config.get("stop_timeout_seconds", 3.0)
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Transcoder | event=terminate_timeout | pid=%s | timeout=%s", process.pid, timeout)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        logger.info("Transcoder | event=process_stopped | pid=%s | code=%s", process.pid, process.returncode)

    async def _finish_watcher(self, watcher: Optional[asyncio.Task]) -> None:
        """Let the old process's watcher hand over its last in-flight block."""
        if watcher is None or watcher.done() or watcher is asyncio.current_task():
            return
        _, pending = await asyncio.wait({watcher}, timeout=self.config.get("stop_timeout_seconds", 3.0))
        if pending:
            logger.warning("Transcoder | event=watcher_timeout")
            watcher.cancel()

    async def _watch(self, process) -> None:
        """Pump stdout, scan stderr and react to exit for one process."""
        stderr_task = asyncio.create_task(self._scan_stderr(process))
        returncode = None
        try:
            await self._pump_stdout(process)
            returncode = await process.wait()
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise
        except Exception as e:
            logger.error("Transcoder | event=watch_error | pid=%s | error=%s", process.pid, e)
            returncode = process.returncode

        try:
            await asyncio.wait_for(stderr_task, timeout=1.0)
        except asyncio.TimeoutError:
            stderr_task.cancel()
        except Exception as e:
            logger.debug("Transcoder | event=stderr_task_error | error=%s", e)

        try:
            await self._handle_exit(process, returncode)
        except Exception as e:
            logger.error("Transcoder | event=exit_handler_error | pid=%s | error=%s", process.pid, e)

    async def _pump_stdout(self, process) -> None:
        while True:
            block = await process.stdout.read(READ_BLOCK_SIZE)
            if not block:
                break
            if self.state.get_stream_process() is not process:
                continue  # superseded: drain without forwarding
            self.bytes_received += len(block)
            try:
                await self.on_output(block)
            except Exception as e:
                logger.error("Transcoder | event=output_handler_error | error=%s", e)

    async def _scan_stderr(self, process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            self.handle_stderr_line(line.decode("utf-8", errors="replace"))

    def handle_stderr_line(self, line: str) -> Optional[str]:
        """
        Classify one stderr line.

        Returns:
            "ignored" for benign/empty lines, "failure" for lines matching the
            failure vocabulary (recorded as last error), "info" otherwise
        """
        line = line.strip()
        if not line or any(fragment in line for fragment in self.config["benign_stderr"]):
            return "ignored"

        lowered = line.lower()
        if any(word in lowered for word in self.config["failure_vocabulary"]):
            logger.warning("Transcoder | event=stderr_failure | line=%s", line)
            self.state.set_stream_error(line)
            return "failure"

        logger.debug("Transcoder | event=stderr | line=%s", line)
        return "info"

    async def _handle_exit(self, process, returncode: Optional[int]) -> None:
        self.total_exits += 1
        if self.state.get_stream_process() is not process:
            logger.debug("Transcoder | event=superseded_exit | pid=%s | code=%s", process.pid, returncode)
            return

        stream = self.state.stream
        if stream.started_at and (datetime.now() - stream.started_at).total_seconds() >= STABLE_AFTER_SECONDS:
            stream.restart_count = 0

        self.state.set_stream_process(None)
        logger.warning("Transcoder | event=process_exit | pid=%s | code=%s | desired=%s",
                       process.pid, returncode, stream.desired_active)
        if stream.desired_active:
            self._schedule_restart()

    def _schedule_restart(self) -> None:
        stream = self.state.stream
        if not stream.desired_active:
            return

        max_restarts = self.config.get("max_restarts")
        if max_restarts is not None and stream.restart_count >= max_restarts:
            logger.error("Transcoder | event=restart_exhausted | attempts=%s", stream.restart_count)
            self._give_up()
            return

        stream.restart_count += 1
        delay = self.config.get("restart_backoff_seconds", 1.0)
        logger.info("Transcoder | event=restart_scheduled | attempt=%s | delay=%s", stream.restart_count, delay)
        self._restart_task = asyncio.create_task(self._restart_after(delay))
        self._track(self._restart_task)

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if not self.state.stream.desired_active or self.state.get_stream_process() is not None:
                return
            await self._launch()

    def _give_up(self) -> None:
        self.state.stream.desired_active = False
        if self.on_give_up is not None:
            self._track(asyncio.create_task(self._notify_give_up()))

    async def _notify_give_up(self) -> None:
        try:
            await self.on_give_up()
        except Exception as e:
            logger.error("Transcoder | event=give_up_handler_error | error=%s", e)

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def get_status(self) -> Dict[str, Any]:
        status = self.state.stream.to_dict()
        status.update({
            "running": self.is_running,
            "restart_pending": self._restart_task is not None and not self._restart_task.done(),
            "total_launches": self.total_launches,
            "total_exits": self.total_exits,
            "bytes_received": self.bytes_received,
            "process": _process_stats(status["pid"]),
        })
        return status


def _process_stats(pid: Optional[int]) -> Optional[Dict[str, Any]]:
    """CPU/memory figures for a live process, None when unavailable."""
    if pid is None:
        return None
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            return {
                "cpu_percent": proc.cpu_percent(interval=None),
                "memory_mb": round(proc.memory_info().rss / (1024 * 1024), 1),
            }
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
