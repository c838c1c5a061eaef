"""
Shared fakes for relay tests.

No test spawns ffmpeg or opens a socket: subprocesses are replaced with
FakeProcess instances handed out by a ProcessSpawner patched over
asyncio.create_subprocess_exec, and the UDP transport with FakeTransport.
"""

import asyncio
import itertools
from unittest.mock import AsyncMock, Mock, patch

import pytest

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from drone_relay.config import RECORDING_CONFIG, TRANSCODER_CONFIG
from drone_relay.services.connection_state import ConnectionStateStore

_pids = itertools.count(4000)


class FakeStream:
    """Readable pipe end with read()/readline() like asyncio.StreamReader."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._eof = False

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def feed_eof(self) -> None:
        self._queue.put_nowait(b"")

    async def _next(self) -> bytes:
        if self._eof:
            return b""
        data = await self._queue.get()
        if not data:
            self._eof = True
        return data

    async def read(self, n: int = -1) -> bytes:
        return await self._next()

    async def readline(self) -> bytes:
        return await self._next()


class FakeStdin:
    """Writable pipe end recording every write."""

    def __init__(self, process: "FakeProcess"):
        self.process = process
        self.written = []
        self.closed = False
        self.broken = False

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("Broken pipe")
        self.written.append(data)

    def close(self) -> None:
        self.closed = True
        if self.process.exit_on_stdin_close:
            self.process.finish(0)

    def is_closing(self) -> bool:
        return self.closed


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, exit_on_terminate: bool = True, exit_on_stdin_close: bool = True):
        self.pid = next(_pids)
        self.returncode = None
        self.exit_on_terminate = exit_on_terminate
        self.exit_on_stdin_close = exit_on_stdin_close
        self.terminated = False
        self.killed = False
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.stdin = FakeStdin(self)
        self._exited = asyncio.Event()

    def finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if self.exit_on_terminate:
            self.finish(-15)

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)


class ProcessSpawner:
    """Replacement for asyncio.create_subprocess_exec."""

    def __init__(self):
        self.calls = []
        self.processes = []
        self.failures = []
        self.process_options = {}

    async def __call__(self, *args, **kwargs):
        self.calls.append(list(args))
        if self.failures:
            raise self.failures.pop(0)
        process = FakeProcess(**self.process_options)
        self.processes.append(process)
        return process

    def live(self):
        return [p for p in self.processes if p.returncode is None]


class FakeTransport:
    """Datagram transport capturing sent commands."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.error = None

    def sendto(self, data: bytes, addr=None) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(data.decode("ascii"))

    def close(self) -> None:
        self.closed = True


async def settle(turns: int = 5) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


def make_connection() -> Mock:
    connection = Mock()
    connection.send_bytes = AsyncMock()
    connection.send_text = AsyncMock()
    connection.close = AsyncMock()
    return connection


@pytest.fixture
def spawner():
    spawner = ProcessSpawner()
    with patch("asyncio.create_subprocess_exec", new=spawner):
        yield spawner


@pytest.fixture
def state():
    return ConnectionStateStore()


@pytest.fixture
def transcoder_config():
    config = dict(TRANSCODER_CONFIG)
    config.update({
        "snapshot_enabled": False,
        "restart_backoff_seconds": 0.01,
        "max_restarts": None,
        "stop_timeout_seconds": 0.2,
    })
    return config


@pytest.fixture
def recording_config():
    config = dict(RECORDING_CONFIG)
    config.update({
        "video_codec": "copy",
        "stop_timeout_seconds": 0.2,
        "keep_ts_copy": False,
    })
    return config
