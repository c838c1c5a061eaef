"""
Drone relay service tests

Tests cover:
- Frame path: chunking, recording tee and broadcast; a hung viewer never stalls it
- Stream stop force-stops recording first
- Photo capture and browser photo saving
- Startup failure on unwritable media storage
- Connection state store bookkeeping
"""

import asyncio
import base64
from unittest.mock import AsyncMock, Mock

import pytest

from drone_relay.models import SessionStatus, TelemetrySnapshot
from drone_relay.services.errors import PhotoDataMissing, SnapshotUnavailable
from drone_relay.services.relay_service import DroneRelayService
from drone_relay.utils.media_paths import MediaPathManager
from conftest import make_connection


class TestDroneRelayService:
    """Test suite for DroneRelayService"""

    @pytest.fixture
    def paths(self, tmp_path):
        paths = MediaPathManager(tmp_path / "uploads")
        paths.ensure_directories()
        return paths

    @pytest.fixture
    def service(self, paths):
        return DroneRelayService(paths=paths)


class TestFramePath(TestDroneRelayService):
    """Tests for the chunk -> recording tee -> broadcast path"""

    def test_output_is_chunked_broadcast_and_teed(self, service):
        viewer = make_connection()
        service.registry.register(viewer)
        service.recorder.write = Mock(return_value=True)
        chunk_size = service.chunker.chunk_size

        async def scenario():
            await service._handle_output(b"\x47" * (chunk_size * 2 + 10))
            await service.registry.drain()

        asyncio.run(scenario())

        assert viewer.send_bytes.await_count == 2
        assert all(len(call.args[0]) == chunk_size for call in viewer.send_bytes.await_args_list)
        assert service.recorder.write.call_count == 2
        assert service.chunker.pending == 10

    def test_failing_viewer_does_not_stop_recording_tee(self, service):
        bad, good = make_connection(), make_connection()
        bad.send_bytes.side_effect = ConnectionResetError()
        service.registry.register(bad)
        service.registry.register(good)
        service.recorder.write = Mock(return_value=True)

        async def scenario():
            await service._handle_output(b"\x47" * service.chunker.chunk_size)
            await service.registry.drain()

        asyncio.run(scenario())

        good.send_bytes.assert_awaited_once()
        service.recorder.write.assert_called_once()
        assert service.registry.count == 1

    def test_hung_viewer_does_not_stall_producer(self, service):
        hung, healthy = make_connection(), make_connection()

        async def never_completes(frame):
            await asyncio.Event().wait()

        hung.send_bytes.side_effect = never_completes
        service.registry.register(hung)
        service.registry.register(healthy)
        service.recorder.write = Mock(return_value=True)
        chunk_size = service.chunker.chunk_size

        async def scenario():
            await asyncio.wait_for(service._handle_output(b"\x47" * (chunk_size * 3)), timeout=1.0)
            await service.registry.drain(timeout=0.05)
            await service.registry.close_all()

        asyncio.run(scenario())

        assert healthy.send_bytes.await_count == 3
        assert service.recorder.write.call_count == 3
        hung.send_bytes.assert_awaited_once()

    def test_new_transcoder_process_resets_chunker(self, service):
        service.chunker.feed(b"\x47" * 100)

        service.supervisor.on_launch()

        assert service.chunker.pending == 0


class TestStreamLifecycle(TestDroneRelayService):
    """Tests for stream start/stop orchestration"""

    def test_stop_stream_stops_recording_first(self, service):
        calls = []
        service.recorder.force_stop = AsyncMock(side_effect=lambda: calls.append("recording"))
        service.supervisor.stop = AsyncMock(side_effect=lambda: calls.append("stream"))

        asyncio.run(service.stop_stream())

        assert calls == ["recording", "stream"]

    def test_start_stream_when_running_is_noop(self, service):
        service.state.set_stream_process(Mock(pid=1, returncode=None))
        service.supervisor.start = AsyncMock()

        assert asyncio.run(service.start_stream()) is False
        service.supervisor.start.assert_not_awaited()

    def test_start_stream_launches_supervisor(self, service):
        service.supervisor.start = AsyncMock(return_value=True)

        assert asyncio.run(service.start_stream()) is True

    def test_streamon_command_routes_to_stream_start(self, service):
        service.commands.transport = Mock()
        service.commands.config = dict(service.commands.config, streamon_ack_timeout_seconds=0.01)
        service.supervisor.start = AsyncMock(return_value=True)

        asyncio.run(service.send_command("streamon"))

        service.supervisor.start.assert_awaited_once()


class TestPhotos(TestDroneRelayService):
    """Tests for photo capture and saving"""

    def test_capture_without_snapshot(self, service):
        with pytest.raises(SnapshotUnavailable):
            asyncio.run(service.capture_photo())

    def test_capture_copies_current_frame(self, service, paths):
        paths.current_frame_path.write_bytes(b"\xff\xd8jpeg")

        result = asyncio.run(service.capture_photo())

        photo = paths.photos_path / result["fileName"]
        assert result["fileName"].startswith("photo_")
        assert result["fileName"].endswith(".jpg")
        assert photo.read_bytes() == b"\xff\xd8jpeg"
        assert isinstance(result["timestamp"], int)

    def test_save_photo_from_data_url(self, service, paths):
        encoded = base64.b64encode(b"\x89PNGdata").decode("ascii")

        result = asyncio.run(service.save_photo_data(f"data:image/png;base64,{encoded}"))

        assert result["fileName"].endswith(".png")
        assert (paths.photos_path / result["fileName"]).read_bytes() == b"\x89PNGdata"

    @pytest.mark.parametrize("payload", [None, "", "data:image/png;base64,", "not base64!"])
    def test_save_photo_rejects_missing_data(self, service, payload):
        with pytest.raises(PhotoDataMissing):
            asyncio.run(service.save_photo_data(payload))


class TestStartup:
    """Tests for startup and shutdown"""

    def test_unwritable_media_root_is_fatal(self, tmp_path):
        blocker = tmp_path / "uploads"
        blocker.write_text("not a directory")
        service = DroneRelayService(paths=MediaPathManager(blocker))

        with pytest.raises(OSError):
            asyncio.run(service.startup())

        assert service.started is False

    def test_shutdown_order_and_emergency(self, tmp_path):
        service = DroneRelayService(paths=MediaPathManager(tmp_path))
        service.commands.transport = Mock()
        service.commands.send_emergency = Mock(return_value=True)
        service.recorder.shutdown = AsyncMock()
        service.supervisor.shutdown = AsyncMock()

        asyncio.run(service.shutdown(send_emergency=True))

        service.commands.send_emergency.assert_called_once()
        service.recorder.shutdown.assert_awaited_once()
        service.supervisor.shutdown.assert_awaited_once()
        assert service.commands.transport is None

    def test_status_shape(self, tmp_path):
        status = DroneRelayService(paths=MediaPathManager(tmp_path)).get_status()

        assert status["stream"]["status"] == "idle"
        assert status["recording"]["active"] is False
        assert status["chunker"]["chunk_size"] == 3948
        assert status["telemetry"]["battery"] is None


class TestConnectionStateStore:
    """Tests for the shared state record"""

    def test_stream_status_follows_handle(self, state):
        state.mark_stream_starting()
        assert state.stream.status is SessionStatus.STARTING
        assert state.is_stream_active() is False

        state.set_stream_process(Mock(pid=7))
        assert state.is_stream_active() is True

        state.set_stream_process(None)
        assert state.stream.status is SessionStatus.IDLE

    def test_telemetry_fields_are_independent(self):
        snapshot = TelemetrySnapshot()
        snapshot.update("battery", 90)

        payload = snapshot.to_dict()
        assert payload["battery"] == 90
        assert payload["speed"] is None
        assert isinstance(payload["lastUpdate"], int)

    def test_unknown_telemetry_field(self):
        with pytest.raises(KeyError):
            TelemetrySnapshot().update("altitude", 3)
