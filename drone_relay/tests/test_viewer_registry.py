"""
Viewer registry and broadcaster tests

Tests cover:
- Sequential identifiers and idempotent registration
- Never-raising unregistration
- Broadcast isolation when one viewer fails or never completes a send
- Emission-order delivery and structured state messages
"""

import asyncio
import json

import pytest

from drone_relay.models import ViewerState
from drone_relay.services.viewer_registry import ViewerRegistry
from conftest import make_connection, settle


class TestViewerRegistration:
    """Tests for register/unregister bookkeeping"""

    @pytest.fixture
    def registry(self, state):
        return ViewerRegistry(state)

    def test_register_assigns_sequential_ids(self, registry):
        first = registry.register(make_connection())
        second = registry.register(make_connection())

        assert (first, second) == (1, 2)
        assert registry.count == 2

    def test_register_same_connection_twice(self, registry):
        connection = make_connection()

        assert registry.register(connection) == registry.register(connection)
        assert registry.count == 1

    def test_unregister_unknown_connection_is_noop(self, registry):
        assert registry.unregister(make_connection()) is False

    def test_unregister_twice(self, registry, state):
        connection = make_connection()
        registry.register(connection)
        viewer = state.find_viewer(connection)

        assert registry.unregister(connection) is True
        assert registry.unregister(connection) is False
        assert viewer.state is ViewerState.CLOSED
        assert registry.count == 0


class TestBroadcast:
    """Tests for frame fan-out"""

    @pytest.fixture
    def registry(self, state):
        return ViewerRegistry(state)

    def test_broadcast_isolates_failing_viewer(self, registry):
        connections = [make_connection() for _ in range(4)]
        connections[2].send_bytes.side_effect = ConnectionError("socket closed")
        for connection in connections:
            registry.register(connection)

        frame = b"\x47" * 3948

        async def scenario():
            queued = registry.broadcast(frame)
            await registry.drain()
            return queued

        assert asyncio.run(scenario()) == 4
        assert registry.count == 3
        for index, connection in enumerate(connections):
            if index != 2:
                connection.send_bytes.assert_awaited_once_with(frame)
        assert registry.failed_sends == 1

    def test_broadcast_without_viewers(self, registry):
        assert registry.broadcast(b"frame") == 0

    def test_hung_viewer_does_not_block_others(self, registry):
        hung, healthy = make_connection(), make_connection()

        async def never_completes(frame):
            await asyncio.Event().wait()

        hung.send_bytes.side_effect = never_completes
        registry.register(hung)
        registry.register(healthy)

        async def scenario():
            for frame in (b"one", b"two", b"three"):
                registry.broadcast(frame)
            flushed = await registry.drain(timeout=0.05)
            queued = registry.get_stats()["queued_messages"]
            registry.unregister(hung)
            await settle()
            return flushed, queued

        flushed, queued = asyncio.run(scenario())

        assert flushed is False
        assert queued == 2
        assert [call.args[0] for call in healthy.send_bytes.await_args_list] == [b"one", b"two", b"three"]
        hung.send_bytes.assert_awaited_once_with(b"one")
        assert registry.count == 1

    def test_frames_arrive_in_emission_order(self, registry):
        connections = [make_connection(), make_connection()]
        for connection in connections:
            registry.register(connection)

        async def scenario():
            for frame in (b"one", b"two", b"three"):
                registry.broadcast(frame)
            await registry.drain()

        asyncio.run(scenario())

        for connection in connections:
            sent = [call.args[0] for call in connection.send_bytes.await_args_list]
            assert sent == [b"one", b"two", b"three"]

    def test_frames_and_state_messages_keep_order(self, registry):
        connection = make_connection()
        order = []
        connection.send_bytes.side_effect = lambda frame: order.append(frame)
        connection.send_text.side_effect = lambda text: order.append(json.loads(text)["type"])
        registry.register(connection)

        async def scenario():
            registry.broadcast(b"one")
            registry.broadcast_json({"type": "droneState", "value": {}})
            registry.broadcast(b"two")
            await registry.drain()

        asyncio.run(scenario())

        assert order == [b"one", "droneState", b"two"]

    def test_registration_during_broadcast(self, registry):
        late = make_connection()
        first = make_connection()

        async def register_late(frame):
            registry.register(late)

        first.send_bytes.side_effect = register_late
        registry.register(first)

        async def scenario():
            queued = registry.broadcast(b"frame")
            await registry.drain()
            return queued

        assert asyncio.run(scenario()) == 1
        assert registry.count == 2
        late.send_bytes.assert_not_awaited()

    def test_broadcast_json_sends_text(self, registry):
        connection = make_connection()
        registry.register(connection)

        async def scenario():
            registry.broadcast_json({"type": "droneState", "value": {"battery": 80}})
            await registry.drain()

        asyncio.run(scenario())

        payload = json.loads(connection.send_text.await_args.args[0])
        assert payload["type"] == "droneState"
        assert payload["value"]["battery"] == 80
        connection.send_bytes.assert_not_awaited()

    def test_close_all(self, registry):
        connections = [make_connection(), make_connection()]
        connections[0].close.side_effect = RuntimeError("already closed")
        for connection in connections:
            registry.register(connection)

        asyncio.run(registry.close_all())

        assert registry.count == 0
        connections[1].close.assert_awaited_once()

    def test_stats(self, registry):
        registry.register(make_connection())

        async def scenario():
            registry.broadcast(b"12345")
            await registry.drain()

        asyncio.run(scenario())

        stats = registry.get_stats()
        assert stats["active_viewers"] == 1
        assert stats["frames_broadcast"] == 1
        assert stats["bytes_sent"] == 5
        assert stats["queued_messages"] == 0
