"""
Unit tests for the status hub, registry and publishers.
"""

import asyncio
import json

import pytest

from taskengine.core.exceptions import MissingTokenError
from taskengine.features.tasks.hub import (
    CLOSE_INTERNAL_ERROR,
    ConnectionState,
    HubRegistry,
    LocalStatusPublisher,
    RedisStatusPublisher,
    StatusHub,
    StatusRelay,
)
from tests.fakes import FakeWebSocket


class FakeRedisPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


@pytest.mark.unit
class TestStatusHub:
    async def test_attach_requires_token(self):
        hub = StatusHub("task-1")
        websocket = FakeWebSocket()

        with pytest.raises(MissingTokenError):
            await hub.attach(websocket, "")

        assert websocket.accepted is False
        assert hub.is_idle

    async def test_attach_accepts_and_registers(self):
        hub = StatusHub("task-1")
        websocket = FakeWebSocket()

        connection = await hub.attach(websocket, "token-abc")

        assert websocket.accepted
        assert connection.state is ConnectionState.ATTACHED
        assert hub.connection_count == 1

    async def test_ping_gets_pong_with_timestamp(self):
        hub = StatusHub("task-1")
        websocket = FakeWebSocket()
        connection = await hub.attach(websocket, "token")

        replied = await hub.handle_message(connection, json.dumps({"type": "ping"}))

        assert replied
        frame = json.loads(websocket.sent[0])
        assert frame["type"] == "pong"
        assert isinstance(frame["timestamp"], int)

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", json.dumps({"type": "subscribe"}), b"\x00"])
    async def test_other_messages_ignored(self, raw):
        hub = StatusHub("task-1")
        websocket = FakeWebSocket()
        connection = await hub.attach(websocket, "token")

        assert await hub.handle_message(connection, raw) is False
        assert websocket.sent == []

    async def test_broadcast_reaches_every_connection(self):
        hub = StatusHub("task-1")
        sockets = [FakeWebSocket(), FakeWebSocket()]
        for websocket in sockets:
            await hub.attach(websocket, "token")

        sent = await hub.broadcast({"type": "task_status", "taskId": "task-1", "status": "processing"})

        assert sent == 2
        for websocket in sockets:
            assert json.loads(websocket.sent[0])["status"] == "processing"

    async def test_failed_send_closes_and_drops_connection(self):
        hub = StatusHub("task-1")
        healthy = FakeWebSocket()
        broken = FakeWebSocket(fail_sends=True)
        await hub.attach(healthy, "token")
        broken_connection = await hub.attach(broken, "token")

        sent = await hub.broadcast({"type": "task_status"})

        assert sent == 1
        assert broken.closed_with == CLOSE_INTERNAL_ERROR
        assert broken_connection.state is ConnectionState.CLOSED
        assert hub.connection_count == 1

    async def test_detach(self):
        hub = StatusHub("task-1")
        connection = await hub.attach(FakeWebSocket(), "token")

        hub.detach(connection)

        assert hub.is_idle
        assert connection.state is ConnectionState.CLOSED


@pytest.mark.unit
class TestHubRegistry:
    async def test_hub_discarded_when_last_connection_leaves(self):
        registry = HubRegistry()
        _, first = await registry.attach("batch-1", FakeWebSocket(), "token")
        _, second = await registry.attach("batch-1", FakeWebSocket(), "token")
        assert len(registry) == 1

        registry.detach("batch-1", first)
        assert registry.get("batch-1") is not None

        registry.detach("batch-1", second)
        assert registry.get("batch-1") is None

    async def test_rejected_attach_leaves_no_hub(self):
        registry = HubRegistry()

        with pytest.raises(MissingTokenError):
            await registry.attach("task-1", FakeWebSocket(), None)

        assert len(registry) == 0

    async def test_broadcast_to_unknown_key_is_noop(self):
        assert await HubRegistry().broadcast("nobody", {"type": "task_status"}) == 0

    async def test_broadcast_dropping_last_connection_tears_hub_down(self):
        registry = HubRegistry()
        await registry.attach("task-1", FakeWebSocket(fail_sends=True), "token")

        assert await registry.broadcast("task-1", {"type": "task_status"}) == 0
        assert len(registry) == 0

    async def test_broadcast_during_pending_accept_keeps_hub(self):
        registry = HubRegistry()
        gate = asyncio.Event()
        websocket = FakeWebSocket(accept_gate=gate)

        attaching = asyncio.create_task(registry.attach("task-1", websocket, "token"))
        await asyncio.sleep(0)

        assert await registry.broadcast("task-1", {"status": "pending"}) == 0
        assert registry.get("task-1") is not None

        gate.set()
        hub, _ = await attaching

        assert registry.get("task-1") is hub
        assert await registry.broadcast("task-1", {"status": "processing"}) == 1
        assert json.loads(websocket.sent[0]) == {"status": "processing"}

    async def test_failed_accept_releases_hub(self):
        registry = HubRegistry()

        class RefusingWebSocket(FakeWebSocket):
            async def accept(self) -> None:
                raise ConnectionError("handshake aborted")

        with pytest.raises(ConnectionError):
            await registry.attach("task-1", RefusingWebSocket(), "token")

        assert len(registry) == 0

    async def test_failed_send_during_registry_broadcast_closes_socket(self):
        registry = HubRegistry()
        broken = FakeWebSocket(fail_sends=True)
        await registry.attach("task-1", broken, "token")

        await registry.broadcast("task-1", {"type": "task_status"})

        assert broken.closed_with == CLOSE_INTERNAL_ERROR


@pytest.mark.unit
class TestPublishers:
    async def test_local_publisher_delivers_through_registry(self):
        registry = HubRegistry()
        websocket = FakeWebSocket()
        await registry.attach("task-1", websocket, "token")

        await LocalStatusPublisher(registry).publish("task-1", {"status": "completed"})

        assert json.loads(websocket.sent[0]) == {"status": "completed"}

    async def test_redis_publisher_uses_per_key_channel(self):
        client = FakeRedisPublisher()

        await RedisStatusPublisher(client, "taskengine:status").publish("task-1", {"status": "failed"})

        channel, message = client.published[0]
        assert channel == "taskengine:status:task-1"
        assert json.loads(message) == {"status": "failed"}

    async def test_relay_forwards_pattern_messages(self):
        registry = HubRegistry()
        websocket = FakeWebSocket()
        await registry.attach("task-1", websocket, "token")
        relay = StatusRelay(registry, client=None, prefix="taskengine:status")

        delivered = await relay.forward({
            "type": "pmessage",
            "pattern": "taskengine:status:*",
            "channel": "taskengine:status:task-1",
            "data": json.dumps({"status": "completed"}),
        })

        assert delivered == 1
        assert json.loads(websocket.sent[0]) == {"status": "completed"}

    async def test_relay_ignores_subscription_notices_and_bad_payloads(self):
        relay = StatusRelay(HubRegistry(), client=None, prefix="taskengine:status")

        assert await relay.forward({"type": "psubscribe", "channel": "taskengine:status:*", "data": 1}) == 0
        assert await relay.forward({
            "type": "pmessage",
            "channel": "taskengine:status:task-1",
            "data": "{broken",
        }) == 0
