"""
Status hub: live status fan-out per task or batch id.

One StatusHub exists per id while it has subscribers; the registry
drops it when the last connection leaves, so an idle id costs nothing
beyond not being in a dict. Hubs never reconnect on their own:
subscribers reconnect and re-attach.

Workers run in other processes, so they publish to Redis and the
StatusRelay inside the API process forwards into the local registry.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog

from taskengine.core.exceptions import MissingTokenError
from taskengine.core.metrics import status_broadcasts_total, status_subscribers_active
from taskengine.schemas.task import PongFrame

logger = structlog.get_logger(__name__)

CLOSE_INTERNAL_ERROR = 1011


class WebSocketLike(Protocol):
    """The slice of starlette's WebSocket the hub relies on."""

    async def accept(self) -> None: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    ATTACHED = "attached"
    CLOSED = "closed"


class HubConnection:
    """One subscriber: Disconnected -> Attached -> Closed."""

    def __init__(self, websocket: WebSocketLike):
        self.websocket = websocket
        self.state = ConnectionState.DISCONNECTED

    async def accept(self) -> None:
        await self.websocket.accept()
        self.state = ConnectionState.ATTACHED

    async def send(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            # Peer already gone
            logger.debug("connection_close_failed", error=str(e))


class StatusHub:
    """Fan-out point for one task or batch id."""

    def __init__(self, key: str):
        self.key = key
        self._connections: set[HubConnection] = set()
        self._attaching = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def is_idle(self) -> bool:
        return not self._connections and not self._attaching

    async def attach(self, websocket: WebSocketLike, token: str | None) -> HubConnection:
        """
        Accept a subscriber.

        The token was issued and validated upstream; the hub only requires
        that one is present.

        Raises:
            MissingTokenError: no token supplied
        """
        if not token:
            raise MissingTokenError("Missing access token", {"key": self.key})

        connection = HubConnection(websocket)
        # Counted while accept is pending so the registry keeps this hub
        self._attaching += 1
        try:
            await connection.accept()
        finally:
            self._attaching -= 1
        self._connections.add(connection)
        status_subscribers_active.inc()

        logger.info("status_subscriber_attached", key=self.key, connections=self.connection_count)
        return connection

    def detach(self, connection: HubConnection) -> None:
        if connection in self._connections:
            self._connections.discard(connection)
            status_subscribers_active.dec()
        connection.state = ConnectionState.CLOSED

    async def handle_message(self, connection: HubConnection, raw: str | bytes) -> bool:
        """
        Answer heartbeat pings; anything else is ignored.

        Returns whether a reply was sent.
        """
        if not isinstance(raw, str):
            return False

        try:
            data = json.loads(raw)
        except ValueError:
            return False

        if not isinstance(data, dict) or data.get("type") != "ping":
            return False

        await connection.send(PongFrame().model_dump_json(by_alias=True))
        return True

    async def broadcast(self, payload: dict[str, Any]) -> int:
        """
        Deliver payload to every attached connection.

        A connection that fails to receive is closed and dropped.
        Returns the number of connections that received it.
        """
        message = json.dumps(payload, default=str)
        connections = list(self._connections)
        sent = 0

        for connection in connections:
            try:
                await connection.send(message)
                sent += 1
            except Exception as e:
                logger.warning("status_send_failed", key=self.key, error=str(e))
                await connection.close(code=CLOSE_INTERNAL_ERROR, reason="Failed to send")
                self.detach(connection)
                status_broadcasts_total.labels(result="dropped").inc()

        status_broadcasts_total.labels(result="sent").inc(sent)
        logger.debug("status_broadcast", key=self.key, sent=sent, total=len(connections))
        return sent


class HubRegistry:
    """Keyed hubs, created on first attach and discarded when idle."""

    def __init__(self) -> None:
        self._hubs: dict[str, StatusHub] = {}

    def __len__(self) -> int:
        return len(self._hubs)

    def get(self, key: str) -> StatusHub | None:
        return self._hubs.get(key)

    def hub(self, key: str) -> StatusHub:
        hub = self._hubs.get(key)
        if hub is None:
            hub = StatusHub(key)
            self._hubs[key] = hub
        return hub

    def release(self, key: str) -> None:
        hub = self._hubs.get(key)
        if hub is not None and hub.is_idle:
            del self._hubs[key]

    async def attach(
        self,
        key: str,
        websocket: WebSocketLike,
        token: str | None,
    ) -> tuple[StatusHub, HubConnection]:
        hub = self.hub(key)
        try:
            connection = await hub.attach(websocket, token)
        except Exception:
            self.release(key)
            raise
        return hub, connection

    def detach(self, key: str, connection: HubConnection) -> None:
        hub = self._hubs.get(key)
        if hub is not None:
            hub.detach(connection)
            self.release(key)

    async def broadcast(self, key: str, payload: dict[str, Any]) -> int:
        """Broadcast to the hub for key; no hub means no subscribers."""
        hub = self._hubs.get(key)
        if hub is None:
            return 0

        sent = await hub.broadcast(payload)
        self.release(key)
        return sent


class StatusPublisher(ABC):
    """Where the processor sends status snapshots."""

    @abstractmethod
    async def publish(self, key: str, payload: dict[str, Any]) -> None:
        pass


class LocalStatusPublisher(StatusPublisher):
    """Same-process delivery straight into the registry."""

    def __init__(self, registry: HubRegistry):
        self.registry = registry

    async def publish(self, key: str, payload: dict[str, Any]) -> None:
        await self.registry.broadcast(key, payload)


class RedisStatusPublisher(StatusPublisher):
    """Cross-process delivery over Redis pub/sub, one channel per id."""

    def __init__(self, client: aioredis.Redis, prefix: str):
        self.client = client
        self.prefix = prefix

    def channel(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def publish(self, key: str, payload: dict[str, Any]) -> None:
        await self.client.publish(self.channel(key), json.dumps(payload, default=str))


class StatusRelay:
    """
    Forwards Redis status channels into the local hub registry.

    Runs inside the API process for as long as the application lives.
    """

    def __init__(self, registry: HubRegistry, client: aioredis.Redis, prefix: str):
        self.registry = registry
        self.client = client
        self.prefix = prefix
        self._task: asyncio.Task | None = None

    def key_for(self, channel: str) -> str:
        return channel[len(self.prefix) + 1:]

    async def forward(self, message: dict[str, Any]) -> int:
        """Route one pub/sub message; returns the number of subscribers reached."""
        if message.get("type") != "pmessage":
            return 0

        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("status_relay_bad_payload", channel=message.get("channel"))
            return 0

        return await self.registry.broadcast(self.key_for(message["channel"]), payload)

    async def run(self) -> None:
        pubsub = self.client.pubsub()
        await pubsub.psubscribe(f"{self.prefix}:*")
        logger.info("status_relay_started", pattern=f"{self.prefix}:*")

        try:
            async for message in pubsub.listen():
                await self.forward(message)
        finally:
            await pubsub.aclose()
            logger.info("status_relay_stopped")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


# Global registry for the API process
hub_registry = HubRegistry()
