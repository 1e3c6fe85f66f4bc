"""
Status push endpoints.

Subscribers connect with a token issued by the main application; the
hub only checks that one is present. Workers in other processes reach
subscribers through the Redis relay, or through the internal broadcast
route when no relay is running. That route answers only callers
presenting the configured shared secret in X-Internal-Secret.
"""

import secrets
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, WebSocket, status

from taskengine.config import settings
from taskengine.core.exceptions import MissingTokenError
from taskengine.features.tasks.hub import ConnectionState, HubRegistry, hub_registry

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Status"])


def get_hub_registry() -> HubRegistry:
    return hub_registry


Registry = Annotated[HubRegistry, Depends(get_hub_registry)]


def get_internal_secret() -> str | None:
    return settings.internal_broadcast_secret


async def require_internal_secret(
    secret: Annotated[str | None, Depends(get_internal_secret)],
    x_internal_secret: Annotated[str | None, Header()] = None,
) -> None:
    """Reject callers without the shared secret; hide the route when none is configured."""
    if not secret:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    if not x_internal_secret or not secrets.compare_digest(x_internal_secret, secret):
        logger.warning("internal_broadcast_rejected")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid internal secret")


async def subscribe(websocket: WebSocket, key: str, token: str | None, registry: HubRegistry) -> None:
    """Attach, answer heartbeats until the peer leaves, then detach."""
    try:
        hub, connection = await registry.attach(key, websocket, token)
    except MissingTokenError:
        logger.warning("status_subscriber_rejected", key=key, reason="missing_token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        while connection.state is ConnectionState.ATTACHED:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            await hub.handle_message(connection, message.get("text") or message.get("bytes"))
    finally:
        registry.detach(key, connection)
        logger.info("status_subscriber_detached", key=key)


@router.websocket("/ws/tasks/{task_id}")
async def task_status_socket(
    websocket: WebSocket,
    task_id: str,
    registry: Registry,
    token: str | None = Query(None),
) -> None:
    """Live status of one task."""
    await subscribe(websocket, task_id, token, registry)


@router.websocket("/ws/batches/{batch_id}")
async def batch_status_socket(
    websocket: WebSocket,
    batch_id: str,
    registry: Registry,
    token: str | None = Query(None),
) -> None:
    """Live progress of one batch."""
    await subscribe(websocket, batch_id, token, registry)


@router.post(
    "/internal/status/{key}/broadcast",
    dependencies=[Depends(require_internal_secret)],
    include_in_schema=False,
)
async def broadcast_status(
    key: str,
    registry: Registry,
    payload: dict[str, Any] = Body(...),
) -> dict:
    """
    Fan a payload out to the subscribers of key.

    Returns how many connections received it; zero when nobody listens.
    """
    delivered = await registry.broadcast(key, payload)
    return {"key": key, "delivered": delivered}
