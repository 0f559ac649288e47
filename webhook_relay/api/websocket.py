"""WebSocket endpoint clients use to receive relayed notifications."""

import asyncio
import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from webhook_relay.api.dependencies import get_relay
from webhook_relay.services.relay import Relay, WebSocketConnection

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])

PING_INTERVAL_SECONDS = 30


@router.websocket("/ws")
async def websocket_relay(
    websocket: WebSocket,
    relay: Annotated[Relay, Depends(get_relay)],
) -> None:
    """Realtime channel for relay events.

    Clients send ``{"type": "join", "subscription_id": ...}`` to start
    receiving a subscription's events and ``{"type": "leave", ...}`` to stop.
    The server pushes ``notification`` messages and a periodic ``ping``.
    """
    connection = WebSocketConnection(websocket)
    await websocket.accept()
    relay.connect(connection)
    logger.info(f"WebSocket connected: {connection!r}")

    async def handle_ping() -> None:
        """Send periodic pings to keep connection alive."""
        while True:
            await asyncio.sleep(PING_INTERVAL_SECONDS)
            try:
                await websocket.send_json({"type": "ping"})
            except (WebSocketDisconnect, RuntimeError, OSError):
                break

    async def handle_client() -> None:
        """Handle join/leave requests and pong responses from the client."""
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "detail": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "detail": "Expected a JSON object"})
                continue

            message_type = data.get("type")
            subscription_id = data.get("subscription_id")
            if message_type == "pong":
                continue  # Keepalive acknowledgment
            if message_type in ("join", "leave") and isinstance(subscription_id, str) and subscription_id:
                if message_type == "join":
                    relay.join(connection, subscription_id)
                    await websocket.send_json({"type": "joined", "subscription_id": subscription_id})
                else:
                    relay.leave(connection, subscription_id)
                    await websocket.send_json({"type": "left", "subscription_id": subscription_id})
                continue
            await websocket.send_json({"type": "error", "detail": f"Unsupported message: {message_type}"})

    ping_task = asyncio.create_task(handle_ping())
    try:
        await handle_client()
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {connection!r}")
    finally:
        ping_task.cancel()
        relay.leave(connection)
