"""Live connection groups and fire-and-forget broadcast of relay events."""

import logging
from typing import Any, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from webhook_relay.config import RelayMode
from webhook_relay.errors import RelayDeliveryError
from webhook_relay.schemas.notification import RelayEvent, RelayMessage

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A live client connection the relay can push JSON to."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, data: dict[str, Any]) -> None: ...


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the relay's connection interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: dict[str, Any]) -> None:
        await self.websocket.send_json(data)

    def __repr__(self) -> str:
        client = self.websocket.client
        return f"WebSocketConnection({client.host}:{client.port})" if client else "WebSocketConnection()"


class Relay:
    """Tracks live connections, grouped by subscription id.

    In ``RelayMode.ROOM`` an event reaches only the connections that joined
    its subscription's group. In ``RelayMode.ALL`` every open connection
    receives every event and clients filter for themselves.
    """

    def __init__(self, mode: RelayMode = RelayMode.ROOM) -> None:
        self.mode = mode
        self._connections: set[Connection] = set()
        self._groups: dict[str, set[Connection]] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connect(self, connection: Connection) -> None:
        """Register a connection that has not joined any group yet."""
        self._connections.add(connection)

    def join(self, connection: Connection, group_id: str) -> None:
        self._connections.add(connection)
        self._groups.setdefault(group_id, set()).add(connection)
        logger.debug(f"{connection!r} joined {group_id}")

    def leave(self, connection: Connection, group_id: str | None = None) -> None:
        """Remove a connection from one group, or from everything when no group is given."""
        group_ids = [group_id] if group_id is not None else list(self._groups)
        for gid in group_ids:
            members = self._groups.get(gid)
            if members is None:
                continue
            members.discard(connection)
            if not members:
                del self._groups[gid]
        if group_id is None:
            self._connections.discard(connection)

    def members(self, group_id: str) -> list[Connection]:
        return list(self._groups.get(group_id, ()))

    async def broadcast(self, group_id: str | None, event: RelayEvent) -> int:
        """Send ``event`` to a group (or everyone) and return how many connections got it.

        Membership is snapshotted up front; connections that are closed or
        fail mid-send are dropped without affecting the rest.
        """
        if self.mode == RelayMode.ALL or group_id is None:
            targets = list(self._connections)
        else:
            targets = self.members(group_id)

        message = RelayMessage(subscription_id=group_id or "", data=event).model_dump(mode="json")

        delivered = 0
        for connection in targets:
            if not connection.is_open:
                self.leave(connection)
                continue
            try:
                await self._send(connection, message)
            except RelayDeliveryError as e:
                logger.warning(f"Dropping connection after failed delivery: {e}")
                self.leave(connection)
                continue
            delivered += 1

        logger.debug(f"Delivered {event.type} to {delivered}/{len(targets)} connections")
        return delivered

    async def _send(self, connection: Connection, message: dict[str, Any]) -> None:
        try:
            await connection.send_json(message)
        except Exception as e:
            raise RelayDeliveryError(f"{connection!r}: {e}") from e
