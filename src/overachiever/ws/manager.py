"""NotificationHub: WebSocket connection registry and per-user fan-out.

Tracks all active connections by user. ``publish`` is best-effort: a
connection whose send fails is dropped, nothing is retried or buffered.
"""

import asyncio
import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket
import structlog

logger = structlog.get_logger()

CLOSE_TOO_MANY_CONNECTIONS = 4008


@dataclass
class ClientConnection:
    """Represents a single WebSocket client."""

    websocket: WebSocket
    conn_id: str
    user_id: int
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0
    # Serializes sends so a subscriber sees events in emission order
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class NotificationHub:
    """Manages all active WebSocket connections.

    Thread-safe for asyncio via single-threaded event loop.
    """

    def __init__(self, max_connections_per_user: int = 5) -> None:
        self.max_connections_per_user = max_connections_per_user
        self._connections: dict[str, ClientConnection] = {}  # conn_id -> client
        self._user_connections: dict[int, set[str]] = defaultdict(set)  # user_id -> {conn_ids}
        self.events_published = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connections_for(self, user_id: int) -> int:
        return len(self._user_connections.get(user_id, ()))

    async def connect(self, websocket: WebSocket, conn_id: str, user_id: int) -> bool:
        """Accept a new WebSocket connection.

        Returns False (and closes the socket with 4008) if the user already
        has the maximum number of open connections.
        """
        await websocket.accept()
        if self.connections_for(user_id) >= self.max_connections_per_user:
            logger.warning("ws_connection_limit", user_id=user_id, limit=self.max_connections_per_user)
            await websocket.close(code=CLOSE_TOO_MANY_CONNECTIONS, reason="Too many connections")
            return False

        self._connections[conn_id] = ClientConnection(websocket=websocket, conn_id=conn_id, user_id=user_id)
        self._user_connections[user_id].add(conn_id)
        logger.info("ws_connected", conn_id=conn_id, user_id=user_id)
        return True

    async def disconnect(self, conn_id: str) -> None:
        """Remove a WebSocket connection."""
        client = self._connections.pop(conn_id, None)
        if client is None:
            return

        self._user_connections[client.user_id].discard(conn_id)
        if not self._user_connections[client.user_id]:
            del self._user_connections[client.user_id]

        logger.info("ws_disconnected", conn_id=conn_id, user_id=client.user_id)

    async def _send(self, client: ClientConnection, payload: str) -> bool:
        async with client.lock:
            try:
                await client.websocket.send_text(payload)
            except Exception:
                return False
        client.messages_sent += 1
        return True

    async def send_to_connection(self, conn_id: str, message: dict[str, Any]) -> bool:
        """Send a message to one connection. Returns False if it is gone."""
        client = self._connections.get(conn_id)
        if client is None:
            return False
        if not await self._send(client, json.dumps(message, default=str)):
            await self.disconnect(conn_id)
            return False
        return True

    async def publish(self, user_id: int, event: dict[str, Any]) -> int:
        """Deliver ``event`` to every connection of ``user_id``.

        Returns the number of connections that received it.
        """
        conn_ids = list(self._user_connections.get(user_id, set()))
        self.events_published += 1
        if not conn_ids:
            return 0

        payload = json.dumps(event, default=str)
        sent = 0
        failed: list[str] = []

        for conn_id in conn_ids:
            client = self._connections.get(conn_id)
            if client is None:
                continue
            if await self._send(client, payload):
                sent += 1
            else:
                failed.append(conn_id)

        # Clean up failed connections
        for conn_id in failed:
            await self.disconnect(conn_id)

        return sent

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
            "events_published": self.events_published,
        }
