"""WebSocket push channel for impersonation events (forced end, expiry warning)."""
import asyncio
import logging
from typing import Any, Dict, List

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)

EVENT_ENDED = "impersonation.ended"
EVENT_WARNING = "impersonation.warning"


class ImpersonationEventBroker:
    """Tracks each admin's open event sockets and pushes events to them."""

    def __init__(self):
        # Map of admin_id to list of WebSocket connections (one per tab/device)
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, admin_id: str) -> None:
        """Register a WebSocket connection (already accepted by router)."""
        async with self._lock:
            self.active_connections.setdefault(admin_id, []).append(websocket)
            logger.debug("impersonation_events_connected", extra={"admin_id": admin_id})

    async def disconnect(self, websocket: WebSocket, admin_id: str) -> None:
        async with self._lock:
            connections = self.active_connections.get(admin_id)
            if connections and websocket in connections:
                connections.remove(websocket)
            if admin_id in self.active_connections and not self.active_connections[admin_id]:
                del self.active_connections[admin_id]
            logger.debug("impersonation_events_disconnected", extra={"admin_id": admin_id})

    async def send_to_admin(self, admin_id: str, event: Dict[str, Any]) -> int:
        """Send an event to every connection of one admin. Returns deliveries."""
        connections = list(self.active_connections.get(admin_id, []))
        delivered = 0
        disconnected = []

        for connection in connections:
            try:
                await connection.send_json(event)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError):
                disconnected.append(connection)

        if disconnected:
            async with self._lock:
                for conn in disconnected:
                    if admin_id in self.active_connections and conn in self.active_connections[admin_id]:
                        self.active_connections[admin_id].remove(conn)
                if admin_id in self.active_connections and not self.active_connections[admin_id]:
                    del self.active_connections[admin_id]

        return delivered

    def get_connection_count(self) -> int:
        return sum(len(conns) for conns in self.active_connections.values())


# Global event broker instance
event_broker = ImpersonationEventBroker()
