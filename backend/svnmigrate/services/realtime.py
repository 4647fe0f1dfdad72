"""
WebSocket connection manager for live migration events.

Every connected client receives every migration event; clients filter by
migration id themselves.
"""

import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks active WebSocket connections and broadcasts messages."""

    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        """Accept WebSocket connection and register it."""
        await websocket.accept()
        self._connections.append(websocket)
        logger.info(f"WebSocket connected, total_connections={len(self._connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        try:
            self._connections.remove(websocket)
            logger.info(f"WebSocket disconnected, remaining_connections={len(self._connections)}")
        except ValueError:
            logger.warning("WebSocket not found on disconnect")

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send a JSON message to every connection, dropping broken ones."""
        disconnected = []
        for websocket in list(self._connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send to websocket: {e}")
                disconnected.append(websocket)

        for ws in disconnected:
            self.disconnect(ws)

    def get_total_connections(self) -> int:
        return len(self._connections)


# Singleton instance for app-wide use
connection_manager = ConnectionManager()
