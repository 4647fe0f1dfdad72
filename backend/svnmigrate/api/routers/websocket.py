"""WebSocket router for live migration events.

Every client receives every migration:* event (see services/events.py
for the message format). Authentication is handled upstream.
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from svnmigrate.services.realtime import connection_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["websocket"])


@router.websocket("/migrations")
async def websocket_migrations(websocket: WebSocket):
    """
    Client can send:
    - {"type": "ping"} - Server responds with {"type": "pong"}
    """
    await connection_manager.connect(websocket)

    try:
        while True:
            try:
                data = await websocket.receive_json()
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

            except WebSocketDisconnect:
                logger.info("WebSocket client disconnected")
                break

            except Exception as e:
                logger.warning(f"WebSocket receive error: {e}")
                break

    finally:
        connection_manager.disconnect(websocket)
