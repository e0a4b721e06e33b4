# ws_manager.py
import json
import logging
from typing import Dict, Iterable, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        # socket -> id of the user it was authenticated as
        self.active_connections: Dict[WebSocket, Optional[int]] = {}

    async def connect(self, websocket: WebSocket, user_id: Optional[int] = None):
        await websocket.accept()
        self.active_connections[websocket] = user_id
        logger.info("WebSocket connected: %s (user %s)", getattr(websocket, "client", None), user_id)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            del self.active_connections[websocket]
            logger.info("WebSocket disconnected: %s", getattr(websocket, "client", None))

    async def _send(self, connections, event_type: str, data: dict):
        message = json.dumps({"type": event_type, "data": data}, default=str)
        for connection in connections:
            try:
                await connection.send_text(message)
            except Exception:
                logger.exception("Removing broken WebSocket connection %s", getattr(connection, "client", None))
                self.disconnect(connection)

    async def broadcast(self, event_type: str, **data):
        """Send ``{"type": event_type, "data": data}`` to every client and drop
        the ones that fail."""
        await self._send(list(self.active_connections), event_type, data)

    async def send_to_users(self, user_ids: Iterable[int], event_type: str, **data):
        """Like ``broadcast`` but only to sockets opened by ``user_ids``."""
        targets = set(user_ids)
        connections = [ws for ws, user_id in self.active_connections.items() if user_id in targets]
        await self._send(connections, event_type, data)
