from typing import Dict, List
from fastapi import WebSocket
import logging

logger = logging.getLogger("classtrack")

class ConnectionManager:
    def __init__(self):
        # Map scan token -> watching WebSocket connections
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, token: str):
        await websocket.accept()
        self.active_connections.setdefault(token, []).append(websocket)
        logger.info(f"WebSocket connected for token: {token}")

    def disconnect(self, token: str, websocket: WebSocket = None):
        connections = self.active_connections.get(token)
        if connections is None:
            return
        if websocket is not None and websocket in connections:
            connections.remove(websocket)
        if websocket is None or not connections:
            del self.active_connections[token]
        logger.info(f"WebSocket disconnected for token: {token}")

    async def send_message(self, message: dict, token: str) -> int:
        """Send ``message`` to every watcher of ``token``; returns how many received it."""
        delivered = 0
        for websocket in list(self.active_connections.get(token, [])):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead WebSocket for token {token}: {e}")
                self.disconnect(token, websocket)
        return delivered

manager = ConnectionManager()
