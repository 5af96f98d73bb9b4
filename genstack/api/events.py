"""
Live Channel
============

Room-scoped WebSocket broadcasting. Each session id is a room; every event
published to a room is sent to all sockets connected to it as
``{"type": <event>, **data}``.
"""

import asyncio
from typing import Any, Dict, List

from fastapi import WebSocket

from genstack.utils.logging import get_logger

logger = get_logger(__name__)


class LiveChannel:
    """Active WebSocket connections per room (session_id -> sockets)."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, room: str, websocket: WebSocket) -> None:
        async with self._lock:
            self.active_connections.setdefault(room, []).append(websocket)

    async def disconnect(self, room: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._remove(room, [websocket])

    def connection_count(self, room: str) -> int:
        return len(self.active_connections.get(room, []))

    async def publish(self, room: str, event_type: str, data: Dict[str, Any]) -> None:
        """Send an event to every connection in ``room``; dead sockets are dropped."""
        sockets = list(self.active_connections.get(room, []))
        if not sockets:
            return

        message = {"type": event_type, **data}
        disconnected = []
        for websocket in sockets:
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping WebSocket after send failure: {e}", extra={"session_id": room})
                disconnected.append(websocket)

        if disconnected:
            async with self._lock:
                self._remove(room, disconnected)

    def _remove(self, room: str, sockets: List[WebSocket]) -> None:
        connections = self.active_connections.get(room)
        if connections is None:
            return
        for websocket in sockets:
            if websocket in connections:
                connections.remove(websocket)
        # Clean up empty lists
        if not connections:
            del self.active_connections[room]
