"""
Real-time order updates over WebSocket.

Connections join rooms: every authenticated socket joins `user:<id>`,
administrators additionally join `admin`. Events are JSON frames
`{"event": "order:new" | "order:updated" | "refund:updated", "data": {...}}`.
"""

from typing import Any, Dict, List

import structlog
from fastapi import WebSocket

logger = structlog.get_logger().bind(component="realtime")


ADMIN_ROOM = "admin"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class WebSocketManager:
    """Manages WebSocket connections grouped by room"""

    def __init__(self):
        self._rooms: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, rooms: List[str]):
        """Accept and register connection in every room"""
        await websocket.accept()
        for room in rooms:
            self._rooms.setdefault(room, []).append(websocket)
        logger.info("websocket_connected", rooms=rooms)

    def disconnect(self, websocket: WebSocket):
        """Remove connection from all rooms"""
        for room in list(self._rooms.keys()):
            connections = self._rooms[room]
            if websocket in connections:
                connections.remove(websocket)
            if not connections:
                del self._rooms[room]
        logger.info("websocket_disconnected")

    def connection_count(self, room: str) -> int:
        return len(self._rooms.get(room, []))

    async def emit(self, room: str, event: str, data: Dict[str, Any]) -> int:
        """Send an event to every connection in a room; returns deliveries"""
        delivered = 0
        for websocket in self._rooms.get(room, [])[:]:
            try:
                await websocket.send_json({"event": event, "data": data})
                delivered += 1
            except Exception as e:
                logger.error("websocket_send_error", room=room, event=event, error=str(e))
                self.disconnect(websocket)
        return delivered
