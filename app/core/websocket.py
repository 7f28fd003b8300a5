"""
WebSocket manager for real-time round updates.
Pushes round state changes, suspense ticks, results and balance updates to
the player who owns the round.
"""

from typing import Callable, Dict, Set
from fastapi import WebSocket
import orjson

from app.core.logger import get_logger

logger = get_logger("websocket")

WS_CLOSE_REASONS = {
    1000: "normal",
    1001: "going_away",
    1006: "abnormal",
    1008: "policy_violation",
    1009: "message_too_big",
    1011: "server_error",
}


def normalize_ws_close_code(code: int) -> str:
    return WS_CLOSE_REASONS.get(code, f"code_{code}")


class ConnectionManager:
    """
    Manages WebSocket connections per player.
    A player may have several tabs open; every tab gets the same events.
    """

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def _send_json(self, websocket: WebSocket, data: dict):
        # orjson.dumps returns bytes
        await websocket.send_bytes(orjson.dumps(data))

    async def connect(self, websocket: WebSocket, user_id: str):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        logger.info(
            f"WebSocket connected: user_id={user_id}, total={self.get_connection_count()}"
        )

    def disconnect(self, websocket: WebSocket, user_id: str):
        """Remove a WebSocket connection."""
        sockets = self.active_connections.get(user_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.active_connections[user_id]
        logger.info(f"WebSocket disconnected: total={self.get_connection_count()}")

    async def send_personal(self, user_id: str, message: dict):
        """Send a message to every connection of one player."""
        for websocket in list(self.active_connections.get(user_id, ())):
            try:
                await self._send_json(websocket, message)
            except Exception as e:
                logger.warning(f"Failed to send to user {user_id}: {e}")
                self.disconnect(websocket, user_id)

    def listener_for(self, user_id: str) -> Callable[[dict], object]:
        """Round event listener that forwards to the player's sockets."""

        async def listener(event: dict):
            if user_id in self.active_connections:
                await self.send_personal(user_id, event)

        return listener

    def get_connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.active_connections.values())


# Global WebSocket manager instance
ws_manager = ConnectionManager()
