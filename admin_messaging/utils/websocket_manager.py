import logging
from typing import Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Open notification sockets per user; a user may have several tabs open."""

    def __init__(self) -> None:
        self.sockets: Dict[str, List[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> int:
        await websocket.accept()
        open_sockets = self.sockets.setdefault(str(user_id), [])
        open_sockets.append(websocket)
        logger.debug("Notification socket opened for %s (%d open)", user_id, len(open_sockets))
        return len(open_sockets)

    def disconnect(self, user_id: str, websocket: WebSocket) -> int:
        remaining = [ws for ws in self.sockets.get(str(user_id), []) if ws is not websocket]
        if remaining:
            self.sockets[str(user_id)] = remaining
        else:
            self.sockets.pop(str(user_id), None)
        return len(remaining)

    def is_connected(self, user_id: str) -> bool:
        return bool(self.sockets.get(str(user_id)))

    async def send_personal_message(self, receiver_id: str, message: str) -> int:
        delivered = 0
        for conn in list(self.sockets.get(str(receiver_id), [])):
            try:
                await conn.send_text(message)
                delivered += 1
            except RuntimeError:
                # socket already closed on the client side
                logger.debug("Dropping closed websocket for %s", receiver_id)
                self.disconnect(receiver_id, conn)
        return delivered


manager = ConnectionManager()
