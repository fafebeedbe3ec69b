import asyncio
import json
import uuid
from typing import Any, Dict, Optional
from fastapi import WebSocket
import logging

from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def build_frame(event: str, data: Any = None, ack_id: Optional[str] = None) -> Dict[str, Any]:
    """Outgoing frame layout shared by every event"""
    frame = {
        "type": event,
        "data": data if data is not None else {},
        "timestamp": utcnow().isoformat(),
    }
    if ack_id:
        frame["ack_id"] = ack_id
    return frame


class ConnectionManager:
    """Maps connection ids to live WebSocket objects.

    This is the transport only: it knows nothing about users. Reachability and
    caps live in the connection registry, which addresses sockets by id.
    """

    def __init__(self):
        # Active connections: connection_id -> WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

        # Outstanding acknowledgements: ack_id -> future resolved by the client
        self.pending_acks: Dict[str, asyncio.Future] = {}

    def register(self, connection_id: str, websocket: WebSocket):
        self.active_connections[connection_id] = websocket
        logger.debug(f"Transport registered connection {connection_id}")

    def unregister(self, connection_id: str):
        self.active_connections.pop(connection_id, None)

    async def emit(self, connection_id: str, event: str, data: Any = None) -> bool:
        """Send an event to a single connection"""
        return await self._send(connection_id, build_frame(event, data))

    async def emit_with_ack(
        self,
        connection_id: str,
        event: str,
        data: Any = None,
        timeout: float = 5.0
    ) -> Optional[Any]:
        """Send an event and wait for the client's ``ack`` frame.

        Returns the acknowledgement payload, or None when the send failed or
        no acknowledgement arrived within ``timeout`` seconds.
        """
        ack_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self.pending_acks[ack_id] = future
        try:
            if not await self._send(connection_id, build_frame(event, data, ack_id)):
                return None
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Ack {ack_id} for {event} timed out on connection {connection_id}")
            return None
        finally:
            self.pending_acks.pop(ack_id, None)

    def resolve_ack(self, ack_id: str, payload: Any = None) -> bool:
        """Complete an outstanding acknowledgement"""
        future = self.pending_acks.get(ack_id)
        if future is None or future.done():
            return False
        future.set_result(payload if payload is not None else {})
        return True

    async def send_error(self, connection_id: str, error_message: str, error_code: Optional[str] = None) -> bool:
        """Send error frame to a connection"""
        return await self.emit(connection_id, "error", {"message": error_message, "code": error_code})

    async def close(self, connection_id: str, code: int = 1000, reason: str = "") -> None:
        websocket = self.active_connections.pop(connection_id, None)
        if websocket is None:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            # Socket may already be gone
            logger.debug(f"Error closing connection {connection_id}: {e}")

    async def _send(self, connection_id: str, frame: Dict[str, Any]) -> bool:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(frame, default=str))
            return True
        except Exception as e:
            logger.error(f"Error sending {frame.get('type')} to connection {connection_id}: {e}")
            self.unregister(connection_id)
            return False


# Global connection manager instance
connection_manager = ConnectionManager()
