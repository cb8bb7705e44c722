"""
Transport layer for the real-time channel.

Wraps ``websockets`` server connections and keeps the set of every live
connection, identified or not, for best-effort fan-out.
"""

import asyncio
import logging
import uuid
from typing import Dict, Iterable, Optional

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from ProcessDesk.core.server.interfaces import TransportConnection

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """
    Wrapper around ServerConnection that implements TransportConnection.

    Each physical connection gets its own ``conn_id``; it is never reused.
    """

    def __init__(self, websocket: ServerConnection, conn_id: Optional[str] = None):
        """
        Initialize WebSocket connection wrapper.

        Args:
            websocket: Underlying websockets connection
            conn_id: Explicit identifier (random when omitted)
        """
        self._websocket = websocket
        self._closed = False
        self.conn_id: str = conn_id or uuid.uuid4().hex

    @property
    def remote_address(self) -> Optional[str]:
        address = getattr(self._websocket, "remote_address", None)
        if not address:
            return None
        return ":".join(str(part) for part in address[:2])

    async def send(self, message: str) -> bool:
        """
        Send a frame through the connection.

        Returns:
            True if the frame was sent, False if the peer is gone
        """
        if self._closed:
            return False
        try:
            await self._websocket.send(message)
            return True
        except Exception as e:
            logger.debug("Failed to send to connection %s: %s", self.conn_id, e)
            return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Error closing connection %s: %s", self.conn_id, e)

    def is_open(self) -> bool:
        if self._closed:
            return False
        return getattr(self._websocket, "state", None) is State.OPEN


class ConnectionHub:
    """
    Every live connection on this server, keyed by ``conn_id``.

    Sends are fire-and-forget: a failed send is logged and dropped, and
    never reaches the caller that triggered it.
    """

    def __init__(self):
        self._connections: Dict[str, TransportConnection] = {}

    def add(self, connection: TransportConnection) -> None:
        self._connections[connection.conn_id] = connection
        logger.debug("Connection %s opened (%d live)", connection.conn_id, len(self._connections))

    def remove(self, conn_id: str) -> Optional[TransportConnection]:
        connection = self._connections.pop(conn_id, None)
        if connection is not None:
            logger.debug("Connection %s removed (%d live)", conn_id, len(self._connections))
        return connection

    def get(self, conn_id: Optional[str]) -> Optional[TransportConnection]:
        if conn_id is None:
            return None
        return self._connections.get(conn_id)

    async def send_to(self, conn_id: Optional[str], frame: str) -> bool:
        """Send one frame to one connection. Unknown or dead connections return False."""
        connection = self.get(conn_id)
        if connection is None:
            return False
        try:
            return bool(await connection.send(frame))
        except Exception as e:
            logger.debug("Dropping frame for connection %s: %s", conn_id, e)
            return False

    async def broadcast(self, frame: str, conn_ids: Optional[Iterable[str]] = None) -> int:
        """
        Send a frame to every live connection (or to ``conn_ids``).

        Returns:
            Number of connections that accepted the frame
        """
        targets = list(self._connections.keys()) if conn_ids is None else list(conn_ids)
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self.send_to(conn_id, frame) for conn_id in targets),
            return_exceptions=True
        )
        delivered = sum(1 for r in results if r is True)
        if delivered < len(targets):
            logger.debug("Broadcast reached %d of %d connections", delivered, len(targets))
        return delivered

    async def close_all(self, code: int = 1001, reason: str = "") -> None:
        for connection in list(self._connections.values()):
            try:
                await connection.close(code, reason)
            except Exception as e:
                logger.debug("Error closing connection %s: %s", connection.conn_id, e)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._connections


__all__ = [
    'WebSocketConnection',
    'ConnectionHub',
]
