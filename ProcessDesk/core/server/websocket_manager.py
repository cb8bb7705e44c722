"""
Real-time chat server that composes the presence and messaging components.

Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │                         ChatServer                          │
    │  ┌──────────────────┐  ┌──────────────┐  ┌───────────────┐  │
    │  │ Lifecycle        │  │ Message      │  │ Change        │  │
    │  │ Handler          │  │ Router       │  │ Notifier      │  │
    │  └──────────────────┘  └──────────────┘  └───────────────┘  │
    │  ┌──────────────────┐  ┌──────────────┐  ┌───────────────┐  │
    │  │ Connection       │  │ Presence     │  │ Message       │  │
    │  │ Registry         │  │ Broadcaster  │  │ Store         │  │
    │  └──────────────────┘  └──────────────┘  └───────────────┘  │
    │                     ConnectionHub (transport)               │
    └─────────────────────────────────────────────────────────────┘

Per connection:
    open -> [identify] -> send-message* -> disconnect
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import websockets
from websockets.asyncio.server import ServerConnection, serve

from ProcessDesk.config import config
from ProcessDesk.core.message.protocol import Event, EventType
from ProcessDesk.core.server.exceptions import (
    InvalidMessageError,
    ProtocolError,
    StorageUnavailableError,
)
from ProcessDesk.core.server.interfaces import MessageStore
from ProcessDesk.core.server.lifecycle import ConnectionContext, ConnectionLifecycleHandler
from ProcessDesk.core.server.presence import ConnectionRegistry
from ProcessDesk.core.server.routing import ChangeNotifier, MessageRouter, PresenceBroadcaster
from ProcessDesk.core.server.transport import ConnectionHub, WebSocketConnection

logger = logging.getLogger(__name__)


class ChatServer:
    """
    WebSocket front end for presence, chat and state invalidation.

    Owns one of each stateful component; they are created fresh per
    instance so tests never share presence state.

    Example:
        server = ChatServer(SQLiteMessageStore("msgdatabase.sqlite"))
        async with server.run("0.0.0.0", 3001):
            await asyncio.Future()
    """

    def __init__(
        self,
        message_store: MessageStore,
        registry: Optional[ConnectionRegistry] = None,
        hub: Optional[ConnectionHub] = None,
        bind_sender_to_identity: Optional[bool] = None,
        ping_interval: Optional[float] = None,
        ping_timeout: Optional[float] = None
    ):
        """
        Args:
            message_store: Durable chat log
            registry: Presence table (new one if None)
            hub: Live connection set (new one if None)
            bind_sender_to_identity: Defaults to Config.BIND_SENDER_TO_IDENTITY
            ping_interval: Transport keepalive interval, seconds
            ping_timeout: Seconds without pong before the peer is dropped
        """
        self.registry = registry or ConnectionRegistry()
        self.hub = hub or ConnectionHub()
        self.message_store = message_store

        self.broadcaster = PresenceBroadcaster(self.registry, self.hub)
        self.router = MessageRouter(message_store, self.registry, self.hub)
        self.notifier = ChangeNotifier(self.hub)
        if bind_sender_to_identity is None:
            bind_sender_to_identity = config.BIND_SENDER_TO_IDENTITY
        self.lifecycle = ConnectionLifecycleHandler(
            self.registry, self.hub, self.broadcaster,
            bind_sender_to_identity=bind_sender_to_identity
        )

        self._ping_interval = config.PING_INTERVAL if ping_interval is None else ping_interval
        self._ping_timeout = config.PING_TIMEOUT if ping_timeout is None else ping_timeout
        self._server = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> Optional[int]:
        """Bound port, useful when started on port 0."""
        if not self._server:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    @asynccontextmanager
    async def run(self, host: str = "0.0.0.0", port: int = 3001):
        await self.start(host, port)
        try:
            yield self
        finally:
            await self.stop()

    async def start(self, host: str = "0.0.0.0", port: int = 3001) -> None:
        self._server = await serve(
            self.handle_connection,
            host,
            port,
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_timeout
        )
        self._running = True
        logger.info("Chat server started on ws://%s:%s", host, self.port or port)

    async def stop(self) -> None:
        self._running = False
        await self.hub.close_all(1001, "Server shutting down")
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Chat server stopped")

    async def handle_connection(self, websocket: ServerConnection) -> None:
        """Serve one client until it goes away."""
        connection = WebSocketConnection(websocket)
        context = await self.lifecycle.open(connection)
        logger.info("Connection %s accepted from %s", context.conn_id, connection.remote_address or "unknown peer")
        try:
            async for raw in websocket:
                await self.handle_frame(context, raw)
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Connection %s closed by peer", context.conn_id)
        except Exception as e:
            logger.exception("Error handling connection %s: %s", context.conn_id, e)
        finally:
            await self.lifecycle.disconnect(context)

    async def handle_frame(self, context: ConnectionContext, raw) -> None:
        """Parse and dispatch one inbound frame. Errors go back to this connection only."""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            try:
                event = Event.deserialize(raw)
            except (ValueError, UnicodeDecodeError) as e:
                raise ProtocolError(f"Unreadable frame: {e}") from e

            if event.type is EventType.IDENTIFY:
                await self._on_identify(context, event)
            elif event.type is EventType.SEND_MESSAGE:
                await self._on_send_message(context, event)
            else:
                await context.send(Event.error(
                    "UNKNOWN_EVENT", f"Clients may not send {event.type.value}", event.type.value
                ).serialize())
        except (InvalidMessageError, StorageUnavailableError, ProtocolError) as e:
            logger.info("Rejected frame on connection %s: %s", context.conn_id, e)
            await context.send(Event.error(e.code, str(e)).serialize())

    async def _on_identify(self, context: ConnectionContext, event: Event) -> None:
        data = event.data
        user_id = data.get("userId")
        summary = data.get("userSummary")
        if not await self.lifecycle.identify(context, user_id, summary if isinstance(summary, dict) else None):
            logger.debug("Identify without a user id on connection %s", context.conn_id)

    async def _on_send_message(self, context: ConnectionContext, event: Event) -> None:
        data = event.data
        sender_id = self.lifecycle.sender_for(context, data.get("senderId"))
        await self.router.send(
            sender_id,
            data.get("recipientId"),
            data.get("content"),
            data.get("kind") or "text",
            origin_connection_id=context.conn_id
        )


__all__ = [
    'ChatServer',
]
