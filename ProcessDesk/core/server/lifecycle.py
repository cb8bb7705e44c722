"""
Connection lifecycle for the real-time channel.

Every physical connection walks through::

    ANONYMOUS --identify--> IDENTIFIED --disconnect--> TERMINATED
        \\__________________disconnect_________________/

Identify registers the user and re-announces presence; disconnect
deregisters and re-announces. A terminated context never comes back: a
reconnecting client gets a fresh context.
"""

import logging
import time
from enum import Enum
from typing import Any, Dict, Optional

from ProcessDesk.core.server.exceptions import InvalidMessageError
from ProcessDesk.core.server.interfaces import TransportConnection
from ProcessDesk.core.server.presence import ConnectionRegistry
from ProcessDesk.core.server.routing import PresenceBroadcaster
from ProcessDesk.core.server.transport import ConnectionHub

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    ANONYMOUS = "connected-anonymous"
    IDENTIFIED = "connected-identified"
    TERMINATED = "terminated"


class ConnectionContext:
    """
    Per-connection state.

    Holds the transport connection, the lifecycle state and the identity
    the client announced.
    """

    def __init__(self, connection: TransportConnection):
        self.connection = connection
        self.state = ConnectionState.ANONYMOUS
        self.user_id: Optional[str] = None
        self.user_summary: Dict[str, Any] = {}
        self.opened_at = time.time()

    @property
    def conn_id(self) -> str:
        return self.connection.conn_id

    @property
    def is_identified(self) -> bool:
        return self.state is ConnectionState.IDENTIFIED

    @property
    def is_terminated(self) -> bool:
        return self.state is ConnectionState.TERMINATED

    async def send(self, frame: str) -> bool:
        return await self.connection.send(frame)

    def __repr__(self) -> str:
        return f"<ConnectionContext {self.conn_id} {self.state.name} user={self.user_id}>"


class ConnectionLifecycleHandler:
    """
    Drives the connect / identify / disconnect transitions.

    The only writer of the ConnectionRegistry.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        hub: ConnectionHub,
        broadcaster: PresenceBroadcaster,
        bind_sender_to_identity: bool = True
    ):
        """
        Args:
            registry: Presence table
            hub: Every live connection
            broadcaster: Presence snapshot publisher
            bind_sender_to_identity: Reject sends whose senderId is not the
                identity announced on the same connection
        """
        self._registry = registry
        self._hub = hub
        self._broadcaster = broadcaster
        self._bind_sender = bind_sender_to_identity

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    async def open(self, connection: TransportConnection) -> ConnectionContext:
        """Track a newly accepted connection; it starts anonymous."""
        self._hub.add(connection)
        context = ConnectionContext(connection)
        logger.debug("Connection %s opened", context.conn_id)
        return context

    async def identify(self, context: ConnectionContext, user_id: Any, user_summary: Optional[Dict[str, Any]] = None) -> bool:
        """
        ANONYMOUS (or IDENTIFIED) -> IDENTIFIED.

        Returns:
            True if the connection is now registered for ``user_id``
        """
        if context.is_terminated:
            logger.debug("Ignoring identify on terminated connection %s", context.conn_id)
            return False

        entry = self._registry.register(user_id, user_summary, context.conn_id)
        if entry is None:
            return False

        context.user_id = entry.user_id
        context.user_summary = entry.user_summary
        context.state = ConnectionState.IDENTIFIED
        logger.info("User %s identified on connection %s", entry.user_id, context.conn_id)

        await self._broadcaster.announce()
        return True

    async def disconnect(self, context: ConnectionContext) -> bool:
        """
        ANONYMOUS / IDENTIFIED -> TERMINATED. Safe to call more than once.

        Returns:
            True on the first call, False when already terminated
        """
        if context.is_terminated:
            return False
        context.state = ConnectionState.TERMINATED
        self._hub.remove(context.conn_id)

        entry = self._registry.deregister(context.conn_id)
        if entry is not None:
            logger.info("User %s disconnected (connection %s)", entry.user_id, context.conn_id)
        else:
            logger.debug("Connection %s closed without a registered identity", context.conn_id)

        await self._broadcaster.announce()
        return True

    def sender_for(self, context: ConnectionContext, claimed_sender_id: Any) -> Any:
        """
        Resolve the sender of a send-message request.

        With binding on, the claim must match the identity the registry holds
        for this connection. A connection replaced by a newer one for the same
        user holds no identity any more. With binding off, the claim is
        trusted as sent.

        Raises:
            InvalidMessageError: binding on and the claim does not match
        """
        if not self._bind_sender:
            return claimed_sender_id
        if not context.is_identified:
            raise InvalidMessageError("Identify before sending messages")
        entry = self._registry.find_by_connection(context.conn_id)
        if entry is None:
            raise InvalidMessageError(
                f"Connection no longer holds the identity of user {context.user_id}; identify again"
            )
        if claimed_sender_id in (None, "") or str(claimed_sender_id) == entry.user_id:
            return entry.user_id
        raise InvalidMessageError(
            f"senderId {claimed_sender_id!r} does not match the identified user"
        )


__all__ = [
    'ConnectionState',
    'ConnectionContext',
    'ConnectionLifecycleHandler',
]
