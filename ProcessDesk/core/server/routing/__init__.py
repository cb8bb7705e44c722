"""
Message routing and broadcasting services.

- MessageRouter: persist a chat message, then deliver it to the sender and,
  when online, the recipient.
- PresenceBroadcaster: push the full online-user snapshot to everyone.
- ChangeNotifier: tell everyone that REST-managed state changed.

All delivery is best-effort: nothing is retried, queued or acknowledged.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

from ProcessDesk.core.message.protocol import ChatMessage, Event
from ProcessDesk.core.server.interfaces import MessageStore
from ProcessDesk.core.server.presence import ConnectionRegistry
from ProcessDesk.core.server.transport import ConnectionHub

logger = logging.getLogger(__name__)


class DeliveryStatus(Enum):
    """Status of message delivery."""
    DELIVERED = auto()
    FAILED = auto()
    USER_OFFLINE = auto()


@dataclass
class DeliveryResult:
    """Result of a delivery attempt to one party."""
    status: DeliveryStatus
    user_id: str
    connection_id: Optional[str] = None


@dataclass
class RouteResult:
    """Outcome of MessageRouter.send."""
    message: ChatMessage
    sender: DeliveryResult
    recipient: DeliveryResult

    @property
    def delivered_connections(self) -> int:
        return sum(
            1 for r in (self.sender, self.recipient)
            if r.status is DeliveryStatus.DELIVERED
        )


class MessageRouter:
    """
    Send-message protocol: persist first, then deliver.

    The sender's connection always receives the stored message (with its
    server-assigned id and timestamp); the recipient's only when online.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: ConnectionRegistry,
        hub: ConnectionHub
    ):
        self._store = store
        self._registry = registry
        self._hub = hub

    async def send(
        self,
        sender_id,
        recipient_id,
        content,
        kind="text",
        origin_connection_id: Optional[str] = None
    ) -> RouteResult:
        """
        Store and deliver one message.

        Args:
            sender_id: Sending user
            recipient_id: Receiving user
            content: Text, URL or file name
            kind: text, image-link or file-reference
            origin_connection_id: Connection the request arrived on; receives
                a sender copy alongside the sender's registered connection

        Raises:
            InvalidMessageError: missing fields; nothing is delivered
            StorageUnavailableError: persistence failed; nothing is delivered
        """
        # Storage I/O is the only blocking step; keep it off the event loop.
        message = await asyncio.to_thread(self._store.append, sender_id, recipient_id, content, kind)

        frame = Event.message_delivered(message).serialize()
        delivered_to = set()

        # The sender's active connection always gets a copy, and so does the
        # originating connection when it is a different one.
        sender_conns = [
            c for c in dict.fromkeys((origin_connection_id, self._registry.connection_for(message.sender_id)))
            if c is not None
        ]
        sender_result = DeliveryResult(DeliveryStatus.USER_OFFLINE, message.sender_id)
        for conn_id in sender_conns:
            result = await self._deliver(frame, message.sender_id, conn_id, delivered_to)
            if sender_result.status is not DeliveryStatus.DELIVERED:
                sender_result = result

        recipient_conn = self._registry.connection_for(message.recipient_id)
        if recipient_conn is None:
            logger.debug("Recipient %s offline; message %d stored only", message.recipient_id, message.id)
            recipient_result = DeliveryResult(DeliveryStatus.USER_OFFLINE, message.recipient_id)
        elif recipient_conn in delivered_to:
            # Self-message on the same connection: one copy is enough.
            recipient_result = DeliveryResult(DeliveryStatus.DELIVERED, message.recipient_id, recipient_conn)
        else:
            recipient_result = await self._deliver(frame, message.recipient_id, recipient_conn, delivered_to)

        logger.info("Message %d %s -> %s routed (sender: %s, recipient: %s)",
                    message.id, message.sender_id, message.recipient_id,
                    sender_result.status.name, recipient_result.status.name)
        return RouteResult(message=message, sender=sender_result, recipient=recipient_result)

    async def _deliver(self, frame: str, user_id: str, conn_id: Optional[str], delivered_to: set) -> DeliveryResult:
        if conn_id is None:
            return DeliveryResult(DeliveryStatus.USER_OFFLINE, user_id)
        if await self._hub.send_to(conn_id, frame):
            delivered_to.add(conn_id)
            return DeliveryResult(DeliveryStatus.DELIVERED, user_id, conn_id)
        logger.debug("Dropped message frame for %s on connection %s", user_id, conn_id)
        return DeliveryResult(DeliveryStatus.FAILED, user_id, conn_id)


class PresenceBroadcaster:
    """Pushes the full online-user snapshot to every connected client."""

    def __init__(self, registry: ConnectionRegistry, hub: ConnectionHub):
        self._registry = registry
        self._hub = hub

    async def announce(self) -> int:
        """
        Broadcast ``presence-snapshot``.

        Returns:
            Number of connections reached
        """
        users = self._registry.snapshot()
        reached = await self._hub.broadcast(Event.presence_snapshot(users).serialize())
        logger.debug("Presence snapshot (%d online) sent to %d connections", len(users), reached)
        return reached


class ChangeNotifier:
    """
    Single broadcast channel for "shared state changed, refetch".

    Mutating REST handlers call :meth:`notify` once after their write commits.
    """

    def __init__(self, hub: ConnectionHub):
        self._hub = hub
        self._sent = 0

    @property
    def notifications_sent(self) -> int:
        return self._sent

    async def notify(self) -> int:
        """
        Broadcast ``state-invalidated`` to every connection. Never raises.

        Returns:
            Number of connections reached
        """
        self._sent += 1
        try:
            reached = await self._hub.broadcast(Event.state_invalidated().serialize())
        except Exception as e:
            logger.warning("State invalidation broadcast failed: %s", e)
            return 0
        logger.debug("State invalidation sent to %d connections", reached)
        return reached


__all__ = [
    'MessageRouter',
    'PresenceBroadcaster',
    'ChangeNotifier',
    'DeliveryResult',
    'DeliveryStatus',
    'RouteResult',
]
