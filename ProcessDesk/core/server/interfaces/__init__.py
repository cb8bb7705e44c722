"""
Protocols shared by the server components.

The router, broadcaster and lifecycle handler depend on these contracts
rather than on ``websockets`` or ``sqlite3`` directly, which keeps them
testable with in-memory fakes.
"""

from abc import abstractmethod
from typing import List, Protocol, runtime_checkable

from ProcessDesk.core.message.protocol import ChatMessage


@runtime_checkable
class TransportConnection(Protocol):
    """Protocol for a live client connection."""

    conn_id: str

    @abstractmethod
    async def send(self, message: str) -> bool:
        """
        Send a serialized frame.

        Returns:
            True if the frame was handed to the transport, False if the
            connection is gone. Must not raise for a dead peer.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection."""
        ...

    @abstractmethod
    def is_open(self) -> bool:
        """Check if connection is open."""
        ...


@runtime_checkable
class MessageStore(Protocol):
    """Protocol for the durable chat log."""

    @abstractmethod
    def append(self, sender_id: str, recipient_id: str, content: str, kind: str = "text") -> ChatMessage:
        """
        Persist a message and assign its id and timestamp.

        Raises:
            InvalidMessageError: sender, recipient or content missing
            StorageUnavailableError: the storage layer failed
        """
        ...

    @abstractmethod
    def get_conversation(self, user_a: str, user_b: str) -> List[ChatMessage]:
        """All messages between two users, oldest first."""
        ...


__all__ = [
    'TransportConnection',
    'MessageStore',
]
