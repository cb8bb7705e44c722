"""
Message protocol module for ProcessDesk.
Defines the events exchanged over the real-time channel and the stored chat message.

Every frame is a JSON object ``{"event": <name>, "data": {...}}``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EventType(Enum):
    """
    Events carried over the real-time channel.
    """
    IDENTIFY = "identify"  # client -> server: {userId, userSummary}
    SEND_MESSAGE = "send-message"  # client -> server: {senderId, recipientId, content, kind?}
    PRESENCE_SNAPSHOT = "presence-snapshot"  # server -> all: {users: [...]}
    MESSAGE_DELIVERED = "message-delivered"  # server -> sender/recipient: stored message
    STATE_INVALIDATED = "state-invalidated"  # server -> all: {}
    ERROR = "error"  # server -> one connection: {code, message}


class MessageKind(Enum):
    """
    Kinds of chat message. Non-text kinds carry a URL or file name in ``content``.
    """
    TEXT = "text"
    IMAGE_LINK = "image-link"
    FILE_REFERENCE = "file-reference"


def format_timestamp(ts: float) -> str:
    """Render an epoch timestamp as ISO-8601 UTC."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class ChatMessage:
    """
    A stored chat message. Immutable once created.

    Attributes:
        id: Store-assigned identifier, increasing with insertion order
        sender_id: Sending user
        recipient_id: Receiving user
        content: Text, or the URL / file name for non-text kinds
        kind: Message kind
        created_at: Server epoch timestamp
        read_flag: Persisted but never changed by the server
    """
    id: int
    sender_id: str
    recipient_id: str
    content: str
    kind: MessageKind = MessageKind.TEXT
    created_at: float = 0.0
    read_flag: bool = False

    @property
    def sort_key(self):
        return self.created_at, self.id

    def to_payload(self) -> Dict[str, Any]:
        """Wire form used by ``message-delivered`` and the conversation endpoint."""
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "recipientId": self.recipient_id,
            "content": self.content,
            "kind": self.kind.value,
            "createdAt": format_timestamp(self.created_at),
            "read": self.read_flag,
        }


@dataclass
class Event:
    """
    A single frame on the real-time channel.

    Attributes:
        type: Event name
        data: Event payload, empty for ``state-invalidated``
    """
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)

    def serialize(self) -> str:
        """
        Serialize the event to a JSON string.

        Returns:
            str: JSON representation of the event
        """
        return json.dumps({"event": self.type.value, "data": self.data}, ensure_ascii=False)

    @classmethod
    def deserialize(cls, raw: str) -> 'Event':
        """
        Parse a JSON frame.

        Raises:
            ValueError: the frame is not JSON, not an object, or names no known event
        """
        obj = json.loads(raw)
        if not isinstance(obj, dict):
            raise ValueError("frame must be a JSON object")
        data = obj.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("event data must be a JSON object")
        return cls(type=EventType(obj.get("event")), data=data)

    @classmethod
    def presence_snapshot(cls, users) -> 'Event':
        return cls(EventType.PRESENCE_SNAPSHOT, {"users": list(users)})

    @classmethod
    def message_delivered(cls, message: ChatMessage) -> 'Event':
        return cls(EventType.MESSAGE_DELIVERED, message.to_payload())

    @classmethod
    def state_invalidated(cls) -> 'Event':
        return cls(EventType.STATE_INVALIDATED)

    @classmethod
    def error(cls, code: str, message: str, request: Optional[str] = None) -> 'Event':
        data = {"code": code, "message": message}
        if request:
            data["request"] = request
        return cls(EventType.ERROR, data)
