from .message.protocol import ChatMessage, Event, EventType, MessageKind

__all__ = ['ChatMessage', 'Event', 'EventType', 'MessageKind']
