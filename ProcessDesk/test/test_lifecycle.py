"""
Unit tests for the connection lifecycle and the chat server's frame handling.

Tests cover:
- anonymous -> identified -> terminated transitions
- Idempotent disconnect
- Sender binding
- Error replies to the offending connection only
- The two-user conversation walkthrough
"""

import json
import logging
from unittest.mock import AsyncMock

import pytest

from ProcessDesk.core.message.protocol import Event, EventType
from ProcessDesk.core.server import (
    ConnectionHub,
    ConnectionLifecycleHandler,
    ConnectionRegistry,
    ConnectionState,
    InvalidMessageError,
    PresenceBroadcaster,
)
from ProcessDesk.test.conftest import FakeConnection


def frame(event: EventType, **data) -> str:
    return Event(event, data).serialize()


class TestConnectionLifecycle:
    """Tests for ConnectionLifecycleHandler."""

    def setup_method(self):
        self.registry = ConnectionRegistry()
        self.hub = ConnectionHub()
        self.broadcaster = PresenceBroadcaster(self.registry, self.hub)
        self.lifecycle = ConnectionLifecycleHandler(self.registry, self.hub, self.broadcaster)

    @pytest.mark.asyncio
    async def test_open_is_anonymous(self):
        ctx = await self.lifecycle.open(FakeConnection("c1"))

        assert ctx.state is ConnectionState.ANONYMOUS
        assert "c1" in self.hub
        assert len(self.registry) == 0

    @pytest.mark.asyncio
    async def test_identify_registers_and_announces(self):
        ctx = await self.lifecycle.open(FakeConnection("c1"))

        assert await self.lifecycle.identify(ctx, "1", {"fullName": "Ada"}) is True

        assert ctx.is_identified
        assert ctx.user_id == "1"
        assert self.registry.connection_for("1") == "c1"
        assert ctx.connection.events_named("presence-snapshot") == [
            {"users": [{"fullName": "Ada", "id": "1"}]}
        ]

    @pytest.mark.asyncio
    async def test_identify_without_user_id(self):
        ctx = await self.lifecycle.open(FakeConnection("c1"))

        assert await self.lifecycle.identify(ctx, None) is False

        assert ctx.state is ConnectionState.ANONYMOUS
        assert ctx.connection.sent == []

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        watcher = await self.lifecycle.open(FakeConnection("watch"))
        ctx = await self.lifecycle.open(FakeConnection("c1"))
        await self.lifecycle.identify(ctx, "1")
        watcher.connection.clear()

        assert await self.lifecycle.disconnect(ctx) is True
        assert await self.lifecycle.disconnect(ctx) is False
        assert await self.lifecycle.disconnect(ctx) is False

        assert ctx.is_terminated
        assert "c1" not in self.hub
        assert not self.registry.is_online("1")
        # only the first disconnect announces
        assert watcher.connection.events_named("presence-snapshot") == [{"users": []}]

    @pytest.mark.asyncio
    async def test_identify_after_disconnect_ignored(self):
        ctx = await self.lifecycle.open(FakeConnection("c1"))
        await self.lifecycle.disconnect(ctx)

        assert await self.lifecycle.identify(ctx, "1") is False
        assert len(self.registry) == 0

    @pytest.mark.asyncio
    async def test_anonymous_disconnect(self):
        ctx = await self.lifecycle.open(FakeConnection("c1"))

        assert await self.lifecycle.disconnect(ctx) is True
        assert len(self.hub) == 0

    @pytest.mark.asyncio
    async def test_reconnect_then_stale_disconnect(self):
        old = await self.lifecycle.open(FakeConnection("c1"))
        await self.lifecycle.identify(old, "1")
        new = await self.lifecycle.open(FakeConnection("c2"))
        await self.lifecycle.identify(new, "1")

        await self.lifecycle.disconnect(old)

        assert self.registry.connection_for("1") == "c2"
        assert new.connection.events_named("presence-snapshot")[-1] == {"users": [{"id": "1"}]}

    @pytest.mark.asyncio
    async def test_sender_binding(self):
        ctx = await self.lifecycle.open(FakeConnection("c1"))

        with pytest.raises(InvalidMessageError):
            self.lifecycle.sender_for(ctx, "1")

        await self.lifecycle.identify(ctx, 1)

        assert self.lifecycle.sender_for(ctx, "1") == "1"
        assert self.lifecycle.sender_for(ctx, 1) == "1"
        assert self.lifecycle.sender_for(ctx, None) == "1"
        with pytest.raises(InvalidMessageError):
            self.lifecycle.sender_for(ctx, "2")

    @pytest.mark.asyncio
    async def test_replaced_connection_cannot_send(self):
        old = await self.lifecycle.open(FakeConnection("c1"))
        await self.lifecycle.identify(old, "1")
        new = await self.lifecycle.open(FakeConnection("c2"))
        await self.lifecycle.identify(new, "1")

        with pytest.raises(InvalidMessageError):
            self.lifecycle.sender_for(old, "1")
        with pytest.raises(InvalidMessageError):
            self.lifecycle.sender_for(old, None)
        assert self.lifecycle.sender_for(new, "1") == "1"

    @pytest.mark.asyncio
    async def test_replaced_connection_can_identify_again(self):
        old = await self.lifecycle.open(FakeConnection("c1"))
        await self.lifecycle.identify(old, "1")
        new = await self.lifecycle.open(FakeConnection("c2"))
        await self.lifecycle.identify(new, "1")

        await self.lifecycle.identify(old, "1")

        assert self.lifecycle.sender_for(old, "1") == "1"
        with pytest.raises(InvalidMessageError):
            self.lifecycle.sender_for(new, "1")

    @pytest.mark.asyncio
    async def test_sender_binding_disabled(self):
        lifecycle = ConnectionLifecycleHandler(
            self.registry, self.hub, self.broadcaster, bind_sender_to_identity=False
        )
        ctx = await lifecycle.open(FakeConnection("c1"))

        assert lifecycle.sender_for(ctx, "someone") == "someone"


class TestChatServerFrames:
    """Frame handling through ChatServer without opening sockets."""

    @pytest.fixture(autouse=True)
    def _wire(self, chat_server):
        self.server = chat_server

    async def connect(self, conn_id: str):
        return await self.server.lifecycle.open(FakeConnection(conn_id))

    @pytest.mark.asyncio
    async def test_identify_frame(self):
        ctx = await self.connect("c1")

        await self.server.handle_frame(ctx, frame(EventType.IDENTIFY, userId="1", userSummary={"fullName": "Ada"}))

        assert self.server.registry.is_online("1")

    @pytest.mark.asyncio
    async def test_bytes_frame(self):
        ctx = await self.connect("c1")

        await self.server.handle_frame(ctx, frame(EventType.IDENTIFY, userId="1").encode("utf-8"))

        assert self.server.registry.is_online("1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"event": "nope"}', '{"event": "identify", "data": 3}'])
    async def test_malformed_frame_gets_error(self, raw):
        ctx = await self.connect("c1")
        other = await self.connect("c2")

        await self.server.handle_frame(ctx, raw)

        errors = ctx.connection.events_named("error")
        assert len(errors) == 1
        assert errors[0]["code"] == "BAD_FRAME"
        assert other.connection.sent == []

    @pytest.mark.asyncio
    async def test_server_only_event_rejected(self):
        ctx = await self.connect("c1")

        await self.server.handle_frame(ctx, frame(EventType.STATE_INVALIDATED))

        assert ctx.connection.events_named("error")[0]["code"] == "UNKNOWN_EVENT"

    @pytest.mark.asyncio
    async def test_invalid_message_error_reply(self):
        ctx = await self.connect("c1")
        await self.server.handle_frame(ctx, frame(EventType.IDENTIFY, userId="1"))

        await self.server.handle_frame(ctx, frame(EventType.SEND_MESSAGE, senderId="1", recipientId="2", content=""))

        assert ctx.connection.events_named("error")[0]["code"] == "INVALID_MESSAGE"
        assert self.server.message_store.count() == 0

    @pytest.mark.asyncio
    async def test_spoofed_sender_rejected(self):
        ctx = await self.connect("c1")
        await self.server.handle_frame(ctx, frame(EventType.IDENTIFY, userId="1"))

        await self.server.handle_frame(ctx, frame(EventType.SEND_MESSAGE, senderId="2", recipientId="1", content="hi"))

        assert ctx.connection.events_named("error")[0]["code"] == "INVALID_MESSAGE"
        assert self.server.message_store.count() == 0

    @pytest.mark.asyncio
    async def test_replaced_connection_send_rejected(self):
        old = await self.connect("c1")
        new = await self.connect("c2")
        peer = await self.connect("c3")
        await self.server.handle_frame(old, frame(EventType.IDENTIFY, userId="1"))
        await self.server.handle_frame(new, frame(EventType.IDENTIFY, userId="1"))
        await self.server.handle_frame(peer, frame(EventType.IDENTIFY, userId="2"))
        for ctx in (old, new, peer):
            ctx.connection.clear()

        await self.server.handle_frame(old, frame(EventType.SEND_MESSAGE, senderId="1", recipientId="2", content="stale"))

        assert old.connection.events_named("error")[0]["code"] == "INVALID_MESSAGE"
        assert new.connection.sent == []
        assert peer.connection.sent == []
        assert self.server.message_store.count() == 0

    @pytest.mark.asyncio
    async def test_current_connection_gets_one_copy_after_reconnect(self):
        old = await self.connect("c1")
        new = await self.connect("c2")
        await self.server.handle_frame(old, frame(EventType.IDENTIFY, userId="1"))
        await self.server.handle_frame(new, frame(EventType.IDENTIFY, userId="1"))

        await self.server.handle_frame(new, frame(EventType.SEND_MESSAGE, senderId="1", recipientId="2", content="hi"))

        assert len(new.connection.events_named("message-delivered")) == 1
        assert old.connection.events_named("message-delivered") == []

    @pytest.mark.asyncio
    async def test_storage_failure_reply(self):
        ctx = await self.connect("c1")
        await self.server.handle_frame(ctx, frame(EventType.IDENTIFY, userId="1"))
        self.server.message_store.close()

        await self.server.handle_frame(ctx, frame(EventType.SEND_MESSAGE, senderId="1", recipientId="2", content="hi"))

        assert ctx.connection.events_named("error")[0]["code"] == "STORAGE_UNAVAILABLE"
        assert ctx.connection.events_named("message-delivered") == []

    @pytest.mark.asyncio
    async def test_two_user_walkthrough(self):
        """Both online, then the recipient leaves; the conversation keeps both messages."""
        u1 = await self.connect("c1")
        u2 = await self.connect("c2")
        await self.server.handle_frame(u1, frame(EventType.IDENTIFY, userId="1", userSummary={"fullName": "One"}))
        await self.server.handle_frame(u2, frame(EventType.IDENTIFY, userId="2", userSummary={"fullName": "Two"}))

        for ctx in (u1, u2):
            latest = ctx.connection.events_named("presence-snapshot")[-1]
            assert sorted(u["id"] for u in latest["users"]) == ["1", "2"]

        await self.server.handle_frame(u1, frame(EventType.SEND_MESSAGE, senderId="1", recipientId="2", content="hello"))

        first = u1.connection.events_named("message-delivered")
        assert len(first) == 1
        assert u2.connection.events_named("message-delivered") == first

        await self.server.lifecycle.disconnect(u2)
        assert u1.connection.events_named("presence-snapshot")[-1]["users"] == [{"fullName": "One", "id": "1"}]

        u2.connection.clear()
        await self.server.handle_frame(u1, frame(EventType.SEND_MESSAGE, senderId="1", recipientId="2", content="later"))

        delivered = u1.connection.events_named("message-delivered")
        assert [m["content"] for m in delivered] == ["hello", "later"]
        assert u2.connection.sent == []

        conversation = self.server.message_store.get_conversation("2", "1")
        assert [m.content for m in conversation] == ["hello", "later"]
        assert [m.to_payload() for m in conversation] == delivered


class TestHandleConnection:
    """handle_connection always ends in a terminated context."""

    @pytest.mark.asyncio
    async def test_disconnect_runs_after_frames(self, chat_server, caplog):
        class Socket:
            remote_address = ("127.0.0.1", 5555)

            def __init__(self, frames):
                self._frames = list(frames)
                self.send = AsyncMock()

            def __aiter__(self):
                return self

            async def __anext__(self):
                if not self._frames:
                    raise StopAsyncIteration
                return self._frames.pop(0)

        socket = Socket([frame(EventType.IDENTIFY, userId="1")])

        with caplog.at_level(logging.INFO, logger="ProcessDesk.core.server.websocket_manager"):
            await chat_server.handle_connection(socket)

        assert len(chat_server.registry) == 0
        assert len(chat_server.hub) == 0
        sent = [json.loads(call.args[0]) for call in socket.send.call_args_list]
        assert [e["event"] for e in sent] == ["presence-snapshot"]
        assert "from 127.0.0.1:5555" in caplog.text
