"""
Test configuration and fixtures for ProcessDesk tests.

Provides:
- FakeConnection: in-memory TransportConnection that records frames
- Temporary SQLite stores
- A fully wired chat server (without sockets) and REST app
"""

import json
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

from ProcessDesk.api.records import SQLiteRecordStore
from ProcessDesk.core.server import (
    ChatServer,
    ConnectionHub,
    ConnectionRegistry,
    SQLiteMessageStore,
)


class FakeConnection:
    """TransportConnection double that keeps every frame it was sent."""

    _counter = 0

    def __init__(self, conn_id: Optional[str] = None, fail: bool = False):
        FakeConnection._counter += 1
        self.conn_id = conn_id or f"conn-{FakeConnection._counter}"
        self.sent: List[str] = []
        self.fail = fail
        self.closed = False

    async def send(self, message: str) -> bool:
        if self.fail or self.closed:
            return False
        self.sent.append(message)
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True

    def is_open(self) -> bool:
        return not self.closed

    @property
    def events(self) -> List[Dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent]

    def events_named(self, name: str) -> List[Dict[str, Any]]:
        return [e["data"] for e in self.events if e["event"] == name]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as path:
        yield Path(path)


@pytest.fixture
def message_store(temp_dir: Path) -> Generator[SQLiteMessageStore, None, None]:
    store = SQLiteMessageStore(str(temp_dir / "msgdatabase.sqlite"))
    yield store
    store.close()


@pytest.fixture
def record_store(temp_dir: Path) -> Generator[SQLiteRecordStore, None, None]:
    store = SQLiteRecordStore(str(temp_dir / "database.sqlite"))
    yield store
    store.close()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def hub() -> ConnectionHub:
    return ConnectionHub()


@pytest.fixture
def chat_server(message_store: SQLiteMessageStore) -> ChatServer:
    """A chat server that is never started; drive it through its lifecycle and handle_frame."""
    return ChatServer(message_store, bind_sender_to_identity=True)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that open real sockets"
    )
