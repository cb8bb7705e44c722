"""SQLite chat log for ProcessDesk.

Append-only storage of person-to-person messages. The log lives in its own
database file (Config.MESSAGES_DB_FILE), separate from the process records.

Design goals:
  - Zero extra dependencies (uses stdlib sqlite3)
  - Safe for appends from worker threads: id and timestamp assignment,
    the insert and the commit happen under one lock
  - Storage failures surface as StorageUnavailableError, never retried here
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import List, Optional

from ProcessDesk.core.message.protocol import ChatMessage, MessageKind
from ProcessDesk.core.server.exceptions import InvalidMessageError, StorageUnavailableError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  sender_id TEXT NOT NULL,
  recipient_id TEXT NOT NULL,
  content TEXT NOT NULL,
  kind TEXT NOT NULL DEFAULT 'text',
  created_at REAL NOT NULL,
  read INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_pair_time ON messages(sender_id, recipient_id, created_at, id);
"""


def _present(value) -> bool:
    if value is None:
        return False
    return bool(str(value).strip())


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    return ChatMessage(
        id=int(row["id"]),
        sender_id=str(row["sender_id"]),
        recipient_id=str(row["recipient_id"]),
        content=str(row["content"]),
        kind=MessageKind(row["kind"]),
        created_at=float(row["created_at"]),
        read_flag=bool(row["read"]),
    )


class SQLiteMessageStore:
    """Durable, ordered log of chat messages."""

    def __init__(self, db_path: str):
        self.db_path = str(Path(db_path))
        self._lock = threading.RLock()
        self._last_created_at = 0.0
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_db()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open message store {self.db_path}: {e}") from e

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
            row = self._conn.execute("SELECT MAX(created_at) AS ts FROM messages").fetchone()
            if row is not None and row["ts"] is not None:
                self._last_created_at = float(row["ts"])

    def append(self, sender_id, recipient_id, content, kind="text") -> ChatMessage:
        """Store a message; assigns id and created_at atomically with the insert."""
        if not (_present(sender_id) and _present(recipient_id) and _present(content)):
            raise InvalidMessageError("senderId, recipientId and content are required")
        if not isinstance(kind, MessageKind):
            try:
                kind = MessageKind(kind or MessageKind.TEXT.value)
            except ValueError:
                raise InvalidMessageError(f"Unknown message kind: {kind!r}") from None

        sender_id, recipient_id, content = str(sender_id), str(recipient_id), str(content)
        with self._lock:
            # Never step back in time, so (created_at, id) order matches insertion order.
            created_at = max(time.time(), self._last_created_at)
            try:
                cur = self._conn.execute(
                    "INSERT INTO messages(sender_id, recipient_id, content, kind, created_at, read) VALUES(?,?,?,?,?,0)",
                    (sender_id, recipient_id, content, kind.value, created_at),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._rollback()
                logger.error("Failed to store message from %s to %s: %s", sender_id, recipient_id, e)
                raise StorageUnavailableError(f"Message store unavailable: {e}") from e
            self._last_created_at = created_at
            message_id = int(cur.lastrowid)

        logger.debug("Stored message %d from %s to %s", message_id, sender_id, recipient_id)
        return ChatMessage(
            id=message_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            kind=kind,
            created_at=created_at,
        )

    def get_conversation(self, user_a, user_b) -> List[ChatMessage]:
        """Every message between two users, in either direction, oldest first."""
        a, b = str(user_a), str(user_b)
        with self._lock:
            try:
                cur = self._conn.execute(
                    """
                    SELECT * FROM messages
                    WHERE (sender_id=? AND recipient_id=?) OR (sender_id=? AND recipient_id=?)
                    ORDER BY created_at ASC, id ASC
                    """,
                    (a, b, b, a),
                )
                rows = cur.fetchall()
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"Message store unavailable: {e}") from e
        return [_row_to_message(r) for r in rows]

    def get(self, message_id: int) -> Optional[ChatMessage]:
        with self._lock:
            try:
                row = self._conn.execute("SELECT * FROM messages WHERE id=?", (int(message_id),)).fetchone()
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"Message store unavailable: {e}") from e
        return None if row is None else _row_to_message(row)

    def count(self) -> int:
        with self._lock:
            try:
                return int(self._conn.execute("SELECT COUNT(*) AS n FROM messages").fetchone()["n"])
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"Message store unavailable: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error:
            logger.debug("Rollback failed on message store", exc_info=True)
