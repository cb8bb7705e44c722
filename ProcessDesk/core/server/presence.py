"""Presence tracking for ProcessDesk.

Tracks which users are reachable and through which live connection.
State is in-memory and owned by a single :class:`ConnectionRegistry`
instance that the server assembly passes to whoever needs it.

Design:
- A user maps to at most one connection; identifying again from a new
  connection replaces the old entry (last connection wins).
- A connection maps to at most one user.
- Only the lifecycle handler mutates the registry; the router and the
  presence broadcaster read it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    user_id: str
    user_summary: Dict[str, Any]
    connection_id: str
    registered_at: float = field(default_factory=time.time)


class ConnectionRegistry:
    """Maps online users to their live connection."""

    def __init__(self) -> None:
        # user_id -> entry
        self._entries: Dict[str, RegistryEntry] = {}
        # connection_id -> user_id
        self._by_connection: Dict[str, str] = {}

    def register(self, user_id: Any, user_summary: Optional[Dict[str, Any]], connection_id: str) -> Optional[RegistryEntry]:
        """Insert or replace the entry for ``user_id``.

        Returns the new entry, or None when ``user_id`` is falsy.
        """
        if not user_id:
            logger.warning("Ignoring registration without a user id on connection %s", connection_id)
            return None
        user_id = str(user_id)
        summary = dict(user_summary) if isinstance(user_summary, dict) else {}

        # A connection may identify as a different user; drop its old identity.
        previous_user = self._by_connection.get(connection_id)
        if previous_user is not None and previous_user != user_id:
            self._entries.pop(previous_user, None)

        replaced = self._entries.get(user_id)
        if replaced is not None and replaced.connection_id != connection_id:
            self._by_connection.pop(replaced.connection_id, None)
            logger.info("User %s reconnected; replacing connection %s with %s",
                        user_id, replaced.connection_id, connection_id)

        entry = RegistryEntry(user_id=user_id, user_summary=summary, connection_id=connection_id)
        self._entries[user_id] = entry
        self._by_connection[connection_id] = user_id
        logger.debug("Registered user %s on connection %s", user_id, connection_id)
        return entry

    def deregister(self, connection_id: str) -> Optional[RegistryEntry]:
        """Remove the entry held by ``connection_id``. A miss is a no-op."""
        entry = self.find_by_connection(connection_id)
        if entry is None:
            return None
        self._by_connection.pop(connection_id, None)
        self._entries.pop(entry.user_id, None)
        logger.debug("Deregistered user %s from connection %s", entry.user_id, connection_id)
        return entry

    def find_by_connection(self, connection_id: str) -> Optional[RegistryEntry]:
        user_id = self._by_connection.get(connection_id)
        if user_id is None:
            return None
        return self._entries.get(user_id)

    def connection_for(self, user_id: Any) -> Optional[str]:
        if not user_id:
            return None
        entry = self._entries.get(str(user_id))
        return entry.connection_id if entry else None

    def is_online(self, user_id: Any) -> bool:
        return self.connection_for(user_id) is not None

    def online_users(self) -> List[str]:
        return sorted(self._entries.keys())

    def snapshot(self) -> List[Dict[str, Any]]:
        """Copies of every registered user summary.

        Each copy carries ``id`` so clients can match it against their user list.
        """
        out: List[Dict[str, Any]] = []
        for entry in self._entries.values():
            summary = dict(entry.user_summary)
            summary.setdefault("id", entry.user_id)
            out.append(summary)
        return out

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return str(user_id) in self._entries
