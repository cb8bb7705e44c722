"""SQLite record store for the REST API.

Keeps the records the process-tracking UI edits: processes (with their
assigned users), users, categories with subcategories, companies with
locations, the system settings document and the process change log.

Design goals:
  - Zero extra dependencies (uses stdlib sqlite3)
  - Safe for multi-request use (single process): guarded by a lock
  - Raise Record*Error / StorageUnavailableError; the HTTP layer maps them
  - A write and the reads that build its reply share one transaction, so
    a failed reply never leaves a committed change behind
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ProcessDesk.core.server.exceptions import (
    RecordConflictError,
    RecordNotFoundError,
    RecordValidationError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  full_name TEXT NOT NULL,
  email TEXT UNIQUE NOT NULL,
  password_hash TEXT NOT NULL,
  role TEXT NOT NULL,
  status TEXT NOT NULL,
  hint TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS processes (
  id TEXT PRIMARY KEY,
  company TEXT, location TEXT, title TEXT, description TEXT, current_status TEXT,
  start_date TEXT, next_check_date TEXT, completion_date TEXT,
  category TEXT, subcategory TEXT, priority TEXT, status TEXT,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS process_assignments (
  process_id TEXT NOT NULL,
  user_id INTEGER NOT NULL,
  PRIMARY KEY (process_id, user_id),
  FOREIGN KEY (process_id) REFERENCES processes(id) ON DELETE CASCADE,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS categories (
  name TEXT PRIMARY KEY,
  children TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS companies (
  name TEXT PRIMARY KEY,
  children TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS system_settings (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  document TEXT NOT NULL,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER,
  user_name TEXT NOT NULL,
  process_id TEXT NOT NULL,
  field TEXT NOT NULL,
  old_value TEXT,
  new_value TEXT,
  created_at REAL NOT NULL
);
"""

PROCESS_FIELDS = (
    "company", "location", "title", "description", "current_status",
    "start_date", "next_check_date", "completion_date",
    "category", "subcategory", "priority", "status",
)

DEFAULT_CATEGORIES = {
    "Software": ["Web Development", "Mobile Development", "Database Management"],
    "Finance": ["Accounting", "Budget", "Audit"],
    "IT": ["Infrastructure", "Cyber Security", "Hardware"],
    "Management": ["Human Resources", "Operations", "Marketing"],
}

DEFAULT_COMPANIES = {
    "Sera": ["Headquarters", "Van", "Technopark"],
    "Van": ["Bil", "In", "Industry"],
    "Mik": ["Bos", "Ad", "Market"],
    "Alfa": ["Istanbul", "Ankara"],
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "siteName": "Process Management",
    "siteDescription": "Professional process tracking and management system",
    "logoUrl": None,
    "primaryColor": "#2563eb",
    "secondaryColor": "#64748b",
    "allowRegistration": True,
    "requireEmailVerification": True,
    "defaultUserRole": "Viewer",
    "sessionTimeout": 24,
    "maxFileSize": 50,
    "allowedFileTypes": ".jpg,.jpeg,.png,.gif,.pdf,.doc,.docx,.xls,.xlsx,.txt,.zip",
    "emailNotifications": True,
    "systemLanguage": "tr",
    "dateFormat": "DD/MM/YYYY",
    "currency": "TRY",
}

# Group tables: table -> name of the child list in API payloads
GROUP_TABLES = {"categories": "subcategories", "companies": "locations"}
CHILD_LABELS = {"categories": "Subcategory", "companies": "Location"}

SYSTEM_ACTOR = "System"
LOG_LIMIT = 100


def _clean_name(name: Optional[str], what: str) -> str:
    name = (name or "").strip()
    if not name:
        raise RecordValidationError(f"{what} name is required")
    return name


class SQLiteRecordStore:
    """A small SQLite-backed store for the process-tracking records."""

    def __init__(self, db_path: str, seed_defaults: bool = True):
        self.db_path = str(Path(db_path))
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._lock:
                self._conn.executescript(SCHEMA_SQL)
                if seed_defaults:
                    self._seed_locked()
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open record store {self.db_path}: {e}") from e

    def _seed_locked(self) -> None:
        for table, defaults in (("categories", DEFAULT_CATEGORIES), ("companies", DEFAULT_COMPANIES)):
            if self._conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"] == 0:
                self._conn.executemany(
                    f"INSERT INTO {table}(name, children) VALUES(?, ?)",
                    [(name, json.dumps(children, ensure_ascii=False)) for name, children in defaults.items()],
                )
        self._conn.execute(
            "INSERT OR IGNORE INTO system_settings(id, document, updated_at) VALUES(1, ?, ?)",
            (json.dumps(DEFAULT_SETTINGS), time.time()),
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a write under the lock; commit on success, roll back on any error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.IntegrityError as e:
                self._rollback()
                raise RecordConflictError(str(e)) from e
            except sqlite3.Error as e:
                self._rollback()
                logger.error("Record store write failed: %s", e)
                raise StorageUnavailableError(f"Record store unavailable: {e}") from e
            except Exception:
                self._rollback()
                raise

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error:
            logger.debug("Rollback failed on record store", exc_info=True)

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"Record store unavailable: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --------------------------- users ---------------------------
    @staticmethod
    def _user_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": int(row["id"]),
            "full_name": row["full_name"],
            "email": row["email"],
            "role": row["role"],
            "status": row["status"],
        }

    def list_users(self) -> List[Dict[str, Any]]:
        with self._reading() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._user_row(r) for r in rows]

    def get_user(self, user_id: int) -> Dict[str, Any]:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM users WHERE id=?", (int(user_id),)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"User {user_id} not found")
        return self._user_row(row)

    def create_user(self, full_name: str, email: str, password_hash: str,
                    role: str, status: str, hint: str = "") -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO users(full_name, email, password_hash, role, status, hint) VALUES(?,?,?,?,?,?)",
                (full_name, email, password_hash, role, status, hint or ""),
            )
            return int(cur.lastrowid)

    def update_user(self, user_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        allowed = {k: v for k, v in changes.items()
                   if k in ("full_name", "email", "role", "status", "hint", "password_hash") and v is not None}
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM users WHERE id=?", (int(user_id),)).fetchone() is None:
                raise RecordNotFoundError(f"User {user_id} not found")
            if allowed:
                assignments = ", ".join(f"{column}=?" for column in allowed)
                conn.execute(f"UPDATE users SET {assignments} WHERE id=?", (*allowed.values(), int(user_id)))
            return self.get_user(user_id)

    def delete_user(self, user_id: int) -> None:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM users WHERE id=?", (int(user_id),))
            if cur.rowcount == 0:
                raise RecordNotFoundError(f"User {user_id} not found")

    # ------------------------- processes -------------------------
    def _assignees_locked(self) -> Dict[str, List[int]]:
        out: Dict[str, List[int]] = {}
        for r in self._conn.execute("SELECT process_id, user_id FROM process_assignments ORDER BY user_id"):
            out.setdefault(r["process_id"], []).append(int(r["user_id"]))
        return out

    def list_processes(self) -> List[Dict[str, Any]]:
        with self._reading() as conn:
            rows = conn.execute("SELECT * FROM processes ORDER BY start_date DESC, id DESC").fetchall()
            assignees = self._assignees_locked()
        return [
            {"id": r["id"], **{f: r[f] for f in PROCESS_FIELDS}, "assignees": assignees.get(r["id"], [])}
            for r in rows
        ]

    def get_process(self, process_id: str) -> Dict[str, Any]:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM processes WHERE id=?", (process_id,)).fetchone()
            if row is None:
                raise RecordNotFoundError(f"Process {process_id} not found")
            assignees = [int(r["user_id"]) for r in conn.execute(
                "SELECT user_id FROM process_assignments WHERE process_id=? ORDER BY user_id", (process_id,)
            )]
        return {"id": row["id"], **{f: row[f] for f in PROCESS_FIELDS}, "assignees": assignees}

    def _next_process_id_locked(self) -> str:
        row = self._conn.execute(
            "SELECT MAX(CAST(id AS INTEGER)) AS max_id FROM processes WHERE id NOT GLOB '*[^0-9]*'"
        ).fetchone()
        return str((row["max_id"] or 0) + 1).zfill(6)

    def _assign_locked(self, process_id: str, user_ids: Iterable[int]) -> None:
        self._conn.execute("DELETE FROM process_assignments WHERE process_id=?", (process_id,))
        known = {int(r["id"]) for r in self._conn.execute("SELECT id FROM users")}
        for user_id in dict.fromkeys(int(u) for u in user_ids):
            if user_id in known:
                self._conn.execute(
                    "INSERT INTO process_assignments(process_id, user_id) VALUES(?, ?)", (process_id, user_id)
                )
            else:
                logger.debug("Skipping unknown assignee %s for process %s", user_id, process_id)

    def create_process(self, data: Dict[str, Any], actor_id: Optional[int] = None) -> str:
        with self._transaction() as conn:
            process_id = self._next_process_id_locked()
            conn.execute(
                f"INSERT INTO processes(id, {', '.join(PROCESS_FIELDS)}, updated_at) "
                f"VALUES(?, {', '.join('?' for _ in PROCESS_FIELDS)}, ?)",
                (process_id, *(data.get(f) for f in PROCESS_FIELDS), time.time()),
            )
            self._assign_locked(process_id, data.get("assignees") or [])
            self._log_locked(actor_id, process_id, "created", "", "Process created")
        return process_id

    def update_process(self, process_id: str, data: Dict[str, Any],
                       actor_id: Optional[int] = None) -> Dict[str, Any]:
        with self._transaction() as conn:
            before = self.get_process(process_id)
            conn.execute(
                f"UPDATE processes SET {', '.join(f'{f}=?' for f in PROCESS_FIELDS)}, updated_at=? WHERE id=?",
                (*(data.get(f) for f in PROCESS_FIELDS), time.time(), process_id),
            )
            self._assign_locked(process_id, data.get("assignees") or [])
            after = self.get_process(process_id)
            for f in (*PROCESS_FIELDS, "assignees"):
                self._log_locked(actor_id, process_id, f, before[f], after[f])
            return after

    def delete_process(self, process_id: str, actor_id: Optional[int] = None) -> None:
        with self._transaction() as conn:
            row = conn.execute("SELECT title FROM processes WHERE id=?", (process_id,)).fetchone()
            if row is None:
                raise RecordNotFoundError(f"Process {process_id} not found")
            conn.execute("DELETE FROM processes WHERE id=?", (process_id,))
            self._log_locked(actor_id, process_id, "deleted", row["title"], "Process deleted")

    # ---------------------------- logs ----------------------------
    @staticmethod
    def _log_text(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return str(value)

    def _log_locked(self, actor_id: Optional[int], process_id: str, field: str,
                    old_value: Any, new_value: Any) -> bool:
        """Record one field change; unchanged values are not logged."""
        old_text, new_text = self._log_text(old_value), self._log_text(new_value)
        if old_text == new_text:
            return False
        user_name = SYSTEM_ACTOR
        if actor_id is not None:
            row = self._conn.execute("SELECT full_name FROM users WHERE id=?", (int(actor_id),)).fetchone()
            if row is None:
                actor_id = None
            else:
                user_name = row["full_name"]
        self._conn.execute(
            "INSERT INTO logs(user_id, user_name, process_id, field, old_value, new_value, created_at) "
            "VALUES(?,?,?,?,?,?,?)",
            (actor_id, user_name, process_id, field, old_text, new_text, time.time()),
        )
        return True

    def list_logs(self, limit: int = LOG_LIMIT) -> List[Dict[str, Any]]:
        """Newest change-log entries first."""
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM logs ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "user_id": r["user_id"],
                "user_name": r["user_name"],
                "process_id": r["process_id"],
                "field": r["field"],
                "old_value": r["old_value"],
                "new_value": r["new_value"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ------------------ categories / companies ------------------
    def list_group(self, table: str) -> Dict[str, List[str]]:
        if table not in GROUP_TABLES:
            raise ValueError(f"Unknown group table: {table}")
        with self._reading() as conn:
            rows = conn.execute(f"SELECT name, children FROM {table} ORDER BY name").fetchall()
        return {r["name"]: json.loads(r["children"]) for r in rows}

    def add_group(self, table: str, name: str, children: Optional[List[str]] = None) -> Dict[str, List[str]]:
        name = _clean_name(name, "Group")
        with self._transaction() as conn:
            if conn.execute(f"SELECT 1 FROM {table} WHERE name=?", (name,)).fetchone() is not None:
                raise RecordConflictError(f"{name} already exists")
            conn.execute(
                f"INSERT INTO {table}(name, children) VALUES(?, ?)",
                (name, json.dumps(list(children or []), ensure_ascii=False)),
            )
            return self.list_group(table)

    def rename_group(self, table: str, old_name: str, new_name: str) -> Dict[str, List[str]]:
        new_name = _clean_name(new_name, "New")
        with self._transaction() as conn:
            if conn.execute(f"SELECT 1 FROM {table} WHERE name=?", (old_name,)).fetchone() is None:
                raise RecordNotFoundError(f"{old_name} not found")
            if old_name != new_name:
                if conn.execute(f"SELECT 1 FROM {table} WHERE name=?", (new_name,)).fetchone() is not None:
                    raise RecordConflictError(f"{new_name} is already in use")
                conn.execute(f"UPDATE {table} SET name=? WHERE name=?", (new_name, old_name))
            return self.list_group(table)

    def delete_group(self, table: str, name: str) -> Dict[str, List[str]]:
        with self._transaction() as conn:
            cur = conn.execute(f"DELETE FROM {table} WHERE name=?", (name,))
            if cur.rowcount == 0:
                raise RecordNotFoundError(f"{name} not found")
            return self.list_group(table)

    def _children_locked(self, table: str, name: str) -> List[str]:
        row = self._conn.execute(f"SELECT children FROM {table} WHERE name=?", (name,)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"{name} not found")
        return json.loads(row["children"])

    def _save_children_locked(self, table: str, name: str, children: List[str]) -> None:
        self._conn.execute(
            f"UPDATE {table} SET children=? WHERE name=?",
            (json.dumps(children, ensure_ascii=False), name),
        )

    def add_child(self, table: str, name: str, child: str) -> Dict[str, List[str]]:
        """Append a subcategory or location to group ``name``."""
        name = _clean_name(name, "Group")
        child = _clean_name(child, CHILD_LABELS[table])
        with self._transaction():
            children = self._children_locked(table, name)
            if child in children:
                raise RecordConflictError(f"{child} already exists in {name}")
            self._save_children_locked(table, name, children + [child])
            return self.list_group(table)

    def rename_child(self, table: str, name: str, old_child: str, new_child: str) -> Dict[str, List[str]]:
        """Rename a subcategory or location in place, keeping its position."""
        name = _clean_name(name, "Group")
        old_child = _clean_name(old_child, "Old")
        new_child = _clean_name(new_child, "New")
        with self._transaction():
            children = self._children_locked(table, name)
            if old_child not in children:
                raise RecordNotFoundError(f"{old_child} not found in {name}")
            if new_child != old_child and new_child in children:
                raise RecordConflictError(f"{new_child} already exists in {name}")
            children[children.index(old_child)] = new_child
            self._save_children_locked(table, name, children)
            return self.list_group(table)

    def delete_child(self, table: str, name: str, child: str) -> Dict[str, List[str]]:
        name = _clean_name(name, "Group")
        child = _clean_name(child, CHILD_LABELS[table])
        with self._transaction():
            children = self._children_locked(table, name)
            if child not in children:
                raise RecordNotFoundError(f"{child} not found in {name}")
            children.remove(child)
            self._save_children_locked(table, name, children)
            return self.list_group(table)

    # -------------------------- settings --------------------------
    def get_settings(self) -> Dict[str, Any]:
        with self._reading() as conn:
            row = conn.execute("SELECT document FROM system_settings WHERE id=1").fetchone()
        document = dict(DEFAULT_SETTINGS)
        if row is not None:
            document.update(json.loads(row["document"]))
        return document

    def update_settings(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - set(DEFAULT_SETTINGS)
        if unknown:
            raise RecordValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        with self._transaction() as conn:
            document = self.get_settings()
            document.update(changes)
            conn.execute(
                "INSERT INTO system_settings(id, document, updated_at) VALUES(1, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET document=excluded.document, updated_at=excluded.updated_at",
                (json.dumps(document), time.time()),
            )
        return document

    def reset_settings(self) -> Dict[str, Any]:
        """Replace the settings document with the defaults."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO system_settings(id, document, updated_at) VALUES(1, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET document=excluded.document, updated_at=excluded.updated_at",
                (json.dumps(DEFAULT_SETTINGS), time.time()),
            )
            return self.get_settings()
