"""
Conversation stores.

append() is the only mutator: it creates the record on first write and
appends on every later one. Messages are never reordered or removed; a
conversation goes away only as a whole, via delete().

Two backends share the ConversationStore interface:
  memory: a dict, single process, lost on restart
  sqlite: single portable file, survives restarts

Usage:
    from ragdesk.storage.conversations import make_store
    store = make_store("sqlite", path="./data/conversations.db")

The store does not check ownership on append; callers pass the right user.
Read paths that expose data to a user must compare record.user_id themselves.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from uuid import uuid4

from ragdesk.storage.models import ConversationRecord, Message

logger = logging.getLogger(__name__)


def new_conversation_id() -> str:
    return str(uuid4())


class ConversationStore(ABC):
    """Abstract append-only conversation log."""

    @abstractmethod
    def append(
        self,
        conversation_id: str | None,
        user_id: str,
        department_code: str,
        messages: list[Message],
    ) -> str:
        """
        Append messages to a conversation, creating it if needed.
        Returns the conversation id (freshly generated when none was given).
        """
        ...

    @abstractmethod
    def get(self, conversation_id: str) -> ConversationRecord | None:
        ...

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int | None = None) -> list[ConversationRecord]:
        """User's conversations, most recently updated first."""
        ...

    @abstractmethod
    def delete(self, conversation_id: str) -> bool:
        """Remove a whole conversation. Returns False if it did not exist."""
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryConversationStore(ConversationStore):
    """Dict-backed store. Safe only within one process and one event loop."""

    def __init__(self):
        self._records: dict[str, ConversationRecord] = {}

    def append(self, conversation_id, user_id, department_code, messages):
        now = time.time()
        conv_id = conversation_id or new_conversation_id()

        existing = self._records.get(conv_id)
        if existing:
            existing.messages.extend(messages)
            existing.updated_at = now
            return conv_id

        self._records[conv_id] = ConversationRecord(
            conversation_id=conv_id,
            user_id=user_id,
            department_code=department_code,
            created_at=now,
            updated_at=now,
            messages=list(messages),
        )
        return conv_id

    def get(self, conversation_id):
        record = self._records.get(conversation_id)
        if record is None:
            return None
        return replace(record, messages=list(record.messages))

    def list_for_user(self, user_id, limit=None):
        records = [
            replace(r, messages=list(r.messages))
            for r in self._records.values()
            if r.user_id == user_id
        ]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records[:limit] if limit else records

    def delete(self, conversation_id):
        return self._records.pop(conversation_id, None) is not None

    def clear(self):
        self._records.clear()


CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    department_code TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp REAL NOT NULL,
    error TEXT DEFAULT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id);
CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id, updated_at);
"""


class SQLiteConversationStore(ConversationStore):
    """
    SQLite-backed store. Each append runs in one transaction, so concurrent
    turns against the same conversation cannot lose each other's messages.
    """

    def __init__(self, path: str):
        self.db_path = Path(path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite conversation store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def append(self, conversation_id, user_id, department_code, messages):
        now = time.time()
        conv_id = conversation_id or new_conversation_id()

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conv_id),
            )
            if cur.rowcount == 0:
                conn.execute(
                    """INSERT INTO conversations
                       (id, user_id, department_code, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (conv_id, user_id, department_code, now, now),
                )
            conn.executemany(
                """INSERT INTO messages
                   (id, conversation_id, role, content, timestamp, error)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (m.id, conv_id, m.role, m.content, m.timestamp, m.error)
                    for m in messages
                ],
            )
        logger.debug("Appended %d messages to conversation %s", len(messages), conv_id)
        return conv_id

    def _load_messages(self, conn, conversation_id: str) -> list[Message]:
        rows = conn.execute(
            """SELECT id, role, content, timestamp, error FROM messages
               WHERE conversation_id = ? ORDER BY seq""",
            (conversation_id,),
        ).fetchall()
        return [
            Message(
                id=r["id"],
                role=r["role"],
                content=r["content"],
                timestamp=r["timestamp"],
                error=r["error"],
            )
            for r in rows
        ]

    def _to_record(self, conn, row) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row["id"],
            user_id=row["user_id"],
            department_code=row["department_code"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            messages=self._load_messages(conn, row["id"]),
        )

    def get(self, conversation_id):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                return None
            return self._to_record(conn, row)

    def list_for_user(self, user_id, limit=None):
        sql = "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC"
        params: tuple = (user_id,)
        if limit:
            sql += " LIMIT ?"
            params = (user_id, limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._to_record(conn, row) for row in rows]

    def delete(self, conversation_id):
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
            cur = conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
            return cur.rowcount > 0

    def clear(self):
        with self._connect() as conn:
            conn.execute("DELETE FROM messages")
            conn.execute("DELETE FROM conversations")


_REGISTRY: dict[str, type[ConversationStore]] = {
    "memory": MemoryConversationStore,
    "sqlite": SQLiteConversationStore,
}


def make_store(backend: str, **kwargs) -> ConversationStore:
    """
    Instantiate a conversation store by name.

    Raises:
        ValueError: If the backend is not registered.
    """
    cls = _REGISTRY.get(backend)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown conversation store: '{backend}'. Available: {available}"
        )
    return cls(**kwargs)
