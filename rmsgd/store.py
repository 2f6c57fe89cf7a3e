"""Message persistence.

The hub only needs a store that can assign an id and timestamp to an
outbound message and hand back the persisted record. Conversation queries
and read receipts are exposed for the read-receipt event and for tooling.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

from .constants import STATUS_READ, STATUS_SENT
from .envelope import now_ms
from .errors import PersistenceFailure


def new_message_id() -> str:
    return os.urandom(12).hex()


@dataclass(frozen=True)
class StoredMessage:
    id: str
    sender: str
    recipient: str
    content: str
    message_type: str
    timestamp: int
    status: str = STATUS_SENT
    read_at: int | None = None
    client_ts: int | None = None


class MessageStore(Protocol):
    def create(
        self,
        *,
        sender: str,
        recipient: str,
        content: str,
        message_type: str,
        client_ts: int | None = None,
    ) -> StoredMessage: ...

    def get(self, message_id: str) -> StoredMessage | None: ...

    def mark_read(self, message_id: str, *, read_at: int | None = None) -> StoredMessage | None: ...

    def mark_conversation_read(self, reader: str, other: str) -> int: ...

    def conversation(
        self, user_a: str, user_b: str, *, page: int = 1, limit: int = 50
    ) -> list[StoredMessage]: ...

    def unread_count(self, user_id: str) -> int: ...

    def close(self) -> None: ...


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(1, int(page))
    limit = max(1, int(limit))
    return (page - 1) * limit, limit


class MemoryMessageStore:
    """Process-local store, used for ephemeral hubs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, StoredMessage] = {}

    def create(
        self,
        *,
        sender: str,
        recipient: str,
        content: str,
        message_type: str,
        client_ts: int | None = None,
    ) -> StoredMessage:
        msg = StoredMessage(
            id=new_message_id(),
            sender=sender,
            recipient=recipient,
            content=content,
            message_type=message_type,
            timestamp=now_ms(),
            client_ts=client_ts,
        )
        with self._lock:
            self._messages[msg.id] = msg
        return msg

    def get(self, message_id: str) -> StoredMessage | None:
        with self._lock:
            return self._messages.get(message_id)

    def mark_read(self, message_id: str, *, read_at: int | None = None) -> StoredMessage | None:
        with self._lock:
            msg = self._messages.get(message_id)
            if msg is None:
                return None
            if msg.status != STATUS_READ:
                msg = replace(msg, status=STATUS_READ, read_at=read_at or now_ms())
                self._messages[message_id] = msg
            return msg

    def mark_conversation_read(self, reader: str, other: str) -> int:
        ts = now_ms()
        changed = 0
        with self._lock:
            for mid, msg in list(self._messages.items()):
                if msg.sender == other and msg.recipient == reader and msg.status != STATUS_READ:
                    self._messages[mid] = replace(msg, status=STATUS_READ, read_at=ts)
                    changed += 1
        return changed

    def conversation(
        self, user_a: str, user_b: str, *, page: int = 1, limit: int = 50
    ) -> list[StoredMessage]:
        offset, limit = _page_bounds(page, limit)
        with self._lock:
            # Insertion order breaks timestamp ties.
            msgs = [
                (m.timestamp, i, m)
                for i, m in enumerate(self._messages.values())
                if (m.sender, m.recipient) in ((user_a, user_b), (user_b, user_a))
            ]
        # Newest page first, returned oldest-to-newest for display.
        msgs.sort(key=lambda x: (x[0], x[1]), reverse=True)
        return [m for _, _, m in reversed(msgs[offset : offset + limit])]

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            return sum(
                1
                for m in self._messages.values()
                if m.recipient == user_id and m.status != STATUS_READ
            )

    def close(self) -> None:
        pass


_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id           TEXT PRIMARY KEY NOT NULL,
    sender       TEXT NOT NULL,
    recipient    TEXT NOT NULL,
    content      TEXT NOT NULL,
    message_type TEXT NOT NULL DEFAULT 'text',
    timestamp    INTEGER NOT NULL,
    status       TEXT NOT NULL DEFAULT 'sent',
    read_at      INTEGER,
    client_ts    INTEGER
);
CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender, recipient, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_recipient_status ON messages(recipient, status);
"""

_COLUMNS = "id, sender, recipient, content, message_type, timestamp, status, read_at, client_ts"


class SqliteMessageStore:
    """SQLite-backed message store.

    A single connection is shared between RNS callback threads and guarded by
    a lock. Every ``sqlite3.Error`` is re-raised as ``PersistenceFailure``.
    """

    def __init__(self, db_path: str) -> None:
        self.log = logging.getLogger("rmsgd.store")
        self.db_path = db_path
        self._lock = threading.Lock()

        if db_path != ":memory:":
            parent = Path(db_path).parent
            parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"failed to open message store: {e}") from e

        self.log.info("Message store ready path=%s", db_path)

    def _row(self, row: tuple | None) -> StoredMessage | None:
        if row is None:
            return None
        return StoredMessage(
            id=row[0],
            sender=row[1],
            recipient=row[2],
            content=row[3],
            message_type=row[4],
            timestamp=int(row[5]),
            status=row[6],
            read_at=int(row[7]) if row[7] is not None else None,
            client_ts=int(row[8]) if row[8] is not None else None,
        )

    def create(
        self,
        *,
        sender: str,
        recipient: str,
        content: str,
        message_type: str,
        client_ts: int | None = None,
    ) -> StoredMessage:
        msg = StoredMessage(
            id=new_message_id(),
            sender=sender,
            recipient=recipient,
            content=content,
            message_type=message_type,
            timestamp=now_ms(),
            client_ts=client_ts,
        )
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        msg.id,
                        msg.sender,
                        msg.recipient,
                        msg.content,
                        msg.message_type,
                        msg.timestamp,
                        msg.status,
                        msg.read_at,
                        msg.client_ts,
                    ),
                )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"insert failed: {e}") from e
        return msg

    def get(self, message_id: str) -> StoredMessage | None:
        try:
            with self._lock:
                cur = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE id = ?", (message_id,)
                )
                return self._row(cur.fetchone())
        except sqlite3.Error as e:
            raise PersistenceFailure(f"lookup failed: {e}") from e

    def mark_read(self, message_id: str, *, read_at: int | None = None) -> StoredMessage | None:
        ts = read_at or now_ms()
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "UPDATE messages SET status = ?, read_at = ? WHERE id = ? AND status != ?",
                    (STATUS_READ, ts, message_id, STATUS_READ),
                )
                cur = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE id = ?", (message_id,)
                )
                return self._row(cur.fetchone())
        except sqlite3.Error as e:
            raise PersistenceFailure(f"update failed: {e}") from e

    def mark_conversation_read(self, reader: str, other: str) -> int:
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "UPDATE messages SET status = ?, read_at = ? "
                    "WHERE sender = ? AND recipient = ? AND status != ?",
                    (STATUS_READ, now_ms(), other, reader, STATUS_READ),
                )
                return int(cur.rowcount)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"update failed: {e}") from e

    def conversation(
        self, user_a: str, user_b: str, *, page: int = 1, limit: int = 50
    ) -> list[StoredMessage]:
        offset, limit = _page_bounds(page, limit)
        try:
            with self._lock:
                cur = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM messages "
                    "WHERE (sender = ? AND recipient = ?) OR (sender = ? AND recipient = ?) "
                    "ORDER BY timestamp DESC, rowid DESC LIMIT ? OFFSET ?",
                    (user_a, user_b, user_b, user_a, limit, offset),
                )
                rows = cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"query failed: {e}") from e
        return [m for m in reversed([self._row(r) for r in rows]) if m is not None]

    def unread_count(self, user_id: str) -> int:
        try:
            with self._lock:
                cur = self._conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE recipient = ? AND status != ?",
                    (user_id, STATUS_READ),
                )
                return int(cur.fetchone()[0])
        except sqlite3.Error as e:
            raise PersistenceFailure(f"query failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error:
                self.log.debug("Closing message store failed", exc_info=True)
