"""SQLite storage for the fleexpert server: schema and connection manager.

The server keeps users, messages and proofs in one WAL-mode database with
foreign keys enforced. The client's offline proof store reuses SQLiteDB
with its own schema.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Sequence


_SCHEMA_SQL = """
-- Platform users (candidates, coaches, organization admins)
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL CHECK(role IN ('CANDIDATE','COACH','ORG_ADMIN','ADMIN')),
    current_level TEXT,
    xp INTEGER NOT NULL DEFAULT 0,
    api_token TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

-- One-to-one chat messages
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL REFERENCES users(id),
    recipient_id TEXT NOT NULL REFERENCES users(id),
    content TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_pair
    ON messages (sender_id, recipient_id, created_at);

-- Proof-of-learning portfolio entries
CREATE TABLE IF NOT EXISTS proofs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    organization_id TEXT NOT NULL,
    title TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    proof_url TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING' CHECK(status IN ('PENDING','VALIDATED','REJECTED')),
    feedback TEXT,
    xp_awarded INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
"""


class SQLiteDB:
    """Thin wrapper over one sqlite3 connection that returns rows as dicts.

    Every ``execute`` commits on its own unless it runs inside
    ``transaction()``, which commits once at the end or rolls back if the
    block raises::

        db = SQLiteDB("data/fleexpert.db")
        with db.transaction():
            db.execute("UPDATE proofs SET status = ? WHERE id = ?", ("VALIDATED", pid))
            db.execute("UPDATE users SET xp = xp + ? WHERE id = ?", (10, uid))

    ``schema`` lets other stores (the client's offline table) reuse the
    manager with their own tables.
    """

    def __init__(self, db_path: str, schema: str = _SCHEMA_SQL) -> None:
        self._db_path = db_path
        # The ASGI test client runs handlers on a worker thread.
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._in_transaction = False
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(schema)
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group the writes of the block into a single commit."""
        if self._in_transaction:
            yield
            return
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            self._in_transaction = False

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        cursor = self._conn.execute(sql, params)
        if not self._in_transaction:
            self._conn.commit()
        return cursor

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        """First row of the query, or None when it matches nothing."""
        row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return [dict(row) for row in self._conn.execute(sql, params)]

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteDB":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
