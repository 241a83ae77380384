"""Data access repositories for users, messages and proofs.

Each repo takes a SQLiteDB instance via dependency injection. Repositories
are the single entry point for all persistence: API routes never touch
the database directly. Rows come back as plain dicts shaped like the
models in ``fleexpert.db.models``.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import Any

from fleexpert.db.sqlite import SQLiteDB


def _now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def _public_user(row: dict[str, Any]) -> dict[str, Any]:
    row = dict(row)
    row.pop("api_token", None)
    return row


class UserRepo:
    """Repository for platform users.

    The bearer token stored on each row is the only identity mechanism the
    API relies on; issuing and rotating it belongs to the account service.
    """

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    def create(
        self,
        name: str,
        email: str,
        role: str = "CANDIDATE",
        current_level: str | None = None,
        api_token: str | None = None,
    ) -> dict[str, Any]:
        """Create a user. The returned dict includes ``api_token``."""
        user_id = _new_id()
        token = api_token or secrets.token_urlsafe(24)
        self._db.execute(
            "INSERT INTO users (id, name, email, role, current_level, xp, api_token, created_at) "
            "VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
            (user_id, name, email, role, current_level, token, _now_iso()),
        )
        return self._db.fetchone("SELECT * FROM users WHERE id = ?", (user_id,))  # type: ignore[return-value]

    def get(self, user_id: str) -> dict[str, Any] | None:
        """Get a user by ID, without the token."""
        row = self._db.fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return _public_user(row) if row else None

    def get_by_token(self, token: str) -> dict[str, Any] | None:
        """Resolve a bearer token to a user, without the token."""
        row = self._db.fetchone("SELECT * FROM users WHERE api_token = ?", (token,))
        return _public_user(row) if row else None

    def get_many(self, user_ids: list[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        placeholders = ", ".join("?" for _ in user_ids)
        rows = self._db.fetchall(
            f"SELECT * FROM users WHERE id IN ({placeholders})", user_ids,
        )
        return [_public_user(row) for row in rows]

    def add_xp(self, user_id: str, amount: int) -> None:
        self._db.execute("UPDATE users SET xp = xp + ? WHERE id = ?", (amount, user_id))


class MessageRepo:
    """Repository for one-to-one chat messages.

    Messages are stored once with sender and recipient; every read is
    projected onto the caller's point of view (``is_from_me``).
    """

    def __init__(self, db: SQLiteDB, users: UserRepo) -> None:
        self._db = db
        self._users = users

    @staticmethod
    def _project(row: dict[str, Any], user_id: str) -> dict[str, Any]:
        return {
            "id": row["id"],
            "content": row["content"],
            "type": row["type"],
            "created_at": row["created_at"],
            "is_from_me": row["sender_id"] == user_id,
            "read": bool(row["read"]),
        }

    def send(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        message_type: str = "text",
    ) -> dict[str, Any]:
        """Store a message and return it from the sender's point of view."""
        msg_id = _new_id()
        self._db.execute(
            "INSERT INTO messages (id, sender_id, recipient_id, content, type, read, created_at) "
            "VALUES (?, ?, ?, ?, ?, 0, ?)",
            (msg_id, sender_id, recipient_id, content, message_type or "text", _now_iso()),
        )
        row = self._db.fetchone("SELECT * FROM messages WHERE id = ?", (msg_id,))
        return self._project(row, sender_id)  # type: ignore[arg-type]

    def get_history(self, user_id: str, partner_id: str) -> list[dict[str, Any]]:
        """Get the messages exchanged with a partner in chronological order."""
        rows = self._db.fetchall(
            "SELECT * FROM messages "
            "WHERE (sender_id = ? AND recipient_id = ?) OR (sender_id = ? AND recipient_id = ?) "
            "ORDER BY created_at, rowid",
            (user_id, partner_id, partner_id, user_id),
        )
        return [self._project(row, user_id) for row in rows]

    def get_conversations(self, user_id: str) -> list[dict[str, Any]]:
        """Summarize every conversation the user takes part in.

        Newest conversation first; conversations are keyed by the partner's id.
        """
        rows = self._db.fetchall(
            "SELECT * FROM messages WHERE sender_id = ? OR recipient_id = ? "
            "ORDER BY created_at DESC, rowid DESC",
            (user_id, user_id),
        )

        latest: dict[str, dict[str, Any]] = {}
        unread: dict[str, int] = {}
        for row in rows:
            partner_id = row["recipient_id"] if row["sender_id"] == user_id else row["sender_id"]
            latest.setdefault(partner_id, row)
            unread.setdefault(partner_id, 0)
            if row["recipient_id"] == user_id and not row["read"]:
                unread[partner_id] += 1

        partners = {p["id"]: p for p in self._users.get_many(list(latest))}
        conversations = []
        # ``latest`` preserves insertion order, i.e. newest last message first.
        for partner_id, last in latest.items():
            partner = partners.get(partner_id)
            if partner is None:
                continue
            conversations.append({
                "id": partner_id,
                "name": partner["name"],
                "email": partner["email"],
                "role": partner["role"],
                "current_level": partner.get("current_level"),
                "last_message": {
                    "content": last["content"],
                    "created_at": last["created_at"],
                    "is_from_me": last["sender_id"] == user_id,
                },
                "unread_count": unread[partner_id],
            })
        return conversations

    def mark_read(self, user_id: str, partner_id: str) -> int:
        """Mark every message from the partner to the user as read.

        Returns the number of messages that changed state.
        """
        cursor = self._db.execute(
            "UPDATE messages SET read = 1 "
            "WHERE sender_id = ? AND recipient_id = ? AND read = 0",
            (partner_id, user_id),
        )
        return cursor.rowcount

    def unread_count(self, user_id: str) -> int:
        """Count unread messages addressed to the user, across conversations."""
        row = self._db.fetchone(
            "SELECT COUNT(*) AS n FROM messages WHERE recipient_id = ? AND read = 0",
            (user_id,),
        )
        return row["n"] if row else 0


class ProofRepo:
    """Repository for proof-of-learning entries."""

    def __init__(self, db: SQLiteDB, users: UserRepo) -> None:
        self._db = db
        self._users = users

    def create(
        self,
        user_id: str,
        organization_id: str,
        title: str,
        proof_type: str,
        description: str = "",
        proof_url: str | None = None,
    ) -> dict[str, Any]:
        """Create a proof awaiting validation."""
        proof_id = _new_id()
        self._db.execute(
            "INSERT INTO proofs "
            "(id, user_id, organization_id, title, type, description, proof_url, "
            "status, xp_awarded, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 'PENDING', 0, ?)",
            (
                proof_id, user_id, organization_id, title, proof_type,
                description or "", proof_url, _now_iso(),
            ),
        )
        return self.get(proof_id)  # type: ignore[return-value]

    def get(self, proof_id: str) -> dict[str, Any] | None:
        """Get a proof by ID."""
        return self._db.fetchone("SELECT * FROM proofs WHERE id = ?", (proof_id,))

    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        """Get a user's proofs, newest first."""
        return self._db.fetchall(
            "SELECT * FROM proofs WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )

    def list_by_org(
        self, organization_id: str, status: str | None = None,
    ) -> list[dict[str, Any]]:
        """Get an organization's proofs with an optional status filter, newest first.

        Each entry carries the submitting user under ``user``.
        """
        sql = "SELECT * FROM proofs WHERE organization_id = ?"
        params: list[Any] = [organization_id]

        if status is not None:
            sql += " AND status = ?"
            params.append(status)

        sql += " ORDER BY created_at DESC, rowid DESC"
        rows = self._db.fetchall(sql, params)

        users = {u["id"]: u for u in self._users.get_many(list({r["user_id"] for r in rows}))}
        for row in rows:
            user = users.get(row["user_id"])
            row["user"] = (
                {k: user[k] for k in ("id", "name", "email", "current_level")}
                if user else None
            )
        return rows

    def validate(
        self,
        proof_id: str,
        status: str,
        feedback: str | None = None,
        xp_awarded: int = 0,
    ) -> dict[str, Any] | None:
        """Record a coach's decision on a proof.

        A validated proof with ``xp_awarded > 0`` credits the owner's XP.
        Returns None when the proof does not exist.
        """
        proof = self.get(proof_id)
        if proof is None:
            return None

        with self._db.transaction():
            self._db.execute(
                "UPDATE proofs SET status = ?, feedback = ?, xp_awarded = ? WHERE id = ?",
                (status, feedback, xp_awarded or 0, proof_id),
            )
            if status == "VALIDATED" and (xp_awarded or 0) > 0:
                self._users.add_xp(proof["user_id"], xp_awarded)
        return self.get(proof_id)
