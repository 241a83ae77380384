"""Local persistent store for proofs recorded while offline.

An indexed SQLite table keyed by a local placeholder id. Entries are
added and removed one at a time, so a sync pass can drop exactly the
proofs the server confirmed. Listing returns insertion order per user.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from fleexpert.config import ClientSettings
from fleexpert.db.models import Proof, ProofDraft, ProofStatus, ProofType
from fleexpert.db.sqlite import SQLiteDB
from fleexpert.security import secure_directory, secure_file

OFFLINE_ID_PREFIX = "offline-"

_PENDING_SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_proofs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    local_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    title TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    proof_url TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_proofs_user ON pending_proofs (user_id, seq);
"""


@dataclass(frozen=True)
class PendingProof:
    """A proof the server has not acknowledged yet."""

    local_id: str
    user_id: str
    organization_id: str
    draft: ProofDraft
    created_at: datetime

    def as_proof(self) -> Proof:
        """Display form of the entry, with status OFFLINE."""
        return Proof(
            id=self.local_id,
            title=self.draft.title,
            type=self.draft.type,
            description=self.draft.description,
            proof_url=self.draft.proof_url,
            organization_id=self.organization_id,
            status=ProofStatus.OFFLINE,
            created_at=self.created_at,
        )


def _from_row(row: dict) -> PendingProof:
    return PendingProof(
        local_id=row["local_id"],
        user_id=row["user_id"],
        organization_id=row["organization_id"],
        draft=ProofDraft(
            title=row["title"],
            type=ProofType(row["type"]),
            description=row["description"],
            proof_url=row["proof_url"],
        ),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class PendingProofStore:
    """SQLite-backed queue of offline proofs, scoped by user id."""

    def __init__(self, db_path: str | Path) -> None:
        path = Path(db_path)
        secure_directory(path.parent)
        self._db = SQLiteDB(str(path), schema=_PENDING_SCHEMA)
        secure_file(path)

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "PendingProofStore":
        return cls(Path(settings.OFFLINE_DIR) / "pending_proofs.db")

    def add(self, user_id: str, organization_id: str, draft: ProofDraft) -> PendingProof:
        """Queue a draft under a fresh ``offline-`` placeholder id."""
        local_id = f"{OFFLINE_ID_PREFIX}{uuid.uuid4().hex}"
        self._db.execute(
            "INSERT INTO pending_proofs "
            "(local_id, user_id, organization_id, title, type, description, proof_url, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                local_id, user_id, organization_id, draft.title, draft.type.value,
                draft.description, draft.proof_url, datetime.now(timezone.utc).isoformat(),
            ),
        )
        return self.get(user_id, local_id)  # type: ignore[return-value]

    def get(self, user_id: str, local_id: str) -> PendingProof | None:
        row = self._db.fetchone(
            "SELECT * FROM pending_proofs WHERE user_id = ? AND local_id = ?",
            (user_id, local_id),
        )
        return _from_row(row) if row else None

    def list_pending(self, user_id: str) -> list[PendingProof]:
        """All pending entries of a user, oldest first."""
        rows = self._db.fetchall(
            "SELECT * FROM pending_proofs WHERE user_id = ? ORDER BY seq",
            (user_id,),
        )
        return [_from_row(row) for row in rows]

    def remove(self, user_id: str, local_id: str) -> bool:
        """Drop one entry. Returns False if it was not there."""
        cursor = self._db.execute(
            "DELETE FROM pending_proofs WHERE user_id = ? AND local_id = ?",
            (user_id, local_id),
        )
        return cursor.rowcount > 0

    def count(self, user_id: str) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) AS n FROM pending_proofs WHERE user_id = ?", (user_id,),
        )
        return row["n"] if row else 0

    def clear(self, user_id: str) -> int:
        """Drop every entry of a user and return how many were removed."""
        cursor = self._db.execute("DELETE FROM pending_proofs WHERE user_id = ?", (user_id,))
        return cursor.rowcount

    def close(self) -> None:
        self._db.close()
