"""fleexpert persistence layer: SQLite schema, models and repositories."""

from fleexpert.db.models import (
    Conversation,
    LastMessage,
    Message,
    Proof,
    ProofDraft,
    ProofStatus,
    ProofType,
    TypingSignal,
    User,
)
from fleexpert.db.repositories import MessageRepo, ProofRepo, UserRepo
from fleexpert.db.sqlite import SQLiteDB

__all__ = [
    "SQLiteDB",
    "User",
    "Conversation",
    "LastMessage",
    "Message",
    "TypingSignal",
    "Proof",
    "ProofDraft",
    "ProofStatus",
    "ProofType",
    "UserRepo",
    "MessageRepo",
    "ProofRepo",
]
