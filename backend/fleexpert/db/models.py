"""Pydantic models for users, conversations, messages and proofs.

These are shared between the DB layer, the API responses and the sync
client, which parses server JSON back into the same records.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ProofStatus(str, Enum):
    """Lifecycle of a portfolio proof.

    OFFLINE never leaves the client: it marks an entry that only exists in
    the local pending store.
    """

    PENDING = "PENDING"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"
    OFFLINE = "OFFLINE"


class ProofType(str, Enum):
    PRACTICE = "PRACTICE"  # free practice
    EXAM = "EXAM"  # mock exam
    OTHER = "OTHER"


class User(BaseModel):
    """A platform user."""

    id: str
    name: str
    email: str
    role: str  # CANDIDATE | COACH | ORG_ADMIN | ADMIN
    current_level: str | None = None  # A1 .. C2
    xp: int = 0
    created_at: datetime


class LastMessage(BaseModel):
    """Summary of the newest message in a conversation."""

    content: str
    created_at: datetime
    is_from_me: bool


class Conversation(BaseModel):
    """The thread between the caller and one counterpart, keyed by the counterpart's id."""

    id: str
    name: str
    email: str
    role: str
    current_level: str | None = None
    last_message: LastMessage | None = None
    unread_count: int = Field(default=0, ge=0)


class Message(BaseModel):
    """A chat message as seen by one participant."""

    id: str
    content: str
    type: str = "text"
    created_at: datetime
    is_from_me: bool
    read: bool = False


class TypingSignal(BaseModel):
    """Ephemeral typing indicator relayed over the live channel."""

    sender_id: str
    is_typing: bool


class ProofDraft(BaseModel):
    """User-entered fields of a proof before any server write."""

    title: str = ""
    type: ProofType = ProofType.PRACTICE
    description: str = ""
    proof_url: str | None = None


class Proof(BaseModel):
    """A proof of learning, either server-confirmed or locally pending."""

    id: str
    title: str
    type: ProofType = ProofType.PRACTICE
    description: str = ""
    status: ProofStatus
    created_at: datetime
    proof_url: str | None = None
    organization_id: str | None = None
    feedback: str | None = None
    xp_awarded: int = 0

    @property
    def is_offline(self) -> bool:
        return self.status is ProofStatus.OFFLINE
