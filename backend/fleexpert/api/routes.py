"""REST API routes for messaging and the proof portfolio.

Routes receive their dependencies (repos, connection registry) from
app.state. Every route resolves the caller from the bearer token.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from fleexpert.db.models import ProofDraft
from fleexpert.security import parse_bearer

router = APIRouter()


# -- Request/Response models --------------------------------------------------

class SendMessageRequest(BaseModel):
    recipient_id: str
    content: str
    type: str = "text"


class CreateProofRequest(ProofDraft):
    organization_id: str


class ValidateProofRequest(BaseModel):
    status: Literal["PENDING", "VALIDATED", "REJECTED"]
    feedback: str | None = None
    xp_awarded: int = Field(default=0, ge=0)


# -- Helpers ------------------------------------------------------------------

def _get_state(request: Request) -> Any:
    """Get app state (repos, settings, etc.)."""
    return request.app.state


def _current_user(request: Request) -> dict[str, Any]:
    """Resolve the caller from the Authorization header or fail with 401."""
    token = parse_bearer(request.headers.get("authorization"))
    user = _get_state(request).user_repo.get_by_token(token) if token else None
    if user is None:
        raise HTTPException(status_code=401, detail="Missing or invalid bearer token")
    return user


# -- Health ------------------------------------------------------------------

@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe; the sync client uses it to detect connectivity."""
    return {"status": "ok"}


# -- Messaging endpoints ------------------------------------------------------

@router.get("/messaging/conversations")
async def get_conversations(request: Request) -> list[dict[str, Any]]:
    """List the caller's conversations, newest first."""
    user = _current_user(request)
    return _get_state(request).message_repo.get_conversations(user["id"])


@router.get("/messaging/conversations/{partner_id}")
async def get_messages(partner_id: str, request: Request) -> list[dict[str, Any]]:
    """Get the message history with one partner, oldest first."""
    user = _current_user(request)
    return _get_state(request).message_repo.get_history(user["id"], partner_id)


@router.post("/messaging/send")
async def send_message(body: SendMessageRequest, request: Request) -> dict[str, Any]:
    """Store a message and push it to the recipient's live channel."""
    user = _current_user(request)
    state = _get_state(request)

    content = body.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content cannot be empty")
    if state.user_repo.get(body.recipient_id) is None:
        raise HTTPException(status_code=404, detail="Recipient not found")

    message = state.message_repo.send(user["id"], body.recipient_id, content, body.type)

    await state.connections.send_to_user(body.recipient_id, "new_message", {
        **message,
        "is_from_me": False,
        "sender_id": user["id"],
        "recipient_id": body.recipient_id,
    })
    return message


@router.post("/messaging/mark-read/{partner_id}")
async def mark_read(partner_id: str, request: Request) -> dict[str, Any]:
    """Mark everything the partner sent to the caller as read."""
    user = _current_user(request)
    updated = _get_state(request).message_repo.mark_read(user["id"], partner_id)
    return {"success": True, "updated": updated}


@router.get("/messaging/unread-count")
async def get_unread_count(request: Request) -> dict[str, int]:
    user = _current_user(request)
    return {"unread_count": _get_state(request).message_repo.unread_count(user["id"])}


# -- Proof endpoints ----------------------------------------------------------

@router.post("/proofs")
async def create_proof(body: CreateProofRequest, request: Request) -> dict[str, Any]:
    """Record a proof of learning for the caller; it awaits validation."""
    user = _current_user(request)
    if not body.title.strip():
        raise HTTPException(status_code=400, detail="Proof title is required")
    return _get_state(request).proof_repo.create(
        user_id=user["id"],
        organization_id=body.organization_id,
        title=body.title,
        proof_type=body.type.value,
        description=body.description,
        proof_url=body.proof_url,
    )


@router.get("/proofs/mine")
async def get_my_proofs(request: Request) -> list[dict[str, Any]]:
    user = _current_user(request)
    return _get_state(request).proof_repo.list_by_user(user["id"])


@router.get("/proofs/org/{organization_id}")
async def get_org_proofs(
    organization_id: str,
    request: Request,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """List an organization's proofs, optionally filtered by status."""
    _current_user(request)
    return _get_state(request).proof_repo.list_by_org(organization_id, status=status)


@router.patch("/proofs/{proof_id}/validate")
async def validate_proof(
    proof_id: str,
    body: ValidateProofRequest,
    request: Request,
) -> dict[str, Any]:
    """Accept or reject a proof, optionally awarding XP."""
    _current_user(request)
    updated = _get_state(request).proof_repo.validate(
        proof_id,
        status=body.status,
        feedback=body.feedback,
        xp_awarded=body.xp_awarded,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Proof not found")
    return updated
