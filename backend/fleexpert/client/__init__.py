"""Sync client: conversation timeline and offline-first proof portfolio."""

from fleexpert.client.api import ApiError, FleExpertAPI
from fleexpert.client.channel import ChannelError, LiveChannel
from fleexpert.client.conversations import (
    ConversationError,
    ConversationSync,
    DeliveryState,
    TimelineEntry,
)
from fleexpert.client.proofs import ProofDraftError, ProofPortfolio, ReconcileReport
from fleexpert.client.store import PendingProof, PendingProofStore

__all__ = [
    "ApiError",
    "FleExpertAPI",
    "ChannelError",
    "LiveChannel",
    "ConversationError",
    "ConversationSync",
    "DeliveryState",
    "TimelineEntry",
    "ProofDraftError",
    "ProofPortfolio",
    "ReconcileReport",
    "PendingProof",
    "PendingProofStore",
]
