"""Offline-first proof portfolio.

Proofs are written straight to the API while the client believes it is
online. When it is offline, or the write fails, the proof goes to the
local PendingProofStore and is shown with status OFFLINE ahead of the
server-confirmed list. When connectivity comes back, reconcile() replays
the queue in order and removes each entry as soon as the server has
confirmed it; entries that fail stay queued for the next pass.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from fleexpert.client.api import ApiError, FleExpertAPI
from fleexpert.client.store import PendingProofStore
from fleexpert.db.models import Proof, ProofDraft

logger = logging.getLogger(__name__)


class ProofDraftError(Exception):
    """Raised when a proof draft cannot be submitted."""


@dataclass
class ReconcileReport:
    """Outcome of one reconcile pass, by local placeholder id."""

    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


class ProofPortfolio:
    """A candidate's proof list, merged from the server and the offline queue.

    Parameters
    ----------
    api : FleExpertAPI
        REST client used for writes and for the confirmed list.
    store : PendingProofStore
        Local queue of unconfirmed proofs.
    user_id : str
        Owner of the queue entries.
    organization_id : str
        Organization the proofs are filed under.
    online : bool
        Initial connectivity belief.
    """

    def __init__(
        self,
        api: FleExpertAPI,
        store: PendingProofStore,
        user_id: str,
        organization_id: str,
        online: bool = True,
    ) -> None:
        self._api = api
        self._store = store
        self.user_id = user_id
        self.organization_id = organization_id
        self.online = online
        self.confirmed: list[Proof] = []
        self.pending: list[Proof] = []
        self._sync_lock = asyncio.Lock()

    @property
    def proofs(self) -> list[Proof]:
        """Pending entries first, in submission order, then confirmed ones."""
        return [*self.pending, *self.confirmed]

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    def load_pending(self) -> list[Proof]:
        """Reload the offline entries from the local store."""
        self.pending = [p.as_proof() for p in self._store.list_pending(self.user_id)]
        return self.pending

    async def start(self) -> list[Proof]:
        """Initial load: offline entries plus the confirmed list."""
        self.load_pending()
        return await self.refresh_confirmed()

    async def refresh_confirmed(self) -> list[Proof]:
        """Fetch the confirmed proofs and merge them with what is still queued.

        On failure the previous confirmed list is kept.
        """
        try:
            fetched = await self._api.list_my_proofs()
        except ApiError as exc:
            logger.warning("Failed to fetch proofs: %s", exc)
        else:
            self.confirmed = fetched
        self.load_pending()
        return self.proofs

    def _record_confirmed(self, proof: Proof) -> None:
        """Show a just-written proof without waiting for the next list fetch."""
        if all(p.id != proof.id for p in self.confirmed):
            self.confirmed.insert(0, proof)

    async def submit_proof(self, draft: ProofDraft) -> Proof:
        """Submit a proof, falling back to the offline queue.

        Returns the server record when the write succeeded, otherwise the
        queued entry with status OFFLINE.
        """
        if not draft.title.strip():
            raise ProofDraftError("Proof title is required")

        if self.online:
            try:
                proof = await self._api.create_proof(self.organization_id, draft)
            except ApiError as exc:
                logger.warning("Proof upload failed, saving offline: %s", exc)
            else:
                self._record_confirmed(proof)
                await self.refresh_confirmed()
                return proof

        entry = self._store.add(self.user_id, self.organization_id, draft)
        self.load_pending()
        logger.info("Queued proof %s offline (%d pending)", entry.local_id, self.pending_count)
        return entry.as_proof()

    async def reconcile(self) -> ReconcileReport:
        """Replay the offline queue against the API, oldest first.

        Each entry is removed from the store right after its write is
        confirmed. Passes are serialized, so an entry is never sent twice
        by overlapping calls.
        """
        report = ReconcileReport()
        async with self._sync_lock:
            entries = self._store.list_pending(self.user_id)
            if not entries:
                return report

            logger.info("Syncing %d offline proofs", len(entries))
            for entry in entries:
                try:
                    proof = await self._api.create_proof(entry.organization_id, entry.draft)
                except ApiError as exc:
                    logger.warning("Sync failed for offline proof %s: %s", entry.local_id, exc)
                    report.failed.append(entry.local_id)
                    continue
                self._store.remove(self.user_id, entry.local_id)
                self._record_confirmed(proof)
                report.synced.append(entry.local_id)

            self.load_pending()

        logger.info(
            "Offline sync done: %d synced, %d still pending",
            len(report.synced), len(report.failed),
        )
        await self.refresh_confirmed()
        return report

    async def set_online(self, online: bool) -> ReconcileReport | None:
        """Feed a connectivity signal; going from offline to online triggers reconcile()."""
        was_online = self.online
        self.online = online
        if online and not was_online:
            return await self.reconcile()
        return None

    async def probe(self) -> ReconcileReport | None:
        """Derive connectivity from the API health check."""
        return await self.set_online(await self._api.ping())
