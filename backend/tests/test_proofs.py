"""Tests for fleexpert.client.proofs.ProofPortfolio."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from conftest import FailingTransport, OfflineTransport, make_api
from fleexpert.client.proofs import ProofDraftError, ProofPortfolio
from fleexpert.client.store import OFFLINE_ID_PREFIX, PendingProofStore
from fleexpert.db.models import ProofDraft, ProofStatus


@pytest.fixture
def store(tmp_path: Path):
    s = PendingProofStore(tmp_path / "pending.db")
    yield s
    s.close()


@pytest.fixture
def network(app_with_state):
    """Switchable network: ``network.down`` makes every request fail to connect."""

    def fail(request):
        if net.down:
            return httpx.ConnectError("Simulated network loss", request=request)
        return None

    net = FailingTransport(httpx.ASGITransport(app=app_with_state), fail)
    net.down = False
    return net


def _portfolio(app, user, store, transport=None, online=True) -> ProofPortfolio:
    return ProofPortfolio(make_api(app, user, transport), store, user["id"], "org-1", online=online)


def _server_titles(app, user) -> list[str]:
    return [p["title"] for p in app.state.proof_repo.list_by_user(user["id"])]


def _posted_titles(transport: FailingTransport) -> list[str]:
    return [
        json.loads(r.content)["title"]
        for r in transport.requests
        if r.method == "POST" and r.url.path == "/proofs"
    ]


class TestSubmit:
    async def test_online_submit_bypasses_store(self, app_with_state, alice, store):
        portfolio = _portfolio(app_with_state, alice, store)
        proof = await portfolio.submit_proof(ProofDraft(title="Oral blanc"))

        assert proof.status is ProofStatus.PENDING
        assert store.count(alice["id"]) == 0
        assert [p.id for p in portfolio.proofs] == [proof.id]

    async def test_offline_submit_is_queued_in_order(self, app_with_state, alice, store):
        portfolio = _portfolio(app_with_state, alice, store, online=False)
        p1 = await portfolio.submit_proof(ProofDraft(title="P1"))
        p2 = await portfolio.submit_proof(ProofDraft(title="P2"))

        assert p1.status is ProofStatus.OFFLINE
        assert p1.id.startswith(OFFLINE_ID_PREFIX)
        assert [p.title for p in portfolio.pending] == ["P1", "P2"]
        assert portfolio.pending_count == 2
        assert [p.id for p in portfolio.proofs] == [p1.id, p2.id]
        assert _server_titles(app_with_state, alice) == []

    async def test_failed_write_falls_back_to_store(self, app_with_state, alice, store, caplog):
        portfolio = _portfolio(app_with_state, alice, store, OfflineTransport())
        proof = await portfolio.submit_proof(ProofDraft(title="Sans réseau"))

        assert proof.status is ProofStatus.OFFLINE
        assert store.count(alice["id"]) == 1
        assert "saving offline" in caplog.text

    @pytest.mark.parametrize("title", ["", "   "])
    async def test_title_required(self, app_with_state, alice, store, title):
        portfolio = _portfolio(app_with_state, alice, store, online=False)
        with pytest.raises(ProofDraftError):
            await portfolio.submit_proof(ProofDraft(title=title))
        assert store.count(alice["id"]) == 0

    async def test_pending_listed_before_confirmed(self, app_with_state, alice, store):
        app_with_state.state.proof_repo.create(alice["id"], "org-1", "Déjà validée", "PRACTICE")
        portfolio = _portfolio(app_with_state, alice, store, online=False)
        await portfolio.submit_proof(ProofDraft(title="En attente"))

        proofs = await portfolio.start()
        assert [(p.title, p.status) for p in proofs] == [
            ("En attente", ProofStatus.OFFLINE),
            ("Déjà validée", ProofStatus.PENDING),
        ]


class TestReconcile:
    async def test_dictee_scenario(self, app_with_state, alice, store):
        """Offline submit, connectivity back, the entry shows its server status."""
        portfolio = _portfolio(app_with_state, alice, store, online=False)
        await portfolio.submit_proof(ProofDraft(title="Dictée sans faute"))
        assert [(p.title, p.status) for p in portfolio.pending] == [
            ("Dictée sans faute", ProofStatus.OFFLINE),
        ]

        report = await portfolio.set_online(True)

        assert report.complete
        assert portfolio.pending == []
        assert store.count(alice["id"]) == 0
        assert [(p.title, p.status) for p in portfolio.proofs] == [
            ("Dictée sans faute", ProofStatus.PENDING),
        ]

    async def test_replays_in_submission_order(self, app_with_state, alice, store, network):
        portfolio = _portfolio(app_with_state, alice, store, network, online=False)
        for title in ("P1", "P2", "P3"):
            await portfolio.submit_proof(ProofDraft(title=title))

        await portfolio.reconcile()
        assert _posted_titles(network) == ["P1", "P2", "P3"]

    async def test_partial_failure_converges(self, app_with_state, alice, store):
        state = {"reject": "P2"}
        transport = FailingTransport(
            httpx.ASGITransport(app=app_with_state),
            lambda r: 500 if (
                r.method == "POST" and r.url.path == "/proofs"
                and json.loads(r.content)["title"] == state["reject"]
            ) else None,
        )
        portfolio = _portfolio(app_with_state, alice, store, transport, online=False)
        p1 = await portfolio.submit_proof(ProofDraft(title="P1"))
        p2 = await portfolio.submit_proof(ProofDraft(title="P2"))
        p3 = await portfolio.submit_proof(ProofDraft(title="P3"))

        report = await portfolio.reconcile()
        assert report.synced == [p1.id, p3.id]
        assert report.failed == [p2.id]
        assert not report.complete
        assert [p.id for p in portfolio.pending] == [p2.id]

        state["reject"] = None
        report = await portfolio.reconcile()
        assert report.synced == [p2.id]
        assert portfolio.pending == []
        # Every proof reached the server exactly once.
        assert sorted(_server_titles(app_with_state, alice)) == ["P1", "P2", "P3"]

    async def test_rejected_write_stays_pending(self, app_with_state, alice, store):
        transport = FailingTransport(
            httpx.ASGITransport(app=app_with_state),
            lambda r: 422 if r.method == "POST" else None,
        )
        portfolio = _portfolio(app_with_state, alice, store, transport, online=False)
        proof = await portfolio.submit_proof(ProofDraft(title="Refusée"))

        report = await portfolio.reconcile()
        assert report.failed == [proof.id]
        assert portfolio.pending_count == 1

    async def test_empty_queue(self, app_with_state, alice, store):
        report = await _portfolio(app_with_state, alice, store).reconcile()
        assert report.synced == []
        assert report.complete

    async def test_concurrent_passes_send_once(self, app_with_state, alice, store, network):
        portfolio = _portfolio(app_with_state, alice, store, network, online=False)
        await portfolio.submit_proof(ProofDraft(title="P1"))
        await portfolio.submit_proof(ProofDraft(title="P2"))

        first, second = await asyncio.gather(portfolio.reconcile(), portfolio.reconcile())
        assert len(first.synced) + len(second.synced) == 2
        assert _posted_titles(network) == ["P1", "P2"]
        assert _server_titles(app_with_state, alice) == ["P2", "P1"]


class TestConnectivity:
    async def test_set_online_only_reconciles_on_transition(self, app_with_state, alice, store):
        portfolio = _portfolio(app_with_state, alice, store)
        assert await portfolio.set_online(True) is None
        assert await portfolio.set_online(False) is None
        assert portfolio.online is False

        await portfolio.submit_proof(ProofDraft(title="P1"))
        report = await portfolio.set_online(True)
        assert report is not None
        assert report.complete
        assert portfolio.online is True

    async def test_probe(self, app_with_state, alice, store, network):
        portfolio = _portfolio(app_with_state, alice, store, network)

        network.down = True
        await portfolio.submit_proof(ProofDraft(title="Hors ligne"))
        assert await portfolio.probe() is None
        assert portfolio.online is False
        assert portfolio.pending_count == 1

        network.down = False
        report = await portfolio.probe()
        assert report.complete
        assert portfolio.online is True
        assert portfolio.pending_count == 0
        assert _server_titles(app_with_state, alice) == ["Hors ligne"]

    async def test_refresh_failure_keeps_confirmed(self, app_with_state, alice, store, network):
        app_with_state.state.proof_repo.create(alice["id"], "org-1", "Sur le serveur", "PRACTICE")
        portfolio = _portfolio(app_with_state, alice, store, network)
        await portfolio.start()

        network.down = True
        proofs = await portfolio.refresh_confirmed()
        assert [p.title for p in proofs] == ["Sur le serveur"]


class TestListFetchFailureAfterWrite:
    """A write the server accepted stays visible when the follow-up list fetch fails."""

    @pytest.fixture
    def list_down(self, app_with_state):
        return FailingTransport(
            httpx.ASGITransport(app=app_with_state),
            lambda r: 503 if r.method == "GET" and r.url.path == "/proofs/mine" else None,
        )

    async def test_online_submit(self, app_with_state, alice, store, list_down):
        portfolio = _portfolio(app_with_state, alice, store, list_down)
        proof = await portfolio.submit_proof(ProofDraft(title="Online"))

        assert [(p.id, p.status) for p in portfolio.proofs] == [(proof.id, ProofStatus.PENDING)]
        assert store.count(alice["id"]) == 0

    async def test_reconciled_entry(self, app_with_state, alice, store, list_down):
        portfolio = _portfolio(app_with_state, alice, store, list_down, online=False)
        await portfolio.submit_proof(ProofDraft(title="Dictée sans faute"))

        report = await portfolio.set_online(True)

        assert report.complete
        assert portfolio.pending == []
        assert [(p.title, p.status) for p in portfolio.proofs] == [
            ("Dictée sans faute", ProofStatus.PENDING),
        ]

    async def test_no_duplicate_once_list_recovers(self, app_with_state, alice, store):
        state = {"list_down": True}
        transport = FailingTransport(
            httpx.ASGITransport(app=app_with_state),
            lambda r: 503 if state["list_down"] and r.url.path == "/proofs/mine" else None,
        )
        portfolio = _portfolio(app_with_state, alice, store, transport)
        proof = await portfolio.submit_proof(ProofDraft(title="Une seule fois"))

        state["list_down"] = False
        await portfolio.refresh_confirmed()
        assert [p.id for p in portfolio.proofs] == [proof.id]
