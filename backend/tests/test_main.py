"""Tests for the fleexpert.main application: lifespan wiring and CORS."""

import stat
from pathlib import Path

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from fleexpert import main
from fleexpert.api.websocket import ConnectionRegistry
from fleexpert.config import Settings
from fleexpert.db.repositories import MessageRepo, ProofRepo, UserRepo
from fleexpert.db.sqlite import SQLiteDB

FRONTEND = "http://localhost:3000"


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the lifespan database at a temp directory."""
    target = tmp_path / "data"
    monkeypatch.setattr(main.settings, "DATABASE_DIR", str(target))
    return target


@pytest.fixture
def running(data_dir: Path):
    with TestClient(main.app) as client:
        yield client


class TestLifespan:
    def test_database_created_owner_only(self, running, data_dir: Path):
        db_file = data_dir / "fleexpert.db"
        assert db_file.exists()
        assert stat.S_IMODE(data_dir.stat().st_mode) == 0o700
        assert stat.S_IMODE(db_file.stat().st_mode) == 0o600

    def test_state_is_published(self, running):
        state = main.app.state
        assert isinstance(state.user_repo, UserRepo)
        assert isinstance(state.connections, ConnectionRegistry)

    def test_routes_are_served(self, running):
        assert running.get("/health").json() == {"status": "ok"}
        assert running.get("/messaging/unread-count").status_code == 401
        assert running.get("/proofs/mine").status_code == 401


class TestCORS:
    def test_frontend_origin_allowed(self, running):
        response = running.get("/health", headers={"Origin": FRONTEND})
        assert response.headers.get("access-control-allow-origin") == FRONTEND

    def test_preflight_for_send(self, running):
        response = running.options(
            "/messaging/send",
            headers={"Origin": FRONTEND, "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 200
        assert response.headers.get("access-control-allow-origin") == FRONTEND

    def test_other_origin_not_echoed(self, running):
        response = running.get("/health", headers={"Origin": "http://evil.example.com"})
        assert "access-control-allow-origin" not in response.headers


def test_attach_state(tmp_path: Path):
    app = FastAPI()
    db = SQLiteDB(str(tmp_path / "wired.db"))
    settings = Settings(FRONTEND_URL="http://app.example.com")

    main.attach_state(app, db, settings)

    assert app.state.settings is settings
    assert app.state.db is db
    assert isinstance(app.state.message_repo, MessageRepo)
    assert isinstance(app.state.proof_repo, ProofRepo)
    assert app.state.connections.is_connected("anyone") is False
    db.close()
