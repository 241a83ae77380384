"""Shared fixtures: a fleexpert app wired to a temp database, plus users."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fleexpert.api.routes import router as api_router
from fleexpert.api.websocket import router as ws_router
from fleexpert.client.api import FleExpertAPI
from fleexpert.config import Settings
from fleexpert.db.sqlite import SQLiteDB
from fleexpert.main import attach_state


@pytest.fixture
def db(tmp_path: Path) -> SQLiteDB:
    """Fresh server database."""
    return SQLiteDB(str(tmp_path / "server.db"))


@pytest.fixture
def app_with_state(db: SQLiteDB) -> FastAPI:
    """Create a FastAPI app with REST and WebSocket routes and test state."""
    app = FastAPI()
    app.include_router(api_router)
    app.include_router(ws_router)
    attach_state(app, db, Settings())
    return app


@pytest.fixture
def alice(app_with_state: FastAPI) -> dict[str, Any]:
    """A candidate."""
    return app_with_state.state.user_repo.create(
        name="Alice Martin", email="alice@example.com", role="CANDIDATE",
        current_level="B1", api_token="alice-token",
    )


@pytest.fixture
def bob(app_with_state: FastAPI) -> dict[str, Any]:
    """A coach."""
    return app_with_state.state.user_repo.create(
        name="Bob Durand", email="bob@example.com", role="COACH",
        api_token="bob-token",
    )


@pytest.fixture
def carol(app_with_state: FastAPI) -> dict[str, Any]:
    """Another candidate."""
    return app_with_state.state.user_repo.create(
        name="Carol Petit", email="carol@example.com", role="CANDIDATE",
        current_level="A2", api_token="carol-token",
    )


@pytest.fixture
def client(app_with_state: FastAPI) -> TestClient:
    return TestClient(app_with_state)


def auth(user: dict[str, Any]) -> dict[str, str]:
    """Authorization header for a user created by the fixtures."""
    return {"Authorization": f"Bearer {user['api_token']}"}


def make_api(
    app: FastAPI,
    user: dict[str, Any],
    transport: httpx.AsyncBaseTransport | None = None,
) -> FleExpertAPI:
    """FleExpertAPI talking to the in-process app, optionally through a wrapper transport."""
    return FleExpertAPI(
        token=user["api_token"],
        base_url="http://testserver",
        transport=transport or httpx.ASGITransport(app=app),
    )


class FailingTransport(httpx.AsyncBaseTransport):
    """Forwards to an inner transport, failing requests that match a predicate.

    ``fail`` receives the request and returns an exception to raise, an int
    status code to answer with, or None to forward normally.
    """

    def __init__(self, inner: httpx.AsyncBaseTransport, fail) -> None:
        self.inner = inner
        self.fail = fail
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.fail(request)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, int):
            return httpx.Response(status_code=outcome, json={"detail": "injected"}, request=request)
        return await self.inner.handle_async_request(request)


class OfflineTransport(httpx.AsyncBaseTransport):
    """Transport that simulates a dropped network."""

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Simulated network loss", request=request)
