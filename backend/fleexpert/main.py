"""FastAPI application for the fleexpert messaging and proof API.

The lifespan handler opens the database, builds the repositories and the
live connection registry, and publishes them on ``app.state`` where the
REST routes and the WebSocket gateway pick them up.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleexpert import __version__
from fleexpert.api.routes import router as api_router
from fleexpert.api.websocket import ConnectionRegistry
from fleexpert.api.websocket import router as ws_router
from fleexpert.config import Settings
from fleexpert.db.repositories import MessageRepo, ProofRepo, UserRepo
from fleexpert.db.sqlite import SQLiteDB
from fleexpert.security import secure_directory, secure_file

logger = logging.getLogger(__name__)

settings = Settings()


def attach_state(app: FastAPI, db: SQLiteDB, app_settings: Settings) -> None:
    """Build the repositories over ``db`` and publish them on ``app.state``."""
    users = UserRepo(db)
    app.state.settings = app_settings
    app.state.db = db
    app.state.user_repo = users
    app.state.message_repo = MessageRepo(db, users)
    app.state.proof_repo = ProofRepo(db, users)
    app.state.connections = ConnectionRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    data_dir = secure_directory(settings.DATABASE_DIR)

    db_file = data_dir / "fleexpert.db"
    db = SQLiteDB(str(db_file))
    secure_file(db_file)
    attach_state(app, db, settings)
    logger.info("Database opened at %s", db_file)

    try:
        yield
    finally:
        db.close()


app = FastAPI(
    title="fleexpert",
    description="Messaging and proof portfolio API for French test preparation",
    version=__version__,
    lifespan=lifespan,
)

# Browser clients are served from FRONTEND_URL only
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
app.include_router(ws_router)
