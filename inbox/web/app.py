"""FastAPI application factory for the inbox JSON API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..database import init_db
from ..engine import InboxEngine

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: InboxEngine = app.state.engine
    try:
        init_db(engine.db_path)
    except Exception as exc:
        log.warning("init_db had issues: %s", exc)
    engine.start()
    try:
        yield
    finally:
        await engine.stop()


def create_app(engine: InboxEngine | None = None) -> FastAPI:
    app = FastAPI(title="Chat Inbox", lifespan=lifespan)
    app.state.engine = engine or InboxEngine()

    from .routes import api

    app.include_router(api.router, prefix="/api/v1")

    return app
