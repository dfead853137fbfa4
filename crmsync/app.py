"""FastAPI application factory for the contact sync service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .database import async_session_factory, engine
from .services.segment_svc import ensure_default_segments
from .worker import webhook_worker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.getLogger("crmsync").setLevel(settings.log_level.upper())

    # Auto-create tables for SQLite (local dev); PostgreSQL uses Alembic migrations
    if "sqlite" in settings.database_url:
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        seeded = await ensure_default_segments(db)
    if seeded:
        logger.info("Seeded %d default segments", seeded)

    webhook_worker.start()
    try:
        yield
    finally:
        await webhook_worker.stop()


app = FastAPI(title=settings.app_title, lifespan=lifespan)

# Import and register routers
from .routers import contacts, health, segments, sync, webhooks  # noqa: E402

app.include_router(webhooks.router)
app.include_router(sync.router)
app.include_router(segments.router)
app.include_router(contacts.router)
app.include_router(health.router)
