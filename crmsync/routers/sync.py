"""Bulk sync admin routes - start, inspect, cancel, rewind."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..database import get_db, get_session_factory
from ..errors import SyncAlreadyRunning
from ..schemas.sync import SyncCursorResponse, SyncRunReport, SyncStartResponse, SyncStatusResponse
from ..sync import cursor_store, sync_engine
from ..upstream.client import get_upstream_client_factory

router = APIRouter(prefix="/sync", tags=["sync"])


def _require_known_source(source: str) -> None:
    if source != settings.upstream_source:
        raise HTTPException(status_code=404, detail=f"Unknown source {source!r}")


@router.post("/{source}/runs", status_code=202, response_model=SyncStartResponse)
async def start_sync_run(
    source: str,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client_factory=Depends(get_upstream_client_factory),
):
    """Start a bulk run in the background. 409 while another run holds the lease."""
    _require_known_source(source)
    if not settings.upstream_configured:
        raise HTTPException(status_code=503, detail="Upstream access token is not configured")
    try:
        run = await sync_engine.start_run(db, source)
    except SyncAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    sync_engine.launch_run(session_factory, client_factory, run)
    return SyncStartResponse(run_id=run.id, source=source)


@router.get("/{source}", response_model=SyncStatusResponse)
async def sync_status(source: str, db: AsyncSession = Depends(get_db)):
    """Checkpoint and latest run report for a source."""
    _require_known_source(source)
    cursor = await cursor_store.get_cursor(db, source)
    run = await sync_engine.latest_run(db, source)
    return SyncStatusResponse(
        cursor=SyncCursorResponse.model_validate(cursor) if cursor else None,
        latest_run=SyncRunReport.model_validate(run) if run else None,
    )


@router.get("/{source}/runs", response_model=list[SyncRunReport])
async def sync_run_history(
    source: str,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Past and current runs for a source, newest first."""
    _require_known_source(source)
    runs = await sync_engine.list_runs(db, source, limit=limit)
    return [SyncRunReport.model_validate(r) for r in runs]


@router.post("/{source}/cancel")
async def cancel_sync_run(source: str):
    """Request cooperative cancellation; the run stops after its current page."""
    _require_known_source(source)
    if not sync_engine.request_cancel(source):
        raise HTTPException(status_code=404, detail="No active run for this source")
    return {"status": "cancelling", "source": source}


@router.post("/{source}/reset", response_model=SyncCursorResponse)
async def reset_sync_cursor(source: str, db: AsyncSession = Depends(get_db)):
    """Rewind the checkpoint so the next run starts from the beginning."""
    _require_known_source(source)
    try:
        return await cursor_store.reset_cursor(db, source)
    except SyncAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
