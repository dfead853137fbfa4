"""Bulk sync schemas."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class GapMarker(BaseModel):
    """A cursor position that could not be read even one record at a time."""

    cursor_position: str | None = None
    reason: str = ""
    # False for the gap that tripped the circuit breaker; the next run reads it again.
    skipped: bool = True


class ExtractionReport(BaseModel):
    source: str = ""
    status: str = "running"  # running/completed/halted/cancelled/failed
    fetched: int = 0
    skipped: int = 0
    gapped: int = 0
    errored: int = 0
    pages: int = 0
    rate_limit_waits: int = 0
    created: int = 0
    updated: int = 0
    deduplicated: int = 0
    start_cursor: str | None = None
    final_cursor: str | None = None
    gaps: list[GapMarker] = []
    halt_reason: str | None = None


class SyncRunReport(BaseModel):
    id: uuid.UUID
    source: str
    status: str
    fetched: int = 0
    skipped: int = 0
    gapped: int = 0
    errored: int = 0
    created: int = 0
    updated: int = 0
    deduplicated: int = 0
    pages: int = 0
    start_cursor: str | None = None
    final_cursor: str | None = None
    gaps: list[GapMarker] = []
    halt_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}


class SyncCursorResponse(BaseModel):
    source: str
    position: str | None = None
    status: str = "idle"
    page_count: int = 0
    error_count: int = 0
    last_completed_at: datetime | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None

    model_config = {"from_attributes": True}


class SyncStatusResponse(BaseModel):
    cursor: SyncCursorResponse | None = None
    latest_run: SyncRunReport | None = None


class SyncStartResponse(BaseModel):
    status: str = "started"
    run_id: uuid.UUID
    source: str
