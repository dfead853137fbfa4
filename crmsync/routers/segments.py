"""Segment routes - definitions, cached counts and members."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.segment import Segment
from ..schemas.contact import ContactResponse
from ..schemas.segment import (
    SegmentCreate,
    SegmentDuplicate,
    SegmentRefreshResponse,
    SegmentResponse,
    SegmentUpdate,
)
from ..services import segment_svc

router = APIRouter(prefix="/segments", tags=["segments"])


async def _get_or_404(db: AsyncSession, segment_id: uuid.UUID) -> Segment:
    segment = await segment_svc.get_segment(db, segment_id)
    if segment is None:
        raise HTTPException(status_code=404, detail="Segment not found")
    return segment


def _require_editable(segment: Segment) -> None:
    if segment.is_system:
        raise HTTPException(status_code=403, detail="System segments are read-only")


@router.get("", response_model=list[SegmentResponse])
async def list_segments(db: AsyncSession = Depends(get_db)):
    return await segment_svc.list_segments(db)


@router.post("", status_code=201, response_model=SegmentResponse)
async def create_segment(body: SegmentCreate, db: AsyncSession = Depends(get_db)):
    if await segment_svc.get_segment_by_name(db, body.name) is not None:
        raise HTTPException(status_code=409, detail="Segment name already exists")
    try:
        return await segment_svc.create_segment(
            db, body.name, body.predicate, description=body.description
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/refresh", response_model=SegmentRefreshResponse)
async def refresh_segments(db: AsyncSession = Depends(get_db)):
    """Recompute every cached count now."""
    return SegmentRefreshResponse(refreshed=await segment_svc.refresh_all(db))


@router.get("/{segment_id}", response_model=SegmentResponse)
async def get_segment(segment_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await _get_or_404(db, segment_id)


@router.put("/{segment_id}", response_model=SegmentResponse)
async def update_segment(
    segment_id: uuid.UUID, body: SegmentUpdate, db: AsyncSession = Depends(get_db)
):
    segment = await _get_or_404(db, segment_id)
    _require_editable(segment)
    if body.name and body.name != segment.name:
        if await segment_svc.get_segment_by_name(db, body.name) is not None:
            raise HTTPException(status_code=409, detail="Segment name already exists")
    try:
        return await segment_svc.update_segment(
            db,
            segment,
            name=body.name or None,
            description=body.description,
            predicate=body.predicate,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.delete("/{segment_id}", status_code=204)
async def delete_segment(segment_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    segment = await _get_or_404(db, segment_id)
    _require_editable(segment)
    await segment_svc.delete_segment(db, segment)


@router.post("/{segment_id}/duplicate", status_code=201, response_model=SegmentResponse)
async def duplicate_segment(
    segment_id: uuid.UUID,
    body: SegmentDuplicate | None = None,
    db: AsyncSession = Depends(get_db),
):
    segment = await _get_or_404(db, segment_id)
    name = body.name if body else None
    if name and await segment_svc.get_segment_by_name(db, name) is not None:
        raise HTTPException(status_code=409, detail="Segment name already exists")
    return await segment_svc.duplicate_segment(db, segment, name=name or None)


@router.get("/{segment_id}/contacts")
async def segment_contacts(
    segment_id: uuid.UUID,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Contacts matching the segment right now, independent of the cached count."""
    segment = await _get_or_404(db, segment_id)
    contacts, total = await segment_svc.list_segment_contacts(
        db, segment, offset=offset, limit=limit
    )
    return {
        "segment": segment.name,
        "total": total,
        "contacts": [ContactResponse.model_validate(c) for c in contacts],
    }
