"""Inbound upstream webhook receiver and queue inspection."""

from __future__ import annotations

import json
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas.webhook import ReplayRequest, WebhookEventResponse
from ..security.webhooks import verify_upstream_webhook
from ..services.dispatch_svc import enqueue_events, get_event, requeue_failed
from ..services.webhook_svc import parse_events

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/upstream", status_code=202)
async def receive_upstream_events(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Queue upstream change notifications and acknowledge immediately."""
    raw_body = await request.body()
    verify_upstream_webhook(request, raw_body)

    try:
        parsed = json.loads(raw_body.decode("utf-8")) if raw_body else []
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=422, detail="Invalid JSON body")

    try:
        events = parse_events(parsed)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    queued = await enqueue_events(db, [e for e, _ in events], [item for _, item in events])
    delivered = len(parsed) if isinstance(parsed, list) else 1
    return {
        "status": "accepted",
        "queued": len(queued),
        "ignored": delivered - len(events),
        "event_ids": [str(e.id) for e in queued],
    }


@router.get("/events/{event_id}", response_model=WebhookEventResponse)
async def event_status(
    event_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Fetch the processing status of a queued event."""
    event = await get_event(db, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@router.post("/events/replay")
async def replay_failed_events(
    body: ReplayRequest,
    db: AsyncSession = Depends(get_db),
):
    """Re-queue failed events (all of them, or the listed ids)."""
    events = await requeue_failed(db, body.event_ids or None)
    return {"requeued": len(events), "event_ids": [str(e.id) for e in events]}
