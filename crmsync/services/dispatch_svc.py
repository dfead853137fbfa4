"""Durable queue for upstream webhook events.

Events for one ``object_id`` are claimed strictly in arrival order
(``received_at``, then ``batch_index``): only the oldest open event of an
object is ever runnable, and nothing behind it is claimed until it reaches a
terminal state. Distinct objects are independent.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models.base import as_utc
from ..models.webhook_event import OPEN_STATUSES, WebhookEvent
from ..schemas.webhook import WebhookEnvelope

RUNNABLE_STATUSES = ("pending", "retrying")


async def enqueue_events(
    db: AsyncSession,
    envelopes: Sequence[WebhookEnvelope],
    payloads: Sequence[dict] | None = None,
    received_at: datetime | None = None,
) -> list[WebhookEvent]:
    """Persist one delivered batch, preserving its order."""
    now = received_at or datetime.now(timezone.utc)
    events = []
    for index, envelope in enumerate(envelopes):
        event = WebhookEvent(
            object_id=envelope.object_id,
            event_type=envelope.event_type,
            occurred_at=envelope.occurred_at,
            payload=payloads[index] if payloads and index < len(payloads) else None,
            received_at=now,
            batch_index=index,
            status="pending",
            available_at=now,
            max_attempts=settings.webhook_max_attempts,
        )
        db.add(event)
        events.append(event)
    await db.commit()
    return events


async def get_event(db: AsyncSession, event_id: uuid.UUID) -> WebhookEvent | None:
    """Fetch a queued event by ID."""
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))
    return result.scalar_one_or_none()


async def claim_events(db: AsyncSession, limit: int | None = None) -> list[WebhookEvent]:
    """Claim up to ``limit`` runnable head events, at most one per object.

    This uses a best-effort claim suitable for single-process workers and
    lightweight deployments.
    """
    limit = limit or settings.webhook_claim_batch_size
    now = datetime.now(timezone.utc)
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.status.in_(OPEN_STATUSES))
        .order_by(
            WebhookEvent.received_at.asc(),
            WebhookEvent.batch_index.asc(),
            WebhookEvent.created_at.asc(),
        )
        .limit(limit * 10)
    )
    rows = (await db.execute(stmt)).scalars().all()

    seen: set[str] = set()
    claimed: list[WebhookEvent] = []
    for event in rows:
        if event.object_id in seen:
            continue
        seen.add(event.object_id)
        # The head of this object's queue decides; later events wait behind it.
        if event.status not in RUNNABLE_STATUSES:
            continue
        if as_utc(event.available_at) > now:
            continue
        claimed.append(event)
        if len(claimed) >= limit:
            break

    for event in claimed:
        event.status = "running"
        event.error_message = None
        event.attempts += 1
    if claimed:
        await db.commit()
    return claimed


async def mark_event_done(db: AsyncSession, event: WebhookEvent, outcome: str) -> None:
    """Mark an event applied or skipped."""
    event.status = outcome
    event.error_message = None
    event.finished_at = datetime.now(timezone.utc)
    await db.commit()


async def mark_event_failed(db: AsyncSession, event: WebhookEvent, error: str) -> None:
    """Mark event failed or schedule retry with backoff."""
    now = datetime.now(timezone.utc)
    event.error_message = error
    event.finished_at = now

    if event.attempts < event.max_attempts:
        event.status = "retrying"
        backoff = settings.webhook_retry_backoff_seconds * event.attempts
        event.available_at = now + timedelta(seconds=backoff)
    else:
        event.status = "failed"

    await db.commit()


async def requeue_failed(
    db: AsyncSession, event_ids: Sequence[uuid.UUID] | None = None
) -> list[WebhookEvent]:
    """Put failed events back in the queue with a fresh attempt budget."""
    stmt = select(WebhookEvent).where(WebhookEvent.status == "failed")
    if event_ids:
        stmt = stmt.where(WebhookEvent.id.in_(list(event_ids)))
    events = list((await db.execute(stmt)).scalars().all())
    now = datetime.now(timezone.utc)
    for event in events:
        event.status = "pending"
        event.attempts = 0
        event.available_at = now
        event.finished_at = None
    if events:
        await db.commit()
    return events


async def recover_running(db: AsyncSession) -> int:
    """Return events left running by a stopped worker to the queue."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.status == "running")
        .values(status="retrying", available_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0
