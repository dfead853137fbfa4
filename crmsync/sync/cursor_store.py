"""Persisted pagination checkpoints and the single-run lease per source."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import SyncAlreadyRunning
from ..models.base import as_utc, utcnow
from ..models.sync_cursor import SyncCursor

logger = logging.getLogger(__name__)


async def get_cursor(db: AsyncSession, source: str) -> SyncCursor | None:
    stmt = (
        select(SyncCursor)
        .where(SyncCursor.source == source)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_or_create_cursor(db: AsyncSession, source: str) -> SyncCursor:
    cursor = await get_cursor(db, source)
    if cursor is not None:
        return cursor
    db.add(SyncCursor(source=source))
    try:
        await db.commit()
    except IntegrityError:
        # Another caller created it first.
        await db.rollback()
    cursor = await get_cursor(db, source)
    if cursor is None:
        raise RuntimeError(f"Could not create sync cursor for {source!r}")
    return cursor


async def acquire_lease(
    db: AsyncSession,
    source: str,
    owner: str,
    ttl_seconds: int | None = None,
) -> SyncCursor:
    """Take the run lease for ``source`` or raise ``SyncAlreadyRunning``.

    The conditional UPDATE makes the claim atomic across sessions and processes.
    An expired lease can be taken over.
    """
    await get_or_create_cursor(db, source)
    now = utcnow()
    ttl = ttl_seconds if ttl_seconds is not None else settings.sync_lease_seconds
    stmt = (
        update(SyncCursor)
        .where(
            SyncCursor.source == source,
            or_(
                SyncCursor.lease_owner.is_(None),
                SyncCursor.lease_expires_at.is_(None),
                SyncCursor.lease_expires_at < now,
            ),
        )
        .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=ttl), status="running")
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        await db.rollback()
        raise SyncAlreadyRunning(source)
    await db.commit()
    cursor = await get_cursor(db, source)
    logger.info("Sync lease acquired", extra={"source": source, "owner": owner})
    return cursor


async def checkpoint(
    db: AsyncSession,
    source: str,
    owner: str,
    position: str | None,
    *,
    errors: int = 0,
    ttl_seconds: int | None = None,
) -> SyncCursor:
    """Advance the checkpoint and extend the lease. Flushes; the caller commits
    together with the page's upserts."""
    cursor = await get_cursor(db, source)
    if cursor is None or cursor.lease_owner != owner:
        raise SyncAlreadyRunning(source)
    ttl = ttl_seconds if ttl_seconds is not None else settings.sync_lease_seconds
    cursor.position = position
    cursor.page_count = (cursor.page_count or 0) + 1
    cursor.error_count = (cursor.error_count or 0) + errors
    cursor.lease_expires_at = utcnow() + timedelta(seconds=ttl)
    await db.flush()
    return cursor


async def release_lease(db: AsyncSession, source: str, owner: str, status: str) -> SyncCursor | None:
    """Drop the lease and record the run's terminal status. Commits."""
    cursor = await get_cursor(db, source)
    if cursor is None:
        return None
    if cursor.lease_owner != owner:
        logger.warning(
            "Lease no longer held at release",
            extra={"source": source, "owner": owner, "holder": cursor.lease_owner},
        )
        return cursor
    cursor.lease_owner = None
    cursor.lease_expires_at = None
    cursor.status = status
    if status == "completed":
        cursor.last_completed_at = utcnow()
    await db.commit()
    logger.info("Sync lease released", extra={"source": source, "status": status})
    return cursor


async def reset_cursor(db: AsyncSession, source: str) -> SyncCursor:
    """Rewind to the beginning. Refused while a run holds the lease."""
    cursor = await get_or_create_cursor(db, source)
    expires = as_utc(cursor.lease_expires_at)
    if cursor.lease_owner and expires is not None and expires > utcnow():
        raise SyncAlreadyRunning(source)
    cursor.position = None
    cursor.page_count = 0
    cursor.error_count = 0
    cursor.status = "idle"
    await db.commit()
    return cursor
