"""Bulk sync orchestration - lease, extract, upsert, checkpoint, dedup.

Each extraction step is committed in its own transaction together with the
checkpoint cursor, so a halted, cancelled or crashed run resumes exactly after
the last committed page.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..errors import SyncAlreadyRunning
from ..models.base import utcnow
from ..models.contact import CHANNEL_BULK_API
from ..models.sync_run import SyncRun
from ..schemas.sync import ExtractionReport
from ..services import segment_svc
from ..upstream.client import UpstreamClient
from . import cursor_store, identity
from .extractor import BulkExtractor
from .extractor import tally as extractor_tally
from .field_mapper import build_property_list

logger = logging.getLogger(__name__)

_cancel_events: dict[str, asyncio.Event] = {}
_running_tasks: dict[str, asyncio.Task] = {}


def request_cancel(source: str) -> bool:
    """Ask the active run for ``source`` to stop after its current page."""
    event = _cancel_events.get(source)
    if event is None:
        return False
    event.set()
    logger.info("Cancellation requested", extra={"source": source})
    return True


def is_running(source: str) -> bool:
    return source in _cancel_events


async def get_run(db: AsyncSession, run_id: uuid.UUID) -> SyncRun | None:
    result = await db.execute(select(SyncRun).where(SyncRun.id == run_id))
    return result.scalar_one_or_none()


async def latest_run(db: AsyncSession, source: str) -> SyncRun | None:
    stmt = (
        select(SyncRun)
        .where(SyncRun.source == source)
        .order_by(SyncRun.started_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_runs(db: AsyncSession, source: str, limit: int = 20) -> list[SyncRun]:
    """Run history for ``source``, newest first."""
    stmt = (
        select(SyncRun)
        .where(SyncRun.source == source)
        .order_by(SyncRun.started_at.desc())
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())


async def start_run(db: AsyncSession, source: str) -> SyncRun:
    """Take the source lease and open a run record. Raises SyncAlreadyRunning."""
    run = SyncRun(id=uuid.uuid4(), source=source, status="running", started_at=utcnow())
    cursor = await cursor_store.acquire_lease(db, source, owner=str(run.id))
    run.start_cursor = cursor.position
    run.final_cursor = cursor.position
    db.add(run)
    await db.commit()
    logger.info("Sync run started", extra={"source": source, "run_id": str(run.id)})
    return run


def _copy_report(run: SyncRun, report: ExtractionReport) -> None:
    run.status = report.status
    run.fetched = report.fetched
    run.skipped = report.skipped
    run.gapped = report.gapped
    run.errored = report.errored
    run.pages = report.pages
    run.created = report.created
    run.updated = report.updated
    run.deduplicated = report.deduplicated
    run.final_cursor = report.final_cursor
    run.gaps = [g.model_dump() for g in report.gaps]
    run.halt_reason = report.halt_reason


async def execute_run(
    session_factory: async_sessionmaker[AsyncSession],
    client: UpstreamClient,
    run_id: uuid.UUID,
    *,
    source: str,
    properties: Sequence[str] | None = None,
    cancel_event: asyncio.Event | None = None,
    extractor_options: dict | None = None,
) -> ExtractionReport:
    """Drive one leased run to a terminal state and persist its report."""
    owner = str(run_id)
    cancel_event = cancel_event or asyncio.Event()
    _cancel_events[source] = cancel_event

    async with session_factory() as db:
        run = await get_run(db, run_id)
        start_cursor = run.start_cursor if run else None

    extractor = BulkExtractor(
        client,
        properties or build_property_list(settings.extra_properties_list),
        source=source,
        cancel_event=cancel_event,
        **(extractor_options or {}),
    )
    report = extractor.report
    changed_fields: set[str] = set()
    errors_checkpointed = 0
    duplicates_deferred = False

    try:
        async for step in extractor.steps(start_cursor):
            async with session_factory() as db:
                synced_at = utcnow()
                created = updated = 0
                step_changes: set[str] = set()
                for record in step.records:
                    result = await identity.upsert_contact(
                        db, record, channel=CHANNEL_BULK_API, synced_at=synced_at
                    )
                    step_changes |= result.changed_fields
                    duplicates_deferred |= result.duplicates_deferred
                    if result.created:
                        created += 1
                    elif result.profile_changed:
                        updated += 1

                # The extractor only adds the step to its report once we resume it.
                pending = report.model_copy(deep=True)
                extractor_tally(pending, step)
                pending.created += created
                pending.updated += updated

                await cursor_store.checkpoint(
                    db, source, owner, step.cursor, errors=report.errored - errors_checkpointed
                )
                run = await get_run(db, run_id)
                if run is not None:
                    _copy_report(run, pending)
                await db.commit()

            errors_checkpointed = report.errored
            report.created += created
            report.updated += updated
            changed_fields |= step_changes

        if report.status == "running":
            # The step iterator stopped without a terminal state.
            report.status = "failed"
            report.halt_reason = "extraction ended unexpectedly"

        dedup = None
        if report.status == "completed" and settings.sync_dedup_after_run:
            async with session_factory() as db:
                dedup = await identity.run_dedup_pass(db)
        elif duplicates_deferred:
            # Upserts never delete outside the email-group locks; finish the job here.
            async with session_factory() as db:
                dedup = await identity.run_dedup_pass(db, email_groups=False)
        if dedup is not None:
            report.deduplicated = dedup.removed
            if dedup.removed:
                changed_fields.add("status")
    except SyncAlreadyRunning:
        report.status = "failed"
        report.halt_reason = "lease lost"
        logger.warning("Sync lease lost mid-run", extra={"source": source, "run_id": owner})
    except Exception as exc:
        report.status = "failed"
        report.halt_reason = f"{type(exc).__name__}: {exc}"
        logger.exception("Sync run failed", extra={"source": source, "run_id": owner})
    finally:
        _cancel_events.pop(source, None)

    async with session_factory() as db:
        if changed_fields:
            await segment_svc.refresh_affected(db, changed_fields)
        run = await get_run(db, run_id)
        if run is not None:
            _copy_report(run, report)
            run.finished_at = utcnow()
            await db.commit()
        await cursor_store.release_lease(db, source, owner, report.status)

    logger.info(
        "Sync run finished: %s",
        report.status,
        extra={
            "source": source,
            "run_id": owner,
            "fetched": report.fetched,
            "skipped": report.skipped,
            "gapped": report.gapped,
            "errored": report.errored,
            "final_cursor": report.final_cursor,
        },
    )
    return report


async def run_bulk_sync(
    session_factory: async_sessionmaker[AsyncSession],
    client: UpstreamClient,
    *,
    source: str | None = None,
    properties: Sequence[str] | None = None,
    cancel_event: asyncio.Event | None = None,
    extractor_options: dict | None = None,
) -> ExtractionReport:
    """Run one full bulk sync cycle for ``source`` in the current task."""
    source = source or settings.upstream_source
    async with session_factory() as db:
        run = await start_run(db, source)
    return await execute_run(
        session_factory,
        client,
        run.id,
        source=source,
        properties=properties,
        cancel_event=cancel_event,
        extractor_options=extractor_options,
    )


async def abort_run(
    session_factory: async_sessionmaker[AsyncSession],
    run_id: uuid.UUID,
    source: str,
    reason: str,
) -> None:
    """Mark a run failed and free its lease when it could not be driven at all."""
    async with session_factory() as db:
        run = await get_run(db, run_id)
        if run is not None and run.status == "running":
            run.status = "failed"
            run.halt_reason = reason
            run.finished_at = utcnow()
            await db.commit()
        await cursor_store.release_lease(db, source, str(run_id), "failed")


def launch_run(
    session_factory: async_sessionmaker[AsyncSession],
    client_factory,
    run: SyncRun,
) -> asyncio.Task:
    """Run ``execute_run`` in the background with a freshly opened client."""
    source = run.source
    # Register before the task starts so cancel requests are never lost.
    cancel_event = asyncio.Event()
    _cancel_events[source] = cancel_event

    async def _runner() -> ExtractionReport | None:
        try:
            async with client_factory() as client:
                return await execute_run(
                    session_factory, client, run.id, source=source, cancel_event=cancel_event
                )
        except Exception as exc:
            logger.exception("Background sync run crashed", extra={"source": source})
            _cancel_events.pop(source, None)
            await abort_run(session_factory, run.id, source, f"{type(exc).__name__}: {exc}")
            return None

    task = asyncio.create_task(_runner(), name=f"bulk-sync-{source}")
    _running_tasks[source] = task
    task.add_done_callback(lambda _t: _running_tasks.pop(source, None))
    return task
