"""Tests for bulk sync orchestration, checkpoints and the run lease."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from crmsync.config import settings
from crmsync.errors import SyncAlreadyRunning
from crmsync.models.contact import Contact
from crmsync.services import segment_svc
from crmsync.sync import cursor_store, sync_engine


def _options(sleep, **extra):
    options = {"page_size": 10, "shrink_sizes": [5, 1], "sleep": sleep}
    options.update(extra)
    return options


async def _contact_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(Contact.id)))).scalar_one()


@pytest.mark.asyncio
async def test_full_run_imports_and_completes(session_factory, upstream, raw_contact, sleep_recorder):
    upstream.records = [raw_contact(i) for i in range(25)]

    report = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=_options(sleep_recorder)
    )

    assert report.status == "completed"
    assert report.fetched == 25
    assert report.created == 25
    assert report.updated == 0
    assert await _contact_count(session_factory) == 25

    async with session_factory() as db:
        cursor = await cursor_store.get_cursor(db, "hubspot")
        run = await sync_engine.latest_run(db, "hubspot")
    assert cursor.status == "completed"
    assert cursor.position is None
    assert cursor.lease_owner is None
    assert cursor.last_completed_at is not None
    assert run.status == "completed"
    assert run.fetched == 25
    assert run.finished_at is not None


@pytest.mark.asyncio
async def test_rerun_is_idempotent(session_factory, upstream, raw_contact, sleep_recorder):
    upstream.records = [raw_contact(i) for i in range(12)]
    options = _options(sleep_recorder)

    await sync_engine.run_bulk_sync(session_factory, upstream, source="hubspot", extractor_options=options)
    second = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=options
    )

    assert second.status == "completed"
    assert second.created == 0
    assert second.updated == 0
    assert await _contact_count(session_factory) == 12

    async with session_factory() as db:
        dupes = (
            await db.execute(
                select(Contact.external_id)
                .group_by(Contact.external_id)
                .having(func.count(Contact.id) > 1)
            )
        ).scalars().all()
    assert dupes == []


@pytest.mark.asyncio
async def test_changed_upstream_record_updates(session_factory, upstream, raw_contact, sleep_recorder):
    upstream.records = [raw_contact(i) for i in range(3)]
    options = _options(sleep_recorder)
    await sync_engine.run_bulk_sync(session_factory, upstream, source="hubspot", extractor_options=options)

    upstream.records[1] = raw_contact(1, hs_do_not_call="true")
    report = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=options
    )

    assert report.updated == 1
    async with session_factory() as db:
        contact = (
            await db.execute(select(Contact).where(Contact.external_id == "1001"))
        ).scalar_one()
    assert contact.dnc_status == "dnc"


@pytest.mark.asyncio
async def test_halted_run_resumes_from_checkpoint(session_factory, upstream, raw_contact, sleep_recorder):
    upstream.records = [raw_contact(i) for i in range(30)]
    upstream.corrupt = {10, 11}
    options = _options(sleep_recorder, max_consecutive_gaps=2)

    first = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=options
    )
    assert first.status == "halted"
    assert first.halt_reason == "circuit_breaker"
    assert first.gapped == 2

    async with session_factory() as db:
        cursor = await cursor_store.get_cursor(db, "hubspot")
        run = await sync_engine.latest_run(db, "hubspot")
    assert cursor.position == "11"
    assert cursor.lease_owner is None
    assert run.status == "halted"
    assert len(run.gaps) == 2

    upstream.corrupt = set()
    second = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=options
    )

    assert second.status == "completed"
    assert second.start_cursor == "11"
    assert second.fetched == 19
    # Record 10 was stepped over by the first run and is not revisited.
    assert await _contact_count(session_factory) == 29


@pytest.mark.asyncio
async def test_lease_allows_one_run_per_source(db):
    await sync_engine.start_run(db, "hubspot")
    with pytest.raises(SyncAlreadyRunning):
        await sync_engine.start_run(db, "hubspot")


@pytest.mark.asyncio
async def test_reset_refused_while_leased(db):
    run = await sync_engine.start_run(db, "hubspot")
    with pytest.raises(SyncAlreadyRunning):
        await cursor_store.reset_cursor(db, "hubspot")

    await cursor_store.release_lease(db, "hubspot", str(run.id), "cancelled")
    cursor = await cursor_store.reset_cursor(db, "hubspot")
    assert cursor.position is None
    assert cursor.status == "idle"


@pytest.mark.asyncio
async def test_checkpoint_requires_lease_owner(db):
    await sync_engine.start_run(db, "hubspot")
    with pytest.raises(SyncAlreadyRunning):
        await cursor_store.checkpoint(db, "hubspot", "someone-else", "50")


def test_cancel_request_without_run():
    assert sync_engine.request_cancel("nobody") is False


@pytest.mark.asyncio
async def test_run_refreshes_affected_segments(session_factory, upstream, raw_contact, sleep_recorder):
    async with session_factory() as db:
        await segment_svc.ensure_default_segments(db)

    upstream.records = [raw_contact(0, hs_do_not_call="true"), raw_contact(1)]
    await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=_options(sleep_recorder)
    )

    async with session_factory() as db:
        dnc = await segment_svc.get_segment_by_name(db, "DNC")
        everyone = await segment_svc.get_segment_by_name(db, "All Contacts")
    assert dnc.contact_count == 1
    assert everyone.contact_count == 2


@pytest.mark.asyncio
async def test_dedup_pass_runs_after_completed_run(session_factory, upstream, raw_contact, sleep_recorder):
    async with session_factory() as db:
        db.add(Contact(external_id="555", email="dup@example.com", channel="manual"))
        db.add(Contact(external_id="555", email="dup@example.com", channel="file-import"))
        await db.commit()

    upstream.records = [raw_contact(0)]
    report = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=_options(sleep_recorder)
    )

    assert report.status == "completed"
    assert report.deduplicated == 1
    assert await _contact_count(session_factory) == 2


@pytest.mark.asyncio
async def test_cancelled_run_keeps_checkpoint_and_resumes_after_it(
    session_factory, upstream, raw_contact, sleep_recorder
):
    upstream.records = [raw_contact(i) for i in range(25)]
    options = _options(sleep_recorder)
    cancel = asyncio.Event()
    serve_page = upstream.list_contacts

    async def cancel_after_first_page(properties, *, limit, after=None):
        page = await serve_page(properties, limit=limit, after=after)
        cancel.set()
        return page

    upstream.list_contacts = cancel_after_first_page
    first = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", cancel_event=cancel, extractor_options=options
    )

    assert first.status == "cancelled"
    assert first.fetched == 10
    async with session_factory() as db:
        cursor = await cursor_store.get_cursor(db, "hubspot")
        run = await sync_engine.latest_run(db, "hubspot")
    assert cursor.position == "10"
    assert cursor.status == "cancelled"
    assert cursor.lease_owner is None
    assert run.status == "cancelled"
    assert run.final_cursor == "10"
    assert await _contact_count(session_factory) == 10

    upstream.list_contacts = serve_page
    upstream.calls.clear()
    second = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=options
    )

    assert second.status == "completed"
    assert second.start_cursor == "10"
    assert upstream.calls[0][0] == "10"
    assert None not in [after for after, _ in upstream.calls]
    assert second.fetched == 15
    assert await _contact_count(session_factory) == 25


@pytest.mark.asyncio
async def test_uncommitted_step_is_not_counted(
    session_factory, upstream, raw_contact, sleep_recorder, monkeypatch
):
    upstream.records = [raw_contact(i) for i in range(25)]
    real_checkpoint = cursor_store.checkpoint
    calls = 0

    async def checkpoint_then_fail(db, source, owner, position, **kwargs):
        nonlocal calls
        calls += 1
        cursor = await real_checkpoint(db, source, owner, position, **kwargs)
        if calls == 2:
            raise RuntimeError("disk full")
        return cursor

    monkeypatch.setattr(cursor_store, "checkpoint", checkpoint_then_fail)
    report = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=_options(sleep_recorder)
    )

    assert report.status == "failed"
    assert "disk full" in report.halt_reason
    # Only the first page reached the store.
    assert report.pages == 1
    assert report.fetched == 10
    assert report.created == 10
    assert report.final_cursor == "10"
    assert await _contact_count(session_factory) == 10

    async with session_factory() as db:
        cursor = await cursor_store.get_cursor(db, "hubspot")
        run = await sync_engine.latest_run(db, "hubspot")
    assert cursor.position == "10"
    assert run.fetched == 10
    assert run.created == 10


@pytest.mark.asyncio
async def test_in_flight_run_record_counts_committed_pages(
    session_factory, upstream, raw_contact, sleep_recorder
):
    upstream.records = [raw_contact(i) for i in range(25)]
    seen: list[tuple[int, int, str | None]] = []
    serve_page = upstream.list_contacts

    async def record_progress(properties, *, limit, after=None):
        if after is not None:
            async with session_factory() as db:
                run = await sync_engine.latest_run(db, "hubspot")
            seen.append((run.fetched, run.pages, run.final_cursor))
        return await serve_page(properties, limit=limit, after=after)

    upstream.list_contacts = record_progress
    await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=_options(sleep_recorder)
    )

    assert seen == [(10, 1, "10"), (20, 2, "20")]


@pytest.mark.asyncio
async def test_bulk_run_collapses_duplicates_it_touched(
    session_factory, upstream, raw_contact, sleep_recorder, monkeypatch
):
    monkeypatch.setattr(settings, "sync_dedup_after_run", False)
    async with session_factory() as db:
        db.add(Contact(external_id="1000", email="user0@example.com", channel="manual"))
        db.add(Contact(external_id="1000", email="old0@example.com", channel="file-import"))
        await db.commit()

    upstream.records = [raw_contact(0), raw_contact(1)]
    report = await sync_engine.run_bulk_sync(
        session_factory, upstream, source="hubspot", extractor_options=_options(sleep_recorder)
    )

    assert report.status == "completed"
    assert report.deduplicated == 1
    async with session_factory() as db:
        rows = (
            await db.execute(select(Contact).where(Contact.external_id == "1000"))
        ).scalars().all()
    assert len(rows) == 1
    assert rows[0].email == "user0@example.com"


@pytest.mark.asyncio
async def test_run_history_newest_first(session_factory, upstream, raw_contact, sleep_recorder):
    upstream.records = [raw_contact(0)]
    options = _options(sleep_recorder)
    first = await sync_engine.run_bulk_sync(session_factory, upstream, source="hubspot", extractor_options=options)
    await sync_engine.run_bulk_sync(session_factory, upstream, source="hubspot", extractor_options=options)

    async with session_factory() as db:
        runs = await sync_engine.list_runs(db, "hubspot")
        only_one = await sync_engine.list_runs(db, "hubspot", limit=1)
        other = await sync_engine.list_runs(db, "salesforce")

    assert len(runs) == 2
    assert runs[0].started_at >= runs[1].started_at
    assert all(r.status == "completed" for r in runs)
    assert len(only_one) == 1
    assert other == []
    assert first.created == 1
