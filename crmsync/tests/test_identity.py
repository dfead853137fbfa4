"""Tests for identity resolution and the dedup passes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.models.base import as_utc
from crmsync.models.contact import Contact
from crmsync.sync import identity
from crmsync.sync.field_mapper import normalize_contact

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _record(external_id: str, **props):
    return normalize_contact({"id": external_id, "properties": props})


async def _count(db: AsyncSession, *conditions) -> int:
    stmt = select(func.count(Contact.id)).where(*conditions)
    return (await db.execute(stmt)).scalar_one()


def test_pick_survivor_prefers_latest_sync_then_earliest_creation():
    old = Contact(email="", last_synced_at=T0, created_at=T0)
    new = Contact(email="", last_synced_at=T0 + timedelta(hours=1), created_at=T0 + timedelta(days=1))
    assert identity.pick_survivor([old, new]) is new

    first = Contact(email="", last_synced_at=T0, created_at=T0)
    second = Contact(email="", last_synced_at=T0, created_at=T0 + timedelta(minutes=5))
    assert identity.pick_survivor([second, first]) is first

    never = Contact(email="", last_synced_at=None, created_at=T0)
    assert identity.pick_survivor([never, first]) is first


@pytest.mark.asyncio
async def test_upsert_creates_then_updates_in_place(db: AsyncSession):
    created = await identity.upsert_contact(
        db, _record("42", firstname="Ann", email="ann@x.com"), synced_at=T0
    )
    await db.commit()
    assert created.created is True
    assert "first_name" in created.changed_fields

    updated = await identity.upsert_contact(
        db, _record("42", firstname="Anne", email="ann@x.com"), synced_at=T0 + timedelta(hours=1)
    )
    await db.commit()
    assert updated.created is False
    assert updated.contact.id == created.contact.id
    assert updated.changed_fields == {"first_name", "last_synced_at"}
    assert updated.profile_changed is True
    assert await _count(db, Contact.external_id == "42") == 1


@pytest.mark.asyncio
async def test_unchanged_record_reports_no_changes(db: AsyncSession):
    await identity.upsert_contact(db, _record("5", firstname="Same"), synced_at=T0)
    await db.commit()
    again = await identity.upsert_contact(db, _record("5", firstname="Same"), synced_at=T0)
    assert again.changed_fields == set()


@pytest.mark.asyncio
async def test_resync_reports_last_synced_at_without_profile_change(db: AsyncSession):
    await identity.upsert_contact(db, _record("6", firstname="Same"), synced_at=T0)
    await db.commit()
    later = T0 + timedelta(days=1)

    again = await identity.upsert_contact(db, _record("6", firstname="Same"), synced_at=later)
    await db.commit()

    assert again.changed_fields == {"last_synced_at"}
    assert again.profile_changed is False
    assert again.contact.last_synced_at == later


@pytest.mark.asyncio
async def test_reactivation_also_reports_last_synced_at(db: AsyncSession):
    db.add(Contact(external_id="78", email="back@x.com", status="archived", last_synced_at=T0))
    await db.commit()

    result = await identity.upsert_contact(
        db, _record("78", email="back@x.com"), synced_at=T0 + timedelta(hours=3)
    )

    assert {"status", "last_synced_at"} <= result.changed_fields


@pytest.mark.asyncio
async def test_upsert_reactivates_archived_contact(db: AsyncSession):
    contact = Contact(
        external_id="77",
        email="gone@x.com",
        status="archived",
        removed_upstream=True,
        retention_decision="archived",
        last_synced_at=T0,
    )
    db.add(contact)
    await db.commit()

    result = await identity.upsert_contact(db, _record("77", email="gone@x.com"))
    await db.commit()

    assert result.created is False
    assert result.contact.id == contact.id
    assert result.contact.status == "active"
    assert result.contact.removed_upstream is False
    assert {"status", "removed_upstream"} <= result.changed_fields


@pytest.mark.asyncio
async def test_plain_upsert_defers_active_duplicates(db: AsyncSession):
    stale = Contact(external_id="9", email="d@x.com", last_synced_at=T0)
    fresh = Contact(external_id="9", email="d@x.com", last_synced_at=T0 + timedelta(hours=2))
    db.add_all([stale, fresh])
    await db.commit()
    fresh_id = fresh.id

    result = await identity.upsert_contact(db, _record("9", email="d@x.com", firstname="Dee"))
    await db.commit()

    # No delete happens outside the email-group locks.
    assert result.duplicates_deferred is True
    assert result.contact.id == fresh_id
    assert result.contact.first_name == "Dee"
    assert await _count(db, Contact.external_id == "9") == 2

    dedup = await identity.run_dedup_pass(db, email_groups=False)
    assert dedup.by_external_id == 1
    assert await _count(db, Contact.external_id == "9") == 1


@pytest.mark.asyncio
async def test_locked_upsert_collapses_active_duplicates(db: AsyncSession):
    stale = Contact(external_id="10", email="e@x.com", last_synced_at=T0)
    fresh = Contact(external_id="10", email="e@x.com", last_synced_at=T0 + timedelta(hours=2))
    db.add_all([stale, fresh])
    await db.commit()
    fresh_id = fresh.id

    result = await identity.locked_upsert(db, _record("10", email="e@x.com", firstname="Eve"))

    assert result.duplicates_deferred is False
    assert result.contact.id == fresh_id
    assert await _count(db, Contact.external_id == "10") == 1


@pytest.mark.asyncio
async def test_manual_row_with_external_id_joins_upstream_identity(db: AsyncSession):
    manual = Contact(external_id="300", email="m@x.com", channel="manual", last_synced_at=T0)
    db.add(manual)
    await db.commit()

    result = await identity.upsert_contact(db, _record("300", email="m@x.com"))
    await db.commit()

    assert result.created is False
    assert result.contact.id == manual.id


@pytest.mark.asyncio
async def test_locked_upsert_commits(db: AsyncSession, session_factory):
    await identity.locked_upsert(db, _record("61", email="lock@x.com"))

    async with session_factory() as fresh:
        rows = await identity.find_by_external_id(fresh, "61")
    assert len(rows) == 1
    assert rows[0].channel == "webhook"


@pytest.mark.asyncio
async def test_dedup_pass_collapses_shared_external_id(db: AsyncSession):
    db.add_all([
        Contact(external_id="11", email="same@x.com", last_synced_at=T0),
        Contact(external_id="11", email="same@x.com", last_synced_at=T0 + timedelta(minutes=1)),
        Contact(external_id="12", email="other@x.com", last_synced_at=T0),
    ])
    await db.commit()

    result = await identity.run_dedup_pass(db)

    assert result.by_external_id == 1
    assert result.by_email == 0
    assert result.removed == 1
    assert await _count(db) == 2


@pytest.mark.asyncio
async def test_email_group_with_distinct_external_ids_untouched(db: AsyncSession):
    db.add_all([
        Contact(external_id="21", email="shared@x.com", last_synced_at=T0),
        Contact(external_id="22", email="Shared@X.com", last_synced_at=T0),
    ])
    await db.commit()

    removed, untouched = await identity.dedup_email_groups(db)

    assert removed == 0
    assert untouched == 1
    assert await _count(db, Contact.email_key == "shared@x.com") == 2


@pytest.mark.asyncio
async def test_email_group_with_missing_external_id_untouched(db: AsyncSession):
    db.add_all([
        Contact(external_id="31", email="half@x.com", last_synced_at=T0),
        Contact(external_id=None, email="half@x.com", channel="manual", last_synced_at=T0),
    ])
    await db.commit()

    result = await identity.run_dedup_pass(db)

    assert result.removed == 0
    assert result.untouched_groups == 1


@pytest.mark.asyncio
async def test_archived_rows_ignored_by_dedup(db: AsyncSession):
    db.add_all([
        Contact(external_id="41", email="arch@x.com", last_synced_at=T0),
        Contact(external_id="41", email="arch@x.com", status="archived", last_synced_at=T0),
    ])
    await db.commit()

    result = await identity.run_dedup_pass(db)
    assert result.removed == 0


@pytest.mark.asyncio
async def test_dnc_reason_and_date_follow_the_flag(db: AsyncSession):
    flagged = _record("88", federal_dnc="true", federal_dnc_date="2024-02-10T00:00:00Z")
    result = await identity.upsert_contact(db, flagged, synced_at=T0)
    await db.commit()
    assert result.contact.dnc_reason == "Federal DNC Registry"
    assert result.contact.dnc_date == datetime(2024, 2, 10, tzinfo=timezone.utc)

    cleared = await identity.upsert_contact(db, _record("88"), synced_at=T0)
    await db.commit()
    assert cleared.contact.dnc_status == "callable"
    assert cleared.contact.dnc_reason is None
    assert cleared.contact.dnc_date is None
    assert {"dnc_status", "dnc_reason", "dnc_date"} <= cleared.changed_fields


@pytest.mark.asyncio
async def test_dnc_date_defaults_to_first_sighting(db: AsyncSession):
    first = await identity.upsert_contact(db, _record("89", hs_do_not_call="true"), synced_at=T0)
    await db.commit()
    assert first.contact.dnc_date == T0

    later = T0 + timedelta(days=3)
    again = await identity.upsert_contact(db, _record("89", hs_do_not_call="true"), synced_at=later)
    await db.commit()
    assert "dnc_date" not in again.changed_fields
    assert as_utc(again.contact.dnc_date) == T0
