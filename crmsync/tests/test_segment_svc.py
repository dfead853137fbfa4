"""Tests for segment predicates and cached counts."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.models.contact import Contact
from crmsync.services import segment_svc
from crmsync.sync import identity
from crmsync.sync.field_mapper import normalize_contact

SYNCED = datetime(2024, 5, 1, 15, 30, tzinfo=timezone.utc)


async def _seed(db: AsyncSession) -> None:
    buyer = Contact(external_id="1", email="a@x.com", dnc_status="dnc", campaign_types=["Buyer"])
    buyer.set_protection_tags({"buyer-cold-lead"})
    db.add_all([
        buyer,
        Contact(external_id="2", email="b@x.com", lifecycle_stage="customer",
                campaign_types=["Buyer", "Seller"]),
        Contact(external_id="3", email="c@x.com", status="archived", dnc_status="dnc"),
        Contact(external_id="4", email="d@x.com", removed_upstream=True),
    ])
    await db.commit()


def test_dependencies_always_include_status():
    deps = segment_svc.predicate_dependencies({
        "all": [
            {"field": "dnc_status", "op": "eq", "value": "dnc"},
            {"any": [{"field": "protection_tags", "op": "contains", "value": "x"}]},
        ]
    })
    assert deps == ["dnc_status", "protection_tags", "status"]


@pytest.mark.parametrize(
    "predicate",
    [
        {"field": "nope", "op": "eq", "value": 1},
        {"field": "dnc_status", "op": "like", "value": "d"},
        {"field": "protection_tags", "op": "eq", "value": "x"},
        {"field": "email", "op": "contains", "value": "x"},
        {"field": "status", "op": "in", "value": "active"},
        {"all": "not-a-list"},
        {"field": "last_synced_at", "op": "gte", "value": "yesterday"},
        {"field": "dnc_date", "op": "lte", "value": 20240501},
        {"field": "created_at", "op": "in", "value": ["2024-05-01", "soon"]},
        "not-a-dict",
    ],
)
def test_invalid_predicates_rejected(predicate):
    with pytest.raises(ValueError):
        segment_svc.validate_predicate(predicate)


@pytest.mark.asyncio
async def test_counts_default_to_active_contacts(db: AsyncSession):
    await _seed(db)

    assert await segment_svc.count_matching(db, {"all": []}) == 3
    assert await segment_svc.count_matching(db, {"field": "dnc_status", "op": "eq", "value": "dnc"}) == 1
    # Filtering on status lifts the active-only scope.
    assert await segment_svc.count_matching(db, {"field": "status", "op": "eq", "value": "archived"}) == 1


@pytest.mark.asyncio
async def test_set_field_predicates(db: AsyncSession):
    await _seed(db)

    tagged = {"field": "protection_tags", "op": "contains", "value": "buyer-cold-lead"}
    assert await segment_svc.count_matching(db, tagged) == 1
    untagged = {"field": "protection_tags", "op": "exists", "value": False}
    assert await segment_svc.count_matching(db, untagged) == 2
    sellers = {"field": "campaign_types", "op": "contains", "value": "Seller"}
    assert await segment_svc.count_matching(db, sellers) == 1
    no_campaign = {"not": {"field": "campaign_types", "op": "exists"}}
    assert await segment_svc.count_matching(db, no_campaign) == 1


@pytest.mark.asyncio
async def test_ensure_default_segments_is_idempotent(db: AsyncSession):
    assert await segment_svc.ensure_default_segments(db) == len(segment_svc.DEFAULT_SEGMENTS)
    assert await segment_svc.ensure_default_segments(db) == 0

    segments = await segment_svc.list_segments(db)
    assert all(s.is_system for s in segments)
    assert {s.name for s in segments} >= {"All Contacts", "DNC", "Removed Upstream"}


@pytest.mark.asyncio
async def test_create_segment_rejects_duplicate_name(db: AsyncSession):
    predicate = {"field": "lifecycle_stage", "op": "eq", "value": "customer"}
    await segment_svc.create_segment(db, "VIPs", predicate)
    with pytest.raises(ValueError):
        await segment_svc.create_segment(db, "VIPs", predicate)


@pytest.mark.asyncio
async def test_refresh_affected_only_touches_dependent_segments(db: AsyncSession):
    await segment_svc.ensure_default_segments(db)
    dnc = await segment_svc.get_segment_by_name(db, "DNC")
    customers = await segment_svc.get_segment_by_name(db, "Customers")
    assert dnc.contact_count == 0

    db.add(Contact(external_id="9", email="z@x.com", dnc_status="dnc", lifecycle_stage="customer"))
    await db.commit()

    refreshed = await segment_svc.refresh_affected(db, {"dnc_status"})

    assert "DNC" in refreshed
    assert "Customers" not in refreshed
    assert dnc.contact_count == 1
    # Advisory count stays stale until one of its fields changes.
    assert customers.contact_count == 0

    await segment_svc.refresh_affected(db, {"status"})
    assert customers.contact_count == 1


@pytest.mark.asyncio
async def test_refresh_affected_with_nothing_changed(db: AsyncSession):
    await segment_svc.ensure_default_segments(db)
    assert await segment_svc.refresh_affected(db, set()) == []


@pytest.mark.asyncio
async def test_timestamp_bounds_compare_as_datetimes(db: AsyncSession):
    db.add(Contact(external_id="1", email="t@x.com", last_synced_at=SYNCED))
    await db.commit()

    async def count(op: str, value: str) -> int:
        return await segment_svc.count_matching(db, {"field": "last_synced_at", "op": op, "value": value})

    # Same calendar day as the stored value.
    assert await count("gte", "2024-05-01T00:00:00Z") == 1
    assert await count("gte", "2024-05-01") == 1
    assert await count("lte", "2024-05-01") == 0
    assert await count("lte", "2024-05-01T23:59:59Z") == 1
    # Offsets are normalized to UTC: 17:00+02:00 is 15:00Z.
    assert await count("gte", "2024-05-01T17:00:00+02:00") == 1
    assert await count("gte", "2024-05-01T18:00:00+02:00") == 0


@pytest.mark.asyncio
async def test_segment_on_last_synced_at_follows_resyncs(db: AsyncSession):
    record = normalize_contact({"id": "70", "properties": {"email": "r@x.com"}})
    await identity.upsert_contact(db, record, synced_at=SYNCED)
    await db.commit()
    recent = await segment_svc.create_segment(
        db, "Synced in June", {"field": "last_synced_at", "op": "gte", "value": "2024-06-01T00:00:00Z"}
    )
    assert recent.contact_count == 0

    result = await identity.upsert_contact(db, record, synced_at=SYNCED + timedelta(days=40))
    await db.commit()
    refreshed = await segment_svc.refresh_affected(db, result.changed_fields)

    assert "Synced in June" in refreshed
    assert recent.contact_count == 1


@pytest.mark.asyncio
async def test_update_segment_recounts_and_tracks_dependencies(db: AsyncSession):
    await _seed(db)
    segment = await segment_svc.create_segment(
        db, "Callers", {"field": "dnc_status", "op": "eq", "value": "dnc"}
    )
    assert segment.contact_count == 1

    updated = await segment_svc.update_segment(
        db,
        segment,
        name="Customers only",
        description="lifecycle customers",
        predicate={"field": "lifecycle_stage", "op": "eq", "value": "customer"},
    )

    assert updated.name == "Customers only"
    assert updated.description == "lifecycle customers"
    assert updated.dependencies == ["lifecycle_stage", "status"]
    assert updated.contact_count == 1
    assert await segment_svc.get_segment_by_name(db, "Callers") is None


@pytest.mark.asyncio
async def test_update_segment_rejects_bad_input(db: AsyncSession):
    await segment_svc.create_segment(db, "Taken", {"all": []})
    segment = await segment_svc.create_segment(db, "Mine", {"all": []})

    with pytest.raises(ValueError):
        await segment_svc.update_segment(db, segment, name="Taken")
    with pytest.raises(ValueError):
        await segment_svc.update_segment(db, segment, predicate={"field": "nope", "op": "eq"})


@pytest.mark.asyncio
async def test_system_segments_are_read_only(db: AsyncSession):
    await segment_svc.ensure_default_segments(db)
    dnc = await segment_svc.get_segment_by_name(db, "DNC")

    with pytest.raises(ValueError):
        await segment_svc.update_segment(db, dnc, name="Renamed")
    with pytest.raises(ValueError):
        await segment_svc.delete_segment(db, dnc)


@pytest.mark.asyncio
async def test_delete_segment(db: AsyncSession):
    segment = await segment_svc.create_segment(db, "Temporary", {"all": []})
    await segment_svc.delete_segment(db, segment)
    assert await segment_svc.get_segment_by_name(db, "Temporary") is None


@pytest.mark.asyncio
async def test_duplicate_segment_picks_free_copy_name(db: AsyncSession):
    await _seed(db)
    await segment_svc.ensure_default_segments(db)
    dnc = await segment_svc.get_segment_by_name(db, "DNC")

    first = await segment_svc.duplicate_segment(db, dnc)
    second = await segment_svc.duplicate_segment(db, dnc)
    named = await segment_svc.duplicate_segment(db, dnc, name="My DNC")

    assert first.name == "DNC (Copy)"
    assert second.name == "DNC (Copy 2)"
    assert named.name == "My DNC"
    assert first.is_system is False
    assert first.predicate == dnc.predicate
    assert first.contact_count == dnc.contact_count == 1


@pytest.mark.asyncio
async def test_list_segment_contacts_pages_members(db: AsyncSession):
    await _seed(db)
    segment = await segment_svc.create_segment(
        db, "Buyers", {"field": "campaign_types", "op": "contains", "value": "Buyer"}
    )

    contacts, total = await segment_svc.list_segment_contacts(db, segment)
    assert total == 2
    assert {c.external_id for c in contacts} == {"1", "2"}

    page, total = await segment_svc.list_segment_contacts(db, segment, offset=1, limit=1)
    assert total == 2
    assert len(page) == 1
