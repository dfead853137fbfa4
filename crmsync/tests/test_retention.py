"""Tests for asymmetric retention of upstream deletions."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from crmsync.models.contact import Contact
from crmsync.sync import identity, retention
from crmsync.sync.field_mapper import normalize_contact

DELETED_AT = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)


async def _contact(db: AsyncSession, external_id: str, tags=()) -> Contact:
    contact = Contact(external_id=external_id, email=f"{external_id}@x.com")
    contact.set_protection_tags(tags)
    db.add(contact)
    await db.commit()
    return contact


@pytest.mark.asyncio
async def test_protected_contact_preserved(db: AsyncSession):
    contact = await _contact(db, "100", tags={"seller-cold-lead"})

    outcomes = await retention.apply_deletion(db, "100", DELETED_AT)
    await db.commit()

    assert len(outcomes) == 1
    assert outcomes[0].decision == "preserved"
    assert outcomes[0].applied is True
    assert outcomes[0].protection_tags == ["seller-cold-lead"]
    assert contact.status == "active"
    assert contact.removed_upstream is True
    assert contact.retention_decision == "preserved"
    assert contact.protection_tags_at_removal == ["seller-cold-lead"]


@pytest.mark.asyncio
async def test_unprotected_contact_archived_not_deleted(db: AsyncSession):
    contact = await _contact(db, "101")

    outcomes = await retention.apply_deletion(db, "101", DELETED_AT)
    await db.commit()

    assert outcomes[0].decision == "archived"
    assert contact.status == "archived"
    assert contact.removed_upstream is True
    assert contact.protection_tags_at_removal == []
    assert await identity.find_by_external_id(db, "101")


@pytest.mark.asyncio
async def test_decision_is_not_recomputed(db: AsyncSession):
    contact = await _contact(db, "102", tags={"buyer-cold-lead"})
    await retention.apply_deletion(db, "102", DELETED_AT)
    await db.commit()

    # Tags changing afterwards must not flip the stored decision.
    contact.set_protection_tags(set())
    await db.commit()

    outcomes = await retention.apply_deletion(db, "102")
    await db.commit()

    assert outcomes[0].applied is False
    assert outcomes[0].decision == "preserved"
    assert contact.retention_decision == "preserved"
    assert contact.status == "active"
    assert contact.protection_tags_at_removal == ["buyer-cold-lead"]


@pytest.mark.asyncio
async def test_unknown_contact_is_a_no_op(db: AsyncSession):
    assert await retention.apply_deletion(db, "does-not-exist", DELETED_AT) == []


@pytest.mark.asyncio
async def test_deletion_after_reactivation_applies_again(db: AsyncSession):
    contact = await _contact(db, "103")
    await retention.apply_deletion(db, "103", DELETED_AT)
    await db.commit()
    assert contact.status == "archived"

    await identity.upsert_contact(db, normalize_contact({"id": "103", "properties": {}}))
    await db.commit()
    assert contact.status == "active"

    outcomes = await retention.apply_deletion(db, "103", DELETED_AT)
    await db.commit()

    assert outcomes[0].applied is True
    assert contact.status == "archived"
