"""Contact service - manual and file-import ingestion, restore, suppression lists."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..locks import email_group_key, email_group_locks
from ..models.base import utcnow
from ..models.contact import (
    CHANNEL_FILE_IMPORT,
    CHANNEL_MANUAL,
    STATUS_ACTIVE,
    STATUS_ARCHIVED,
    Contact,
    ContactProtectionTag,
)
from ..sync import identity
from ..sync.field_mapper import normalize_contact
from . import segment_svc

logger = logging.getLogger(__name__)

LOCAL_CHANNELS = (CHANNEL_MANUAL, CHANNEL_FILE_IMPORT)


async def get_contact(db: AsyncSession, contact_id: uuid.UUID) -> Contact | None:
    result = await db.execute(select(Contact).where(Contact.id == contact_id))
    return result.scalar_one_or_none()


async def list_contacts(
    db: AsyncSession,
    *,
    status: str | None = STATUS_ACTIVE,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[Contact], int]:
    """List contacts, active only by default. Returns (contacts, total)."""
    stmt = select(Contact)
    if status:
        stmt = stmt.where(Contact.status == status)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = stmt.order_by(Contact.created_at.desc()).offset(offset).limit(limit)
    contacts = list((await db.execute(stmt)).scalars().all())
    return contacts, total


async def ingest_contact(
    db: AsyncSession,
    fields: dict[str, Any],
    channel: str = CHANNEL_MANUAL,
) -> tuple[Contact, bool]:
    """Ingest one contact from a local channel. Returns (contact, created).

    ``fields`` is a flat property bag using upstream or canonical names. A
    record carrying an ``external_id`` joins the upstream identity; otherwise
    it is matched to an id-less record of the same channel by email.
    """
    if channel not in LOCAL_CHANNELS:
        raise ValueError(f"Unsupported ingestion channel {channel!r}")

    bag = dict(fields)
    extra_tags = {str(t).strip() for t in bag.pop("protection_tags", None) or [] if str(t).strip()}
    external_id = bag.pop("external_id", None)

    record = normalize_contact(bag)
    if external_id:
        record = replace(record, external_id=str(external_id).strip())
    if extra_tags:
        record = replace(record, protection_tags=record.protection_tags | extra_tags)

    if record.external_id:
        result = await identity.locked_upsert(db, record, channel=channel)
        await segment_svc.refresh_affected(db, result.changed_fields)
        return result.contact, result.created

    key = email_group_key(record.email or None)
    async with email_group_locks.hold(key):
        existing = None
        if record.email:
            stmt = (
                select(Contact)
                .where(
                    Contact.channel == channel,
                    Contact.external_id.is_(None),
                    Contact.status == STATUS_ACTIVE,
                    Contact.email_key == record.email,
                )
                .order_by(Contact.created_at)
                .limit(1)
            )
            existing = (await db.execute(stmt)).scalar_one_or_none()

        created = existing is None
        contact = existing or Contact(channel=channel, email="")
        if created:
            db.add(contact)
        now = utcnow()
        changed = identity.apply_record(contact, record, observed_at=now)
        changed |= identity.mark_synced(contact, now)
        await db.commit()

    await segment_svc.refresh_affected(
        db, identity.ALL_TRACKED_FIELDS if created else changed
    )

    logger.info(
        "Contact ingested",
        extra={"contact_id": str(contact.id), "channel": channel, "created": created},
    )
    return contact, created


async def restore_contact(db: AsyncSession, contact_id: uuid.UUID) -> Contact | None:
    """Bring an archived contact back into the active set. Its decision stays as history."""
    contact = await get_contact(db, contact_id)
    if contact is None:
        return None
    if contact.status == STATUS_ARCHIVED or contact.removed_upstream:
        contact.status = STATUS_ACTIVE
        contact.removed_upstream = False
        contact.removed_upstream_at = None
        await db.commit()
        await segment_svc.refresh_affected(db, {"status", "removed_upstream"})
        logger.info("Contact restored", extra={"contact_id": str(contact.id)})
    return contact


async def list_suppression_set(db: AsyncSession, tag: str) -> list[Contact]:
    """Active contacts whose protection tags include ``tag``."""
    stmt = (
        select(Contact)
        .join(ContactProtectionTag, ContactProtectionTag.contact_id == Contact.id)
        .where(ContactProtectionTag.tag == tag, Contact.status == STATUS_ACTIVE)
        .order_by(Contact.created_at)
    )
    return list((await db.execute(stmt)).scalars().all())
