"""Identity resolution: per-record upsert and the secondary dedup passes.

The primary path keys every upstream record on its ``external_id`` so re-syncs
update in place. The secondary passes collapse records that still ended up
sharing an identity, using one tie-break everywhere: newest ``last_synced_at``
wins, then earliest ``created_at``.

Records with different ``external_id`` values are never merged, even when
they share an email address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateConflict
from ..locks import dedup_pass_lock, email_group_key, email_group_locks
from ..models.base import as_utc, utcnow
from ..models.contact import (
    CHANNEL_BULK_API,
    CHANNEL_WEBHOOK,
    DNC_DNC,
    STATUS_ACTIVE,
    Contact,
    email_key,
)
from .field_mapper import CANONICAL_FIELDS, NormalizedContact

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = ("lifecycle_stage", "dnc_status")

# Bookkeeping fields: they move on every sync without the profile changing.
SYNC_FIELDS = frozenset({"last_synced_at"})

# Every field a fresh insert counts as changed.
ALL_TRACKED_FIELDS = frozenset(
    set(CANONICAL_FIELDS)
    | set(_SCALAR_FIELDS)
    | {"campaign_types", "custom_fields", "protection_tags", "status", "removed_upstream", "channel"}
    | {"dnc_reason", "dnc_date"}
    | SYNC_FIELDS
)


@dataclass
class UpsertResult:
    contact: Contact
    created: bool = False
    changed_fields: set[str] = field(default_factory=set)
    # Active duplicates were found and left for the dedup pass.
    duplicates_deferred: bool = False

    @property
    def profile_changed(self) -> bool:
        return bool(self.changed_fields - SYNC_FIELDS)


@dataclass
class DedupResult:
    by_external_id: int = 0
    by_email: int = 0
    untouched_groups: int = 0

    @property
    def removed(self) -> int:
        return self.by_external_id + self.by_email


def _ts(value: datetime | None) -> float:
    value = as_utc(value)
    return value.timestamp() if value else float("-inf")


def pick_survivor(records: Sequence[Contact]) -> Contact:
    """Latest last_synced_at wins; ties go to the earliest created_at."""
    if not records:
        raise ValueError("pick_survivor needs at least one record")
    return sorted(
        records,
        key=lambda c: (-_ts(c.last_synced_at), _ts(c.created_at), str(c.id)),
    )[0]


async def find_by_external_id(db: AsyncSession, external_id: str) -> list[Contact]:
    """All local records (active or archived) for one upstream id."""
    stmt = (
        select(Contact)
        .where(Contact.external_id == external_id)
        .order_by(Contact.created_at)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(stmt)).scalars().all())


async def _collapse(db: AsyncSession, records: Sequence[Contact]) -> tuple[Contact, int]:
    survivor = pick_survivor(records)
    removed = 0
    for record in records:
        if record.id == survivor.id:
            continue
        logger.info(
            "Removing duplicate contact",
            extra={"contact_id": str(record.id), "survivor_id": str(survivor.id)},
        )
        await db.delete(record)
        removed += 1
    await db.flush()
    return survivor, removed


def _pick_target(matches: Sequence[Contact]) -> Contact | None:
    active = [c for c in matches if c.status == STATUS_ACTIVE]
    if len(active) > 1:
        raise DuplicateConflict(
            f"{len(active)} active records share external_id {active[0].external_id!r}"
        )
    if active:
        return active[0]
    if matches:
        return pick_survivor(matches)
    return None


def _dnc_details(
    contact: Contact, record: NormalizedContact, observed_at: datetime | None
) -> tuple[str | None, datetime | None]:
    if record.dnc_status != DNC_DNC:
        return None, None
    # Without an upstream date, keep the first time we saw the flag.
    return record.dnc_reason, record.dnc_date or as_utc(contact.dnc_date) or observed_at


def apply_record(
    contact: Contact, record: NormalizedContact, observed_at: datetime | None = None
) -> set[str]:
    changed: set[str] = set()

    for name in CANONICAL_FIELDS:
        value = record.fields.get(name, "")
        if getattr(contact, name) != value:
            setattr(contact, name, value)
            changed.add(name)

    for name in _SCALAR_FIELDS:
        value = getattr(record, name)
        if getattr(contact, name) != value:
            setattr(contact, name, value)
            changed.add(name)

    dnc_reason, dnc_date = _dnc_details(contact, record, observed_at)
    if contact.dnc_reason != dnc_reason:
        contact.dnc_reason = dnc_reason
        changed.add("dnc_reason")
    if as_utc(contact.dnc_date) != as_utc(dnc_date):
        contact.dnc_date = dnc_date
        changed.add("dnc_date")

    campaign_types = list(record.campaign_types)
    if list(contact.campaign_types or []) != campaign_types:
        contact.campaign_types = campaign_types
        changed.add("campaign_types")

    if dict(contact.custom_fields or {}) != record.custom_fields:
        contact.custom_fields = dict(record.custom_fields)
        changed.add("custom_fields")

    if contact.set_protection_tags(record.protection_tags):
        changed.add("protection_tags")

    issues = [dict(i) for i in record.validation_issues]
    if list(contact.validation_issues or []) != issues:
        contact.validation_issues = issues

    if record.upstream_updated_at is not None:
        contact.upstream_updated_at = record.upstream_updated_at

    return changed


def mark_synced(contact: Contact, synced_at: datetime) -> set[str]:
    """Stamp ``last_synced_at``. Returns ``{"last_synced_at"}`` when it moved."""
    if as_utc(contact.last_synced_at) == as_utc(synced_at):
        return set()
    contact.last_synced_at = synced_at
    return set(SYNC_FIELDS)


def _reactivate(contact: Contact) -> set[str]:
    changed: set[str] = set()
    if contact.status != STATUS_ACTIVE:
        contact.status = STATUS_ACTIVE
        changed.add("status")
    if contact.removed_upstream:
        contact.removed_upstream = False
        contact.removed_upstream_at = None
        changed.add("removed_upstream")
    if changed:
        logger.info(
            "Reactivating contact seen upstream again",
            extra={"contact_id": str(contact.id), "external_id": contact.external_id},
        )
    return changed


async def upsert_contact(
    db: AsyncSession,
    record: NormalizedContact,
    *,
    channel: str = CHANNEL_BULK_API,
    synced_at: datetime | None = None,
    collapse_duplicates: bool = False,
) -> UpsertResult:
    """Insert or update the local record for an upstream id.

    Active duplicates of the id are only deleted with ``collapse_duplicates``,
    which the caller may set only while holding the email-group locks of
    every match. Otherwise the survivor is updated and the duplicates are left
    for the dedup pass.

    Flushes but does not commit; the caller owns the transaction.
    """
    if not record.external_id:
        raise ValueError("upsert_contact requires an external_id")

    synced_at = synced_at or utcnow()
    matches = await find_by_external_id(db, record.external_id)
    deferred = False
    try:
        target = _pick_target(matches)
    except DuplicateConflict as exc:
        active = [c for c in matches if c.status == STATUS_ACTIVE]
        if collapse_duplicates:
            logger.info("Resolving duplicate on upsert: %s", exc)
            target, _ = await _collapse(db, active)
        else:
            logger.info("Duplicate left for the dedup pass: %s", exc)
            target = pick_survivor(active)
            deferred = True

    if target is None:
        contact = Contact(external_id=record.external_id, channel=channel, email="")
        db.add(contact)
        apply_record(contact, record, observed_at=synced_at)
        contact.last_synced_at = synced_at
        await db.flush()
        return UpsertResult(contact=contact, created=True, changed_fields=set(ALL_TRACKED_FIELDS))

    changed = apply_record(target, record, observed_at=synced_at)
    changed |= _reactivate(target)
    changed |= mark_synced(target, synced_at)
    await db.flush()
    return UpsertResult(
        contact=target, created=False, changed_fields=changed, duplicates_deferred=deferred
    )


async def locked_upsert(
    db: AsyncSession,
    record: NormalizedContact,
    *,
    channel: str = CHANNEL_WEBHOOK,
    synced_at: datetime | None = None,
) -> UpsertResult:
    """Upsert and commit while holding the email-group locks the dedup pass uses."""
    if not record.external_id:
        raise ValueError("locked_upsert requires an external_id")

    existing = await find_by_external_id(db, record.external_id)
    keys = {email_group_key(email_key(record.email))}
    keys.update(email_group_key(c.email_key) for c in existing)

    async with email_group_locks.hold(*keys):
        try:
            result = await upsert_contact(
                db, record, channel=channel, synced_at=synced_at, collapse_duplicates=True
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return result


async def _active_members(db: AsyncSession, *conditions) -> list[Contact]:
    stmt = (
        select(Contact)
        .where(Contact.status == STATUS_ACTIVE, *conditions)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(stmt)).scalars().all())


async def dedup_external_id_groups(db: AsyncSession) -> int:
    """Collapse active records sharing an upstream id. Returns rows removed."""
    stmt = (
        select(Contact.external_id)
        .where(Contact.status == STATUS_ACTIVE, Contact.external_id.is_not(None))
        .group_by(Contact.external_id)
        .having(func.count(Contact.id) > 1)
    )
    external_ids = list((await db.execute(stmt)).scalars().all())

    removed = 0
    for external_id in external_ids:
        members = await _active_members(db, Contact.external_id == external_id)
        keys = [email_group_key(m.email_key) for m in members]
        async with email_group_locks.hold(*keys):
            # Re-read inside the lock; a webhook write may have landed meanwhile.
            members = await _active_members(db, Contact.external_id == external_id)
            if len(members) > 1:
                _, count = await _collapse(db, members)
                removed += count
            await db.commit()
    return removed


def _collapsible(members: Iterable[Contact]) -> bool:
    external_ids = {m.external_id for m in members}
    return len(external_ids) == 1 and None not in external_ids


async def dedup_email_groups(db: AsyncSession) -> tuple[int, int]:
    """Collapse email groups whose members all carry one and the same upstream id.

    Returns (rows removed, groups left untouched).
    """
    stmt = (
        select(Contact.email_key)
        .where(Contact.status == STATUS_ACTIVE, Contact.email_key.is_not(None))
        .group_by(Contact.email_key)
        .having(func.count(Contact.id) > 1)
    )
    keys = list((await db.execute(stmt)).scalars().all())

    removed = 0
    untouched = 0
    for key in keys:
        async with email_group_locks.hold(email_group_key(key)):
            members = await _active_members(db, Contact.email_key == key)
            if len(members) < 2:
                continue
            if not _collapsible(members):
                untouched += 1
                logger.info(
                    "Email group left untouched: distinct or missing external ids",
                    extra={"email_key": key, "members": len(members)},
                )
                continue
            _, count = await _collapse(db, members)
            removed += count
            await db.commit()
    return removed, untouched


async def run_dedup_pass(db: AsyncSession, *, email_groups: bool = True) -> DedupResult:
    """Secondary pass for bulk runs. Only one pass runs at a time.

    With ``email_groups=False`` only records sharing an upstream id are collapsed.
    """
    async with dedup_pass_lock:
        result = DedupResult()
        result.by_external_id = await dedup_external_id_groups(db)
        if email_groups:
            result.by_email, result.untouched_groups = await dedup_email_groups(db)
    logger.info(
        "Dedup pass finished",
        extra={
            "by_external_id": result.by_external_id,
            "by_email": result.by_email,
            "untouched_groups": result.untouched_groups,
        },
    )
    return result
