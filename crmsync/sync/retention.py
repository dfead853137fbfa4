"""Asymmetric retention for upstream deletions.

A protected contact (any protection tag) stays active and is only annotated as
removed upstream, so suppression lists keep seeing it. An unprotected contact
is archived. Neither path deletes rows. The decision and the tag snapshot it
was based on are stored once and never recomputed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.base import utcnow
from ..models.contact import (
    RETENTION_ARCHIVED,
    RETENTION_PRESERVED,
    STATUS_ARCHIVED,
    Contact,
)
from .identity import find_by_external_id

logger = logging.getLogger(__name__)


@dataclass
class RetentionOutcome:
    contact_id: uuid.UUID
    decision: str
    applied: bool
    protection_tags: list[str]


def already_decided(contact: Contact) -> bool:
    """A stored decision stands while the contact is still in its removed state."""
    if not contact.retention_decision:
        return False
    return contact.removed_upstream or contact.status == STATUS_ARCHIVED


def decide(contact: Contact, occurred_at: datetime) -> str:
    tags = sorted(contact.protection_tags)
    contact.protection_tags_at_removal = tags
    if tags:
        contact.removed_upstream = True
        contact.removed_upstream_at = occurred_at
        contact.retention_decision = RETENTION_PRESERVED
    else:
        contact.status = STATUS_ARCHIVED
        contact.removed_upstream = True
        contact.removed_upstream_at = occurred_at
        contact.retention_decision = RETENTION_ARCHIVED
    return contact.retention_decision


async def apply_deletion(
    db: AsyncSession,
    external_id: str,
    occurred_at: datetime | None = None,
) -> list[RetentionOutcome]:
    """Apply an upstream deletion signal. Flushes; the caller commits.

    Returns one outcome per local record carrying ``external_id``. An empty
    list means the delete arrived before any create or update was applied.
    """
    occurred_at = occurred_at or utcnow()
    contacts = await find_by_external_id(db, external_id)
    if not contacts:
        logger.info(
            "Deletion for unknown contact ignored",
            extra={"external_id": external_id, "occurred_at": occurred_at.isoformat()},
        )
        return []

    outcomes: list[RetentionOutcome] = []
    for contact in contacts:
        if already_decided(contact):
            outcomes.append(
                RetentionOutcome(
                    contact_id=contact.id,
                    decision=contact.retention_decision,
                    applied=False,
                    protection_tags=list(contact.protection_tags_at_removal or []),
                )
            )
            continue

        decision = decide(contact, occurred_at)
        logger.info(
            "Upstream deletion applied: %s",
            decision,
            extra={"contact_id": str(contact.id), "external_id": external_id},
        )
        outcomes.append(
            RetentionOutcome(
                contact_id=contact.id,
                decision=decision,
                applied=True,
                protection_tags=list(contact.protection_tags_at_removal or []),
            )
        )

    await db.flush()
    return outcomes
