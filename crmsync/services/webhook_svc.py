"""Webhook event processing - translate, re-fetch, upsert or retain.

Events only carry ids, so create/update events re-fetch the full record from
upstream before upserting. Delete events go to the retention engine. Every
path is an upsert or a one-time decision, so replaying an event converges on
the same end state. Batch bookkeeping and per-event isolation live in the
queue worker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..locks import email_group_key, email_group_locks
from ..models.base import utcnow
from ..models.contact import CHANNEL_WEBHOOK
from ..models.webhook_event import EVENT_CREATE, EVENT_DELETE, EVENT_UPDATE
from ..schemas.webhook import WebhookEnvelope
from ..sync import identity, retention
from ..sync.field_mapper import build_property_list, normalize_contact
from ..upstream.client import UpstreamClient

logger = logging.getLogger(__name__)

CONTACT_SUBSCRIPTION_PREFIX = "contact."

SUBSCRIPTION_EVENT_TYPES = {
    "contact.creation": EVENT_CREATE,
    "contact.propertyChange": EVENT_UPDATE,
    "contact.restore": EVENT_UPDATE,
    "contact.merge": EVENT_UPDATE,
    "contact.associationChange": EVENT_UPDATE,
    "contact.deletion": EVENT_DELETE,
    "contact.privacyDeletion": EVENT_DELETE,
}

OUTCOME_APPLIED = "applied"
OUTCOME_SKIPPED = "skipped"


@dataclass
class EventOutcome:
    outcome: str
    changed_fields: set[str] = field(default_factory=set)


def _occurred_at(value: Any) -> datetime | str:
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value.strip().isdigit():
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    return value


def parse_events(payload: Any) -> list[tuple[WebhookEnvelope, dict]]:
    """Translate a delivered body into (envelope, raw item) pairs, keeping delivery order.

    Accepts upstream wire events (``subscriptionType``/``objectId``/``occurredAt``
    in epoch ms) or the internal ``{object_id, event_type, occurred_at}`` form.
    Wire events for other object types (``company.*``, ``deal.*``) are dropped.
    Raises ValueError for anything malformed.
    """
    items = payload if isinstance(payload, list) else [payload]
    events: list[tuple[WebhookEnvelope, dict]] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"Event {index} is not an object")
        if "subscriptionType" in item or "objectId" in item:
            subscription = str(item.get("subscriptionType") or "")
            if subscription and not subscription.startswith(CONTACT_SUBSCRIPTION_PREFIX):
                logger.info(
                    "Ignoring non-contact webhook event",
                    extra={"subscription_type": subscription, "object_id": item.get("objectId")},
                )
                continue
            event_type = SUBSCRIPTION_EVENT_TYPES.get(subscription, EVENT_UPDATE)
            object_id = item.get("objectId")
            occurred_at = item.get("occurredAt")
        else:
            event_type = item.get("event_type")
            object_id = item.get("object_id")
            occurred_at = item.get("occurred_at")
        if object_id is None or str(object_id).strip() == "":
            raise ValueError(f"Event {index} has no object id")
        try:
            envelope = WebhookEnvelope(
                object_id=str(object_id).strip(),
                event_type=event_type,
                occurred_at=_occurred_at(occurred_at),
            )
        except PydanticValidationError as exc:
            raise ValueError(f"Event {index} is malformed: {exc.errors()[0]['msg']}") from exc
        events.append((envelope, item))
    return events


def parse_envelopes(payload: Any) -> list[WebhookEnvelope]:
    return [envelope for envelope, _ in parse_events(payload)]


def event_identity(envelope: WebhookEnvelope) -> str:
    return f"{envelope.event_type}:{envelope.object_id}@{envelope.occurred_at.isoformat()}"


async def _apply_delete(db: AsyncSession, envelope: WebhookEnvelope) -> EventOutcome:
    existing = await identity.find_by_external_id(db, envelope.object_id)
    keys = [email_group_key(c.email_key) for c in existing]
    async with email_group_locks.hold(*keys):
        try:
            outcomes = await retention.apply_deletion(db, envelope.object_id, envelope.occurred_at)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    if any(o.applied for o in outcomes):
        return EventOutcome(OUTCOME_APPLIED, {"status", "removed_upstream", "retention_decision"})
    return EventOutcome(OUTCOME_SKIPPED)


async def apply_event(
    db: AsyncSession,
    client: UpstreamClient,
    envelope: WebhookEnvelope,
    properties: Sequence[str] | None = None,
) -> EventOutcome:
    """Apply one event. Errors propagate so the caller can isolate them."""
    if envelope.event_type == EVENT_DELETE:
        return await _apply_delete(db, envelope)

    # Fetch before taking any lock.
    raw = await client.get_contact(
        envelope.object_id, properties or build_property_list(settings.extra_properties_list)
    )
    if raw is None:
        logger.info(
            "Upstream record gone before re-fetch, event skipped",
            extra={"object_id": envelope.object_id, "event_type": envelope.event_type},
        )
        return EventOutcome(OUTCOME_SKIPPED)

    record = normalize_contact(raw)
    if record.external_id != envelope.object_id:
        record = replace(record, external_id=envelope.object_id)

    result = await identity.locked_upsert(db, record, channel=CHANNEL_WEBHOOK, synced_at=utcnow())
    return EventOutcome(OUTCOME_APPLIED, result.changed_fields)
