"""Segment service - predicate compilation and cached count maintenance.

Predicates are JSON trees:

    {"all": [{"field": "dnc_status", "op": "eq", "value": "dnc"},
             {"any": [...]}]}

Each segment stores the canonical fields its predicate reads. After a write,
``refresh_affected`` recomputes only the segments whose dependencies
intersect the fields that changed. Counts are advisory.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import String, and_, cast, false, func, not_, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from ..models.base import as_utc, utcnow
from ..models.contact import STATUS_ACTIVE, Contact, ContactProtectionTag
from ..models.segment import Segment

logger = logging.getLogger(__name__)

SCALAR_FIELDS = frozenset({
    "external_id", "email", "channel", "status",
    "first_name", "last_name", "phone", "job_title", "linkedin_url",
    "company", "website", "industry", "naics_code", "employee_count",
    "address", "city", "state", "zip_code", "lead_source", "contact_type",
    "lifecycle_stage", "dnc_status", "dnc_reason", "dnc_date",
    "removed_upstream", "retention_decision", "last_synced_at", "created_at",
})
DATETIME_FIELDS = frozenset({"last_synced_at", "created_at", "dnc_date"})
SET_FIELDS = frozenset({"protection_tags", "campaign_types"})
OPS = frozenset({"eq", "ne", "in", "not_in", "contains", "exists", "gte", "lte"})

DEFAULT_SEGMENTS: list[dict[str, Any]] = [
    {
        "name": "All Contacts",
        "description": "Every active contact",
        "predicate": {"all": []},
    },
    {
        "name": "DNC",
        "description": "Active contacts flagged do-not-call upstream",
        "predicate": {"field": "dnc_status", "op": "eq", "value": "dnc"},
    },
    {
        "name": "Callable",
        "description": "Active contacts that may be called",
        "predicate": {"field": "dnc_status", "op": "eq", "value": "callable"},
    },
    {
        "name": "Customers",
        "predicate": {"field": "lifecycle_stage", "op": "eq", "value": "customer"},
    },
    {
        "name": "Prospects",
        "predicate": {"field": "lifecycle_stage", "op": "eq", "value": "prospect"},
    },
    {
        "name": "Removed Upstream",
        "description": "Protected contacts kept after an upstream deletion",
        "predicate": {"field": "removed_upstream", "op": "eq", "value": True},
    },
]


def _leaf_fields(predicate: dict) -> Iterable[str]:
    if "all" in predicate or "any" in predicate:
        for child in predicate.get("all", predicate.get("any")) or []:
            yield from _leaf_fields(child)
    elif "not" in predicate:
        yield from _leaf_fields(predicate["not"])
    else:
        yield predicate.get("field")


def predicate_dependencies(predicate: dict) -> list[str]:
    """Canonical fields a predicate reads, always including ``status``."""
    validate_predicate(predicate)
    return sorted(set(_leaf_fields(predicate)) | {"status"})


def validate_predicate(predicate: Any) -> None:
    if not isinstance(predicate, dict):
        raise ValueError("Predicate must be an object")
    if "all" in predicate or "any" in predicate:
        children = predicate.get("all", predicate.get("any"))
        if not isinstance(children, list):
            raise ValueError("'all'/'any' must hold a list")
        for child in children:
            validate_predicate(child)
        return
    if "not" in predicate:
        validate_predicate(predicate["not"])
        return

    field = predicate.get("field")
    op = predicate.get("op")
    if field not in SCALAR_FIELDS and field not in SET_FIELDS:
        raise ValueError(f"Unknown field {field!r}")
    if op not in OPS:
        raise ValueError(f"Unknown op {op!r}")
    if field in SET_FIELDS and op not in {"contains", "exists"}:
        raise ValueError(f"Field {field!r} only supports 'contains' and 'exists'")
    if field in SCALAR_FIELDS and op == "contains":
        raise ValueError(f"'contains' is only valid for {sorted(SET_FIELDS)}")
    if op in {"in", "not_in"} and not isinstance(predicate.get("value"), list):
        raise ValueError(f"'{op}' needs a list value")
    if field in DATETIME_FIELDS:
        _comparable(field, op, predicate.get("value"))


def _parse_datetime(field: str, value: Any) -> datetime:
    """ISO-8601 text (``Z`` suffix allowed) to an aware UTC datetime."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"{field!r} needs an ISO-8601 timestamp, got {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        raise ValueError(f"{field!r} needs an ISO-8601 timestamp, got {value!r}") from None


def _comparable(field: str, op: str, value: Any) -> Any:
    # Timestamp columns compare against datetimes, never raw strings.
    if field not in DATETIME_FIELDS or op == "exists" or value is None:
        return value
    if op in {"in", "not_in"}:
        return [None if v is None else _parse_datetime(field, v) for v in value]
    return _parse_datetime(field, value)


def _set_clause(field: str, op: str, value: Any) -> ColumnElement:
    if field == "protection_tags":
        sub = select(ContactProtectionTag.contact_id).where(
            ContactProtectionTag.contact_id == Contact.id
        )
        if op == "contains":
            sub = sub.where(ContactProtectionTag.tag == value)
        clause = sub.exists()
        if op == "exists" and value is False:
            return not_(clause)
        return clause

    # campaign_types is a JSON list; match the serialized element.
    text = cast(Contact.campaign_types, String)
    if op == "contains":
        return text.like(f'%"{value}"%')
    has_any = text.like('%"%')
    if value is False:
        return or_(Contact.campaign_types.is_(None), not_(has_any))
    return has_any


def _scalar_clause(field: str, op: str, value: Any) -> ColumnElement:
    column = getattr(Contact, field)
    value = _comparable(field, op, value)
    if op == "eq":
        return column.is_(None) if value is None else column == value
    if op == "ne":
        return column.is_not(None) if value is None else or_(column != value, column.is_(None))
    if op == "in":
        return column.in_(value)
    if op == "not_in":
        return or_(column.not_in(value), column.is_(None))
    if op == "gte":
        return column >= value
    if op == "lte":
        return column <= value
    # exists
    present = and_(column.is_not(None), cast(column, String) != "")
    return not_(present) if value is False else present


def compile_predicate(predicate: dict) -> ColumnElement:
    """Compile a predicate tree into a SQLAlchemy boolean expression."""
    if "all" in predicate:
        children = [compile_predicate(c) for c in predicate["all"]]
        return and_(true(), *children)
    if "any" in predicate:
        children = [compile_predicate(c) for c in predicate["any"]]
        return or_(false(), *children)
    if "not" in predicate:
        return not_(compile_predicate(predicate["not"]))

    field = predicate["field"]
    op = predicate["op"]
    value = predicate.get("value")
    if field in SET_FIELDS:
        return _set_clause(field, op, value)
    return _scalar_clause(field, op, value)


def segment_filter(predicate: dict) -> ColumnElement:
    """Predicate plus the default active-only scope unless it filters on status."""
    validate_predicate(predicate)
    clause = compile_predicate(predicate)
    if "status" not in set(_leaf_fields(predicate)):
        clause = and_(Contact.status == STATUS_ACTIVE, clause)
    return clause


async def count_matching(db: AsyncSession, predicate: dict) -> int:
    stmt = select(func.count(Contact.id)).where(segment_filter(predicate))
    return (await db.execute(stmt)).scalar_one()


async def list_segments(db: AsyncSession) -> list[Segment]:
    result = await db.execute(select(Segment).order_by(Segment.is_system.desc(), Segment.name))
    return list(result.scalars().all())


async def get_segment_by_name(db: AsyncSession, name: str) -> Segment | None:
    result = await db.execute(select(Segment).where(Segment.name == name))
    return result.scalar_one_or_none()


async def refresh_segment(db: AsyncSession, segment: Segment) -> Segment:
    segment.contact_count = await count_matching(db, segment.predicate)
    segment.count_computed_at = utcnow()
    return segment


async def create_segment(
    db: AsyncSession,
    name: str,
    predicate: dict,
    description: str | None = None,
    is_system: bool = False,
) -> Segment:
    """Define a segment. Raises ValueError for malformed predicates or duplicate names."""
    dependencies = predicate_dependencies(predicate)
    if await get_segment_by_name(db, name) is not None:
        raise ValueError(f"Segment {name!r} already exists")
    segment = Segment(
        name=name,
        description=description,
        predicate=predicate,
        dependencies=dependencies,
        is_system=is_system,
    )
    db.add(segment)
    await refresh_segment(db, segment)
    await db.commit()
    await db.refresh(segment)
    return segment


async def get_segment(db: AsyncSession, segment_id: uuid.UUID) -> Segment | None:
    result = await db.execute(select(Segment).where(Segment.id == segment_id))
    return result.scalar_one_or_none()


def _require_editable(segment: Segment) -> None:
    if segment.is_system:
        raise ValueError(f"System segment {segment.name!r} is read-only")


async def update_segment(
    db: AsyncSession,
    segment: Segment,
    *,
    name: str | None = None,
    description: str | None = None,
    predicate: dict | None = None,
) -> Segment:
    """Rename, redescribe or re-filter a user segment. A new predicate is recounted."""
    _require_editable(segment)
    if name is not None and name != segment.name:
        if await get_segment_by_name(db, name) is not None:
            raise ValueError(f"Segment {name!r} already exists")
        segment.name = name
    if description is not None:
        segment.description = description
    if predicate is not None:
        segment.dependencies = predicate_dependencies(predicate)
        segment.predicate = predicate
        await refresh_segment(db, segment)
    await db.commit()
    await db.refresh(segment)
    logger.info("Segment updated", extra={"segment": segment.name})
    return segment


async def delete_segment(db: AsyncSession, segment: Segment) -> None:
    _require_editable(segment)
    await db.delete(segment)
    await db.commit()
    logger.info("Segment deleted", extra={"segment": segment.name})


async def duplicate_segment(db: AsyncSession, segment: Segment, name: str | None = None) -> Segment:
    """Copy a segment's predicate under a new name. Copies are never system segments."""
    if name is None:
        name = f"{segment.name} (Copy)"
        n = 2
        while await get_segment_by_name(db, name) is not None:
            name = f"{segment.name} (Copy {n})"
            n += 1
    return await create_segment(
        db, name, dict(segment.predicate), description=segment.description
    )


async def list_segment_contacts(
    db: AsyncSession, segment: Segment, *, offset: int = 0, limit: int = 50
) -> tuple[list[Contact], int]:
    """Contacts currently matching the segment, newest first. Returns (contacts, total)."""
    clause = segment_filter(segment.predicate)
    total = (await db.execute(select(func.count(Contact.id)).where(clause))).scalar_one()
    stmt = select(Contact).where(clause).order_by(Contact.created_at.desc()).offset(offset).limit(limit)
    contacts = list((await db.execute(stmt)).scalars().all())
    return contacts, total


async def refresh_all(db: AsyncSession) -> int:
    segments = await list_segments(db)
    for segment in segments:
        await refresh_segment(db, segment)
    await db.commit()
    return len(segments)


async def refresh_affected(db: AsyncSession, changed_fields: Iterable[str]) -> list[str]:
    """Recompute counts for segments depending on any changed field. Commits."""
    changed = set(changed_fields)
    if not changed:
        return []
    refreshed: list[str] = []
    for segment in await list_segments(db):
        if changed.intersection(segment.dependencies or []):
            await refresh_segment(db, segment)
            refreshed.append(segment.name)
    if refreshed:
        await db.commit()
        logger.info(
            "Segment counts refreshed",
            extra={"segments": refreshed, "changed_fields": sorted(changed)},
        )
    return refreshed


async def ensure_default_segments(db: AsyncSession) -> int:
    """Seed the system segments that do not exist yet. Returns how many were added."""
    created = 0
    for definition in DEFAULT_SEGMENTS:
        if await get_segment_by_name(db, definition["name"]) is not None:
            continue
        await create_segment(
            db,
            definition["name"],
            definition["predicate"],
            description=definition.get("description"),
            is_system=True,
        )
        created += 1
    return created
