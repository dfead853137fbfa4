"""Segment schemas."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class SegmentCreate(BaseModel):
    name: str
    description: str | None = None
    predicate: dict


class SegmentResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None = None
    predicate: dict
    dependencies: list[str] = []
    is_system: bool = False
    contact_count: int = 0
    count_computed_at: datetime | None = None

    model_config = {"from_attributes": True}


class SegmentRefreshResponse(BaseModel):
    refreshed: int = 0


class SegmentUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    predicate: dict | None = None


class SegmentDuplicate(BaseModel):
    # Defaults to "<name> (Copy)".
    name: str | None = None
