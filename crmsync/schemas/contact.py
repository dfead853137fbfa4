"""Contact schemas."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class ContactCreate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    job_title: str | None = None
    company: str | None = None
    website: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    lead_source: str | None = None
    contact_type: str | None = None
    lifecyclestage: str | None = None
    do_not_call: bool = False
    protection_tags: list[str] = []


class ContactResponse(BaseModel):
    id: uuid.UUID
    external_id: str | None = None
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    company: str = ""
    channel: str
    lifecycle_stage: str
    dnc_status: str
    dnc_reason: str | None = None
    dnc_date: datetime | None = None
    status: str
    removed_upstream: bool = False
    removed_upstream_at: datetime | None = None
    retention_decision: str | None = None
    protection_tags: list[str] = []
    last_synced_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class SuppressionEntry(BaseModel):
    id: uuid.UUID
    external_id: str | None = None
    email: str = ""
    phone: str = ""

    model_config = {"from_attributes": True}


class SuppressionSetResponse(BaseModel):
    tag: str
    count: int = 0
    contacts: list[SuppressionEntry] = []
