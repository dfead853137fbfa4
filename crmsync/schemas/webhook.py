"""Webhook event schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class WebhookEnvelope(BaseModel):
    object_id: str
    event_type: Literal["create", "update", "delete"]
    occurred_at: datetime


class WebhookBatchResult(BaseModel):
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    # "<event_type>:<object_id>@<occurred_at>" identities, kept for replay.
    failed_events: list[str] = []

    @property
    def processed(self) -> int:
        return self.applied + self.skipped + self.failed


class WebhookEventResponse(BaseModel):
    id: uuid.UUID
    object_id: str
    event_type: str
    occurred_at: datetime
    received_at: datetime
    status: str
    attempts: int = 0
    max_attempts: int = 3
    error_message: str | None = None
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}


class ReplayRequest(BaseModel):
    # Empty means every failed event.
    event_ids: list[uuid.UUID] = []
