"""Durable queue of upstream change notifications."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin

EVENT_CREATE = "create"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"
EVENT_TYPES = (EVENT_CREATE, EVENT_UPDATE, EVENT_DELETE)

OPEN_STATUSES = ("pending", "retrying", "running")


class WebhookEvent(UUIDMixin, TimestampMixin, Base):
    """Queue item for one change notification."""

    __tablename__ = "webhook_event"
    __table_args__ = (
        Index("ix_webhook_event_object_order", "object_id", "received_at", "batch_index"),
    )

    object_id: Mapped[str] = mapped_column(String(100), index=True)
    event_type: Mapped[str] = mapped_column(String(20))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    payload: Mapped[dict | None] = mapped_column(JSON, default=None)

    # Arrival order: received_at, then position inside the delivered batch.
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    batch_index: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(
        String(20), default="pending", index=True
    )  # pending/running/applied/skipped/failed/retrying
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None, nullable=True
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_type} {self.object_id} {self.status}>"
