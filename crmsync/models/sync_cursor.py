"""Persisted pagination checkpoint, one row per upstream source."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin


class SyncCursor(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "sync_cursor"

    source: Mapped[str] = mapped_column(String(50), unique=True, index=True)

    # Opaque upstream token; None means "start from the beginning".
    position: Mapped[str | None] = mapped_column(String(255), default=None)
    status: Mapped[str] = mapped_column(
        String(20), default="idle"
    )  # idle/running/completed/halted/cancelled/failed

    page_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    last_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    # Single active run per source
    lease_owner: Mapped[str | None] = mapped_column(String(64), default=None)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    def __repr__(self) -> str:
        return f"<SyncCursor {self.source} {self.status} at={self.position!r}>"
