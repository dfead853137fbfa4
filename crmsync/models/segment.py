"""Saved contact filter with a cached, eventually-consistent count."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin


class Segment(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "segment"

    name: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    predicate: Mapped[dict] = mapped_column(JSON, default=dict)
    # Canonical fields whose change invalidates the cached count.
    dependencies: Mapped[list] = mapped_column(JSON, default=list)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)

    contact_count: Mapped[int] = mapped_column(Integer, default=0)
    count_computed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    def __repr__(self) -> str:
        return f"<Segment {self.name!r} count={self.contact_count}>"
