"""History of bulk sync runs and their exact counts."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin


class SyncRun(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "sync_run"

    source: Mapped[str] = mapped_column(String(50), index=True)
    status: Mapped[str] = mapped_column(
        String(20), default="running"
    )  # running/completed/halted/cancelled/failed

    fetched: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    gapped: Mapped[int] = mapped_column(Integer, default=0)
    errored: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    deduplicated: Mapped[int] = mapped_column(Integer, default=0)
    pages: Mapped[int] = mapped_column(Integer, default=0)

    start_cursor: Mapped[str | None] = mapped_column(String(255), default=None)
    final_cursor: Mapped[str | None] = mapped_column(String(255), default=None)
    gaps: Mapped[list] = mapped_column(JSON, default=list)
    halt_reason: Mapped[str | None] = mapped_column(Text, default=None)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    def __repr__(self) -> str:
        return f"<SyncRun {self.source} {self.status} fetched={self.fetched} gapped={self.gapped}>"
