"""Contact model and its protection-tag join rows."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import Base, TimestampMixin, UUIDMixin

CHANNEL_BULK_API = "bulk-api"
CHANNEL_WEBHOOK = "webhook"
CHANNEL_FILE_IMPORT = "file-import"
CHANNEL_MANUAL = "manual"
CHANNELS = (CHANNEL_BULK_API, CHANNEL_WEBHOOK, CHANNEL_FILE_IMPORT, CHANNEL_MANUAL)

STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"

DNC_CALLABLE = "callable"
DNC_DNC = "dnc"

RETENTION_ARCHIVED = "archived"
RETENTION_PRESERVED = "preserved"


def email_key(email: str | None) -> str | None:
    """Normalized grouping key for an email address."""
    if not email:
        return None
    key = email.strip().lower()
    return key or None


class ContactProtectionTag(Base):
    """One outreach-category label protecting a contact from archival."""

    __tablename__ = "contact_protection_tag"

    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contact.id", ondelete="CASCADE"), primary_key=True
    )
    tag: Mapped[str] = mapped_column(String(100), primary_key=True, index=True)

    contact: Mapped["Contact"] = relationship(back_populates="protection_tag_rows")


class Contact(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "contact"
    __table_args__ = (
        Index("ix_contact_channel_external_id", "channel", "external_id"),
        Index("ix_contact_status_email_key", "status", "email_key"),
    )

    # Identity
    external_id: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    email: Mapped[str] = mapped_column(String(255), default="")
    email_key: Mapped[str | None] = mapped_column(String(255), default=None, index=True)
    channel: Mapped[str] = mapped_column(String(20), default=CHANNEL_BULK_API, index=True)

    # Canonical profile
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    phone: Mapped[str] = mapped_column(String(50), default="")
    job_title: Mapped[str] = mapped_column(String(200), default="")
    linkedin_url: Mapped[str] = mapped_column(String(500), default="")
    company: Mapped[str] = mapped_column(String(200), default="")
    website: Mapped[str] = mapped_column(String(500), default="")
    industry: Mapped[str] = mapped_column(String(200), default="")
    naics_code: Mapped[str] = mapped_column(String(20), default="")
    employee_count: Mapped[str] = mapped_column(String(50), default="")
    address: Mapped[str] = mapped_column(String(255), default="")
    city: Mapped[str] = mapped_column(String(100), default="")
    state: Mapped[str] = mapped_column(String(50), default="")
    zip_code: Mapped[str] = mapped_column(String(20), default="")
    lead_source: Mapped[str] = mapped_column(String(200), default="")
    contact_type: Mapped[str] = mapped_column(String(100), default="")
    campaign_types: Mapped[list] = mapped_column(JSON, default=list)

    # Derived status
    lifecycle_stage: Mapped[str] = mapped_column(String(20), default="lead", index=True)
    dnc_status: Mapped[str] = mapped_column(String(20), default=DNC_CALLABLE, index=True)
    dnc_reason: Mapped[str | None] = mapped_column(String(255), default=None)
    dnc_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_ACTIVE, index=True)

    # Retention
    removed_upstream: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    removed_upstream_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    retention_decision: Mapped[str | None] = mapped_column(String(20), default=None)
    protection_tags_at_removal: Mapped[list | None] = mapped_column(JSON, default=None)

    # Sync bookkeeping
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None, index=True
    )
    upstream_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    custom_fields: Mapped[dict] = mapped_column(JSON, default=dict)
    validation_issues: Mapped[list] = mapped_column(JSON, default=list)

    protection_tag_rows: Mapped[list[ContactProtectionTag]] = relationship(
        back_populates="contact",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def protection_tags(self) -> frozenset[str]:
        return frozenset(row.tag for row in self.protection_tag_rows)

    def set_protection_tags(self, tags) -> bool:
        """Replace the protection-tag set. Returns True when it changed."""
        wanted = {t for t in tags if t}
        current = {row.tag for row in self.protection_tag_rows}
        if wanted == current:
            return False
        self.protection_tag_rows = [
            row for row in self.protection_tag_rows if row.tag in wanted
        ] + [ContactProtectionTag(tag=t) for t in sorted(wanted - current)]
        return True

    @validates("email")
    def _sync_email_key(self, _key: str, value: str | None) -> str:
        self.email_key = email_key(value)
        return value or ""

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or "Unnamed"

    def __repr__(self) -> str:
        return f"<Contact {self.full_name!r} ext={self.external_id!r} {self.status}>"
