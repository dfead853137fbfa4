"""Contact sync models - re-exports all models and Base.metadata."""

from .base import Base, UUIDMixin, TimestampMixin
from .contact import Contact, ContactProtectionTag
from .sync_cursor import SyncCursor
from .sync_run import SyncRun
from .segment import Segment
from .webhook_event import WebhookEvent

__all__ = [
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "Contact",
    "ContactProtectionTag",
    "SyncCursor",
    "SyncRun",
    "Segment",
    "WebhookEvent",
]
