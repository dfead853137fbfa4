"""Initial contact sync schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Contact
    op.create_table(
        "contact",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(100)),
        sa.Column("email", sa.String(255), nullable=False, server_default=""),
        sa.Column("email_key", sa.String(255)),
        sa.Column("channel", sa.String(20), nullable=False, server_default="bulk-api"),
        sa.Column("first_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("phone", sa.String(50), nullable=False, server_default=""),
        sa.Column("job_title", sa.String(200), nullable=False, server_default=""),
        sa.Column("linkedin_url", sa.String(500), nullable=False, server_default=""),
        sa.Column("company", sa.String(200), nullable=False, server_default=""),
        sa.Column("website", sa.String(500), nullable=False, server_default=""),
        sa.Column("industry", sa.String(200), nullable=False, server_default=""),
        sa.Column("naics_code", sa.String(20), nullable=False, server_default=""),
        sa.Column("employee_count", sa.String(50), nullable=False, server_default=""),
        sa.Column("address", sa.String(255), nullable=False, server_default=""),
        sa.Column("city", sa.String(100), nullable=False, server_default=""),
        sa.Column("state", sa.String(50), nullable=False, server_default=""),
        sa.Column("zip_code", sa.String(20), nullable=False, server_default=""),
        sa.Column("lead_source", sa.String(200), nullable=False, server_default=""),
        sa.Column("contact_type", sa.String(100), nullable=False, server_default=""),
        sa.Column("campaign_types", sa.JSON(), nullable=False),
        sa.Column("lifecycle_stage", sa.String(20), nullable=False, server_default="lead"),
        sa.Column("dnc_status", sa.String(20), nullable=False, server_default="callable"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("removed_upstream", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("removed_upstream_at", sa.DateTime(timezone=True)),
        sa.Column("retention_decision", sa.String(20)),
        sa.Column("protection_tags_at_removal", sa.JSON()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("upstream_updated_at", sa.DateTime(timezone=True)),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("validation_issues", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_contact_external_id", "contact", ["external_id"])
    op.create_index("ix_contact_email_key", "contact", ["email_key"])
    op.create_index("ix_contact_channel", "contact", ["channel"])
    op.create_index("ix_contact_lifecycle_stage", "contact", ["lifecycle_stage"])
    op.create_index("ix_contact_dnc_status", "contact", ["dnc_status"])
    op.create_index("ix_contact_status", "contact", ["status"])
    op.create_index("ix_contact_removed_upstream", "contact", ["removed_upstream"])
    op.create_index("ix_contact_last_synced_at", "contact", ["last_synced_at"])
    op.create_index("ix_contact_channel_external_id", "contact", ["channel", "external_id"])
    op.create_index("ix_contact_status_email_key", "contact", ["status", "email_key"])

    # Protection tags
    op.create_table(
        "contact_protection_tag",
        sa.Column(
            "contact_id",
            sa.Uuid(),
            sa.ForeignKey("contact.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag", sa.String(100), primary_key=True),
    )
    op.create_index("ix_contact_protection_tag_tag", "contact_protection_tag", ["tag"])

    # Sync checkpoints
    op.create_table(
        "sync_cursor",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("position", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="idle"),
        sa.Column("page_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_completed_at", sa.DateTime(timezone=True)),
        sa.Column("lease_owner", sa.String(64)),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_sync_cursor_source", "sync_cursor", ["source"], unique=True)

    # Sync runs
    op.create_table(
        "sync_run",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gapped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errored", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deduplicated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_cursor", sa.String(255)),
        sa.Column("final_cursor", sa.String(255)),
        sa.Column("gaps", sa.JSON(), nullable=False),
        sa.Column("halt_reason", sa.Text()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_sync_run_source", "sync_run", ["source"])

    # Segments
    op.create_table(
        "segment",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("predicate", sa.JSON(), nullable=False),
        sa.Column("dependencies", sa.JSON(), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("contact_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("count_computed_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_segment_name", "segment", ["name"], unique=True)

    # Webhook event queue
    op.create_table(
        "webhook_event",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("object_id", sa.String(100), nullable=False),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON()),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text()),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_webhook_event_object_id", "webhook_event", ["object_id"])
    op.create_index("ix_webhook_event_received_at", "webhook_event", ["received_at"])
    op.create_index("ix_webhook_event_status", "webhook_event", ["status"])
    op.create_index("ix_webhook_event_available_at", "webhook_event", ["available_at"])
    op.create_index(
        "ix_webhook_event_object_order",
        "webhook_event",
        ["object_id", "received_at", "batch_index"],
    )


def downgrade() -> None:
    op.drop_table("webhook_event")
    op.drop_table("segment")
    op.drop_table("sync_run")
    op.drop_table("sync_cursor")
    op.drop_table("contact_protection_tag")
    op.drop_table("contact")
