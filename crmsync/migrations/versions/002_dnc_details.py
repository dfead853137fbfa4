"""Store the reason and date behind a do-not-call status.

Revision ID: 002_dnc_details
Revises: 001_initial
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

revision = "002_dnc_details"
down_revision = "001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("contact") as batch:
        batch.add_column(sa.Column("dnc_reason", sa.String(255)))
        batch.add_column(sa.Column("dnc_date", sa.DateTime(timezone=True)))


def downgrade() -> None:
    with op.batch_alter_table("contact") as batch:
        batch.drop_column("dnc_date")
        batch.drop_column("dnc_reason")
