"""Add slack message columns to deployments.

Revision ID: 0003_add_slack_message_columns
Revises: 0002_add_repository_alerts_and_sync_jobs
Create Date: 2026-09-22 10:05:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0003_add_slack_message_columns"
down_revision = "0002_add_repository_alerts_and_sync_jobs"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("deployments") as batch_op:
        batch_op.add_column(sa.Column("slack_message_ts", sa.String(), nullable=True))
        batch_op.add_column(sa.Column("slack_channel_id", sa.String(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("deployments") as batch_op:
        batch_op.drop_column("slack_channel_id")
        batch_op.drop_column("slack_message_ts")
