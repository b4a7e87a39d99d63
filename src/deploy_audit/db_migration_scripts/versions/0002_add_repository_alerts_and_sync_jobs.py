"""Add repository alerts and sync job locks.

Revision ID: 0002_add_repository_alerts_and_sync_jobs
Revises: 0001_initial
Create Date: 2026-09-08 14:30:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_add_repository_alerts_and_sync_jobs"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "repository_alerts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "monitored_app_id",
            sa.Integer(),
            sa.ForeignKey("monitored_applications.id"),
            nullable=False,
        ),
        sa.Column(
            "deployment_id",
            sa.Integer(),
            sa.ForeignKey("deployments.id"),
            nullable=False,
        ),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("expected_github_owner", sa.String(), nullable=False),
        sa.Column("expected_github_repo_name", sa.String(), nullable=False),
        sa.Column("detected_github_owner", sa.String(), nullable=False),
        sa.Column("detected_github_repo_name", sa.String(), nullable=False),
        sa.Column("resolved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolved_at", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolution_note", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.UniqueConstraint("deployment_id", "alert_type"),
    )
    op.create_index(
        "idx_repository_alerts_unresolved",
        "repository_alerts",
        ["monitored_app_id", "resolved"],
    )

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("monitored_app_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.String(), nullable=True),
        sa.Column("completed_at", sa.String(), nullable=True),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("lock_expires_at", sa.String(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
    )
    op.create_index(
        "idx_sync_jobs_running",
        "sync_jobs",
        ["job_type", "monitored_app_id"],
        unique=True,
        sqlite_where=sa.text("status = 'running'"),
    )
    op.create_index(
        "idx_sync_jobs_app_created_at",
        "sync_jobs",
        ["monitored_app_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_sync_jobs_app_created_at", table_name="sync_jobs")
    op.drop_index("idx_sync_jobs_running", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    op.drop_index("idx_repository_alerts_unresolved", table_name="repository_alerts")
    op.drop_table("repository_alerts")
