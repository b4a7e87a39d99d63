"""Initial audit schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-01 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "monitored_applications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("team_slug", sa.String(), nullable=False),
        sa.Column("environment_name", sa.String(), nullable=False),
        sa.Column("app_name", sa.String(), nullable=False),
        sa.Column("default_branch", sa.String(), nullable=False, server_default="main"),
        sa.Column("audit_start_year", sa.Integer(), nullable=True),
        sa.Column(
            "implicit_approval_mode", sa.String(), nullable=False, server_default="off"
        ),
        sa.Column(
            "slack_notifications_enabled",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("slack_channel_id", sa.String(), nullable=True),
        sa.Column("slack_notifications_enabled_at", sa.String(), nullable=True),
        sa.Column("is_active", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.UniqueConstraint("team_slug", "environment_name", "app_name"),
    )

    op.create_table(
        "application_repositories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "monitored_app_id",
            sa.Integer(),
            sa.ForeignKey("monitored_applications.id"),
            nullable=False,
        ),
        sa.Column("github_owner", sa.String(), nullable=False),
        sa.Column("github_repo_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("approved_at", sa.String(), nullable=True),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.UniqueConstraint("monitored_app_id", "github_owner", "github_repo_name"),
    )

    op.create_table(
        "deployments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "monitored_app_id",
            sa.Integer(),
            sa.ForeignKey("monitored_applications.id"),
            nullable=False,
        ),
        sa.Column("nais_deployment_id", sa.String(), nullable=False, unique=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("team_slug", sa.String(), nullable=False),
        sa.Column("environment_name", sa.String(), nullable=False),
        sa.Column("app_name", sa.String(), nullable=False),
        sa.Column("deployer_username", sa.String(), nullable=True),
        sa.Column("commit_sha", sa.String(), nullable=True),
        sa.Column("trigger_url", sa.String(), nullable=True),
        sa.Column("detected_github_owner", sa.String(), nullable=True),
        sa.Column("detected_github_repo_name", sa.String(), nullable=True),
        sa.Column("resources", sa.Text(), nullable=True),
        sa.Column(
            "four_eyes_status", sa.String(), nullable=False, server_default="pending"
        ),
        sa.Column("has_four_eyes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("github_pr_number", sa.Integer(), nullable=True),
        sa.Column("github_pr_url", sa.String(), nullable=True),
        sa.Column("github_pr_data", sa.Text(), nullable=True),
        sa.Column("unverified_commits", sa.Text(), nullable=True),
        sa.Column("verification_error", sa.String(), nullable=True),
        sa.Column("manual_approval_by", sa.String(), nullable=True),
        sa.Column("manual_approval_reason", sa.String(), nullable=True),
        sa.Column("manual_approval_at", sa.String(), nullable=True),
        sa.Column("updated_at", sa.String(), nullable=False),
    )
    op.create_index(
        "idx_deployments_app_created_at",
        "deployments",
        ["monitored_app_id", "created_at"],
    )
    op.create_index("idx_deployments_status", "deployments", ["four_eyes_status"])

    op.create_table(
        "deployment_status_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "deployment_id",
            sa.Integer(),
            sa.ForeignKey("deployments.id"),
            nullable=False,
        ),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("from_has_four_eyes", sa.Integer(), nullable=True),
        sa.Column("to_has_four_eyes", sa.Integer(), nullable=False),
        sa.Column("changed_by", sa.String(), nullable=True),
        sa.Column("change_source", sa.String(), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
    )
    op.create_index(
        "idx_status_history_deployment",
        "deployment_status_history",
        ["deployment_id", "created_at"],
    )

    op.create_table(
        "commits",
        sa.Column("sha", sa.String(), nullable=False),
        sa.Column("repo_owner", sa.String(), nullable=False),
        sa.Column("repo_name", sa.String(), nullable=False),
        sa.Column("author_username", sa.String(), nullable=True),
        sa.Column("author_date", sa.String(), nullable=True),
        sa.Column("committer_date", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("parent_shas", sa.Text(), nullable=True),
        sa.Column("original_pr_number", sa.Integer(), nullable=True),
        sa.Column("original_pr_title", sa.String(), nullable=True),
        sa.Column("original_pr_url", sa.String(), nullable=True),
        sa.Column("pr_approved", sa.Integer(), nullable=True),
        sa.Column("pr_approval_reason", sa.String(), nullable=True),
        sa.Column("is_merge_commit", sa.Integer(), nullable=True),
        sa.Column("html_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("repo_owner", "repo_name", "sha"),
    )


def downgrade() -> None:
    op.drop_table("commits")
    op.drop_index("idx_status_history_deployment", table_name="deployment_status_history")
    op.drop_table("deployment_status_history")
    op.drop_index("idx_deployments_status", table_name="deployments")
    op.drop_index("idx_deployments_app_created_at", table_name="deployments")
    op.drop_table("deployments")
    op.drop_table("application_repositories")
    op.drop_table("monitored_applications")
