from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
from pathlib import Path
import sqlite3
from typing import Any, Iterator


SCHEMA = """
CREATE TABLE IF NOT EXISTS monitored_applications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    team_slug TEXT NOT NULL,
    environment_name TEXT NOT NULL,
    app_name TEXT NOT NULL,
    default_branch TEXT NOT NULL DEFAULT 'main',
    audit_start_year INTEGER NULL,
    implicit_approval_mode TEXT NOT NULL DEFAULT 'off',
    slack_notifications_enabled INTEGER NOT NULL DEFAULT 0,
    slack_channel_id TEXT NULL,
    slack_notifications_enabled_at TEXT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (team_slug, environment_name, app_name)
);

CREATE TABLE IF NOT EXISTS application_repositories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    monitored_app_id INTEGER NOT NULL REFERENCES monitored_applications (id),
    github_owner TEXT NOT NULL,
    github_repo_name TEXT NOT NULL,
    status TEXT NOT NULL,
    approved_at TEXT NULL,
    approved_by TEXT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (monitored_app_id, github_owner, github_repo_name)
);

CREATE TABLE IF NOT EXISTS deployments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    monitored_app_id INTEGER NOT NULL REFERENCES monitored_applications (id),
    nais_deployment_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    team_slug TEXT NOT NULL,
    environment_name TEXT NOT NULL,
    app_name TEXT NOT NULL,
    deployer_username TEXT NULL,
    commit_sha TEXT NULL,
    trigger_url TEXT NULL,
    detected_github_owner TEXT NULL,
    detected_github_repo_name TEXT NULL,
    resources TEXT NULL,
    four_eyes_status TEXT NOT NULL DEFAULT 'pending',
    has_four_eyes INTEGER NOT NULL DEFAULT 0,
    github_pr_number INTEGER NULL,
    github_pr_url TEXT NULL,
    github_pr_data TEXT NULL,
    unverified_commits TEXT NULL,
    verification_error TEXT NULL,
    manual_approval_by TEXT NULL,
    manual_approval_reason TEXT NULL,
    manual_approval_at TEXT NULL,
    slack_message_ts TEXT NULL,
    slack_channel_id TEXT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS deployment_status_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    deployment_id INTEGER NOT NULL REFERENCES deployments (id),
    from_status TEXT NULL,
    to_status TEXT NOT NULL,
    from_has_four_eyes INTEGER NULL,
    to_has_four_eyes INTEGER NOT NULL,
    changed_by TEXT NULL,
    change_source TEXT NOT NULL,
    details TEXT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS commits (
    sha TEXT NOT NULL,
    repo_owner TEXT NOT NULL,
    repo_name TEXT NOT NULL,
    author_username TEXT NULL,
    author_date TEXT NULL,
    committer_date TEXT NULL,
    message TEXT NULL,
    parent_shas TEXT NULL,
    original_pr_number INTEGER NULL,
    original_pr_title TEXT NULL,
    original_pr_url TEXT NULL,
    pr_approved INTEGER NULL,
    pr_approval_reason TEXT NULL,
    is_merge_commit INTEGER NULL,
    html_url TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (repo_owner, repo_name, sha)
);

CREATE TABLE IF NOT EXISTS repository_alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    monitored_app_id INTEGER NOT NULL REFERENCES monitored_applications (id),
    deployment_id INTEGER NOT NULL REFERENCES deployments (id),
    alert_type TEXT NOT NULL,
    expected_github_owner TEXT NOT NULL,
    expected_github_repo_name TEXT NOT NULL,
    detected_github_owner TEXT NOT NULL,
    detected_github_repo_name TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    resolved_at TEXT NULL,
    resolved_by TEXT NULL,
    resolution_note TEXT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (deployment_id, alert_type)
);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    monitored_app_id INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    started_at TEXT NULL,
    completed_at TEXT NULL,
    locked_by TEXT NULL,
    lock_expires_at TEXT NULL,
    result TEXT NULL,
    error TEXT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_deployments_app_created_at
    ON deployments (monitored_app_id, created_at);
CREATE INDEX IF NOT EXISTS idx_deployments_status
    ON deployments (four_eyes_status);
CREATE INDEX IF NOT EXISTS idx_status_history_deployment
    ON deployment_status_history (deployment_id, created_at);
CREATE INDEX IF NOT EXISTS idx_repository_alerts_unresolved
    ON repository_alerts (monitored_app_id, resolved);
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_jobs_running
    ON sync_jobs (job_type, monitored_app_id) WHERE status = 'running';
CREATE INDEX IF NOT EXISTS idx_sync_jobs_app_created_at
    ON sync_jobs (monitored_app_id, created_at);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


def db_bool(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


class Database:
    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        try:
            with conn:
                yield conn
        finally:
            conn.close()
