from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from sanic.log import logger

from deploy_audit.errors import IntegrityError
from deploy_audit.metric import alert_total
from deploy_audit.status import ImplicitApprovalMode
from deploy_audit.storage.database import Database, db_bool, utcnow_iso
from deploy_audit.storage.types import (
    ApplicationRepositoryRow,
    MonitoredApplicationRow,
    RepositoryAlertRow,
    format_utc_datetime,
)

REPO_ACTIVE = "active"
REPO_HISTORICAL = "historical"
REPO_PENDING_APPROVAL = "pending_approval"

ALERT_PENDING_APPROVAL = "pending_approval"
ALERT_HISTORICAL_REPOSITORY = "historical_repository"
ALERT_REPOSITORY_MISMATCH = "repository_mismatch"

LEGACY_RESOLUTION_NOTE = (
    "Legacy deployment (older than one year, no commit SHA), resolved automatically"
)

_ALERT_SELECT = """
    SELECT ra.*,
           d.nais_deployment_id AS nais_deployment_id,
           d.created_at AS deployment_created_at,
           d.commit_sha AS commit_sha
    FROM repository_alerts ra
    JOIN deployments d ON d.id = ra.deployment_id
"""


@dataclass(frozen=True)
class RepositoryCheck:
    status: str
    repository: ApplicationRepositoryRow
    active: Optional[ApplicationRepositoryRow]
    created: bool


class ApplicationStore:
    def __init__(self, db: Database):
        self.db = db

    def upsert_application(
        self,
        *,
        team_slug: str,
        environment_name: str,
        app_name: str,
        default_branch: str = "main",
        audit_start_year: int | None = None,
        implicit_approval_mode: ImplicitApprovalMode | str = ImplicitApprovalMode.off,
        slack_channel_id: str | None = None,
        slack_notifications_enabled: bool = False,
        is_active: bool = True,
    ) -> MonitoredApplicationRow:
        now = utcnow_iso()
        mode = ImplicitApprovalMode(implicit_approval_mode).value
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO monitored_applications (
                    team_slug,
                    environment_name,
                    app_name,
                    default_branch,
                    audit_start_year,
                    implicit_approval_mode,
                    slack_notifications_enabled,
                    slack_channel_id,
                    slack_notifications_enabled_at,
                    is_active,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(team_slug, environment_name, app_name) DO UPDATE SET
                    default_branch = excluded.default_branch,
                    audit_start_year = excluded.audit_start_year,
                    implicit_approval_mode = excluded.implicit_approval_mode,
                    slack_channel_id = excluded.slack_channel_id,
                    slack_notifications_enabled_at = CASE
                        WHEN excluded.slack_notifications_enabled = 0 THEN NULL
                        WHEN monitored_applications.slack_notifications_enabled = 1
                             AND monitored_applications.slack_notifications_enabled_at IS NOT NULL
                            THEN monitored_applications.slack_notifications_enabled_at
                        ELSE excluded.slack_notifications_enabled_at
                    END,
                    slack_notifications_enabled = excluded.slack_notifications_enabled,
                    is_active = excluded.is_active
                """,
                (
                    team_slug,
                    environment_name,
                    app_name,
                    default_branch,
                    audit_start_year,
                    mode,
                    db_bool(slack_notifications_enabled),
                    slack_channel_id,
                    now if slack_notifications_enabled else None,
                    db_bool(is_active),
                    now,
                ),
            )
        app = self.find_application(team_slug, environment_name, app_name)
        if app is None:
            raise IntegrityError(
                f"Monitored application {team_slug}/{environment_name}/{app_name} vanished"
            )
        return app

    def find_application(
        self, team_slug: str, environment_name: str, app_name: str
    ) -> Optional[MonitoredApplicationRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM monitored_applications
                WHERE team_slug = ? AND environment_name = ? AND app_name = ?
                """,
                (team_slug, environment_name, app_name),
            ).fetchone()
        return MonitoredApplicationRow.model_validate(dict(row)) if row else None

    def get_application(self, app_id: int) -> Optional[MonitoredApplicationRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM monitored_applications WHERE id = ?", (app_id,)
            ).fetchone()
        return MonitoredApplicationRow.model_validate(dict(row)) if row else None

    def require_application(self, app_id: int) -> MonitoredApplicationRow:
        app = self.get_application(app_id)
        if app is None:
            raise IntegrityError(f"Monitored application {app_id} not found")
        return app

    def list_applications(self, active_only: bool = True) -> List[MonitoredApplicationRow]:
        sql = "SELECT * FROM monitored_applications"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY team_slug, environment_name, app_name"
        with self.db.connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [MonitoredApplicationRow.model_validate(dict(r)) for r in rows]

    # repositories

    def repositories_for_app(self, app_id: int) -> List[ApplicationRepositoryRow]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM application_repositories
                WHERE monitored_app_id = ?
                ORDER BY
                    CASE status
                        WHEN 'active' THEN 1
                        WHEN 'historical' THEN 2
                        WHEN 'pending_approval' THEN 3
                    END,
                    created_at DESC
                """,
                (app_id,),
            ).fetchall()
        return [ApplicationRepositoryRow.model_validate(dict(r)) for r in rows]

    def get_repository(self, repo_id: int) -> Optional[ApplicationRepositoryRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM application_repositories WHERE id = ?", (repo_id,)
            ).fetchone()
        return ApplicationRepositoryRow.model_validate(dict(row)) if row else None

    def add_repository(
        self,
        app_id: int,
        owner: str,
        repo_name: str,
        *,
        status: str,
        approved_by: str | None = None,
    ) -> tuple[ApplicationRepositoryRow, bool]:
        now = utcnow_iso()
        approved_at = now if status != REPO_PENDING_APPROVAL else None
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO application_repositories (
                    monitored_app_id,
                    github_owner,
                    github_repo_name,
                    status,
                    approved_at,
                    approved_by,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(monitored_app_id, github_owner, github_repo_name) DO NOTHING
                """,
                (app_id, owner, repo_name, status, approved_at, approved_by, now),
            )
            created = cursor.rowcount > 0
            row = conn.execute(
                """
                SELECT * FROM application_repositories
                WHERE monitored_app_id = ? AND github_owner = ? AND github_repo_name = ?
                """,
                (app_id, owner, repo_name),
            ).fetchone()
        return ApplicationRepositoryRow.model_validate(dict(row)), created

    def check_repository(self, app_id: int, owner: str, repo_name: str) -> RepositoryCheck:
        """Classify a detected repository, registering it if it is new.

        The first repository seen for an application becomes active without
        review. Any later, different repository is registered as pending
        approval.
        """
        repositories = self.repositories_for_app(app_id)
        active = next((r for r in repositories if r.status == REPO_ACTIVE), None)
        for repo in repositories:
            if repo.github_owner == owner and repo.github_repo_name == repo_name:
                return RepositoryCheck(
                    status=repo.status, repository=repo, active=active, created=False
                )

        if not repositories:
            repo, created = self.add_repository(
                app_id, owner, repo_name, status=REPO_ACTIVE, approved_by="system"
            )
            logger.info(
                "Auto-approved first repository app_id=%s repo=%s", app_id, repo.full_name
            )
            return RepositoryCheck(
                status=repo.status, repository=repo, active=repo, created=created
            )

        repo, created = self.add_repository(
            app_id, owner, repo_name, status=REPO_PENDING_APPROVAL
        )
        logger.warning(
            "New repository detected app_id=%s repo=%s active=%s",
            app_id,
            repo.full_name,
            active.full_name if active is not None else None,
        )
        return RepositoryCheck(
            status=repo.status, repository=repo, active=active, created=created
        )

    def approve_repository(
        self, repo_id: int, *, approved_by: str, set_active: bool = False
    ) -> ApplicationRepositoryRow:
        now = utcnow_iso()
        status = REPO_ACTIVE if set_active else REPO_HISTORICAL
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT monitored_app_id FROM application_repositories WHERE id = ?",
                (repo_id,),
            ).fetchone()
            if row is None:
                raise IntegrityError(f"Repository {repo_id} not found")
            if set_active:
                conn.execute(
                    """
                    UPDATE application_repositories
                    SET status = 'historical'
                    WHERE monitored_app_id = ? AND status = 'active' AND id != ?
                    """,
                    (row["monitored_app_id"], repo_id),
                )
            conn.execute(
                """
                UPDATE application_repositories
                SET status = ?, approved_at = ?, approved_by = ?
                WHERE id = ?
                """,
                (status, now, approved_by, repo_id),
            )
        repo = self.get_repository(repo_id)
        if repo is None:
            raise IntegrityError(f"Repository {repo_id} not found")
        return repo

    def reject_repository(self, repo_id: int) -> ApplicationRepositoryRow:
        repo = self.get_repository(repo_id)
        if repo is None or repo.status != REPO_PENDING_APPROVAL:
            raise IntegrityError(f"No pending repository with id {repo_id}")
        with self.db.connect() as conn:
            conn.execute(
                """
                DELETE FROM application_repositories
                WHERE id = ? AND status = 'pending_approval'
                """,
                (repo_id,),
            )
        return repo

    # alerts

    def create_alert(
        self,
        *,
        app_id: int,
        deployment_id: int,
        alert_type: str,
        detected_owner: str,
        detected_repo_name: str,
        expected_owner: str | None = None,
        expected_repo_name: str | None = None,
    ) -> Optional[RepositoryAlertRow]:
        """Raise an alert once per deployment and type; None if it already exists."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO repository_alerts (
                    monitored_app_id,
                    deployment_id,
                    alert_type,
                    expected_github_owner,
                    expected_github_repo_name,
                    detected_github_owner,
                    detected_github_repo_name,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(deployment_id, alert_type) DO NOTHING
                """,
                (
                    app_id,
                    deployment_id,
                    alert_type,
                    expected_owner or detected_owner,
                    expected_repo_name or detected_repo_name,
                    detected_owner,
                    detected_repo_name,
                    utcnow_iso(),
                ),
            )
            if cursor.rowcount == 0:
                return None
            alert_id = cursor.lastrowid
        alert_total.labels(alert_type=alert_type).inc()
        logger.warning(
            "Repository alert type=%s app_id=%s deployment=%s detected=%s/%s expected=%s/%s",
            alert_type,
            app_id,
            deployment_id,
            detected_owner,
            detected_repo_name,
            expected_owner or detected_owner,
            expected_repo_name or detected_repo_name,
        )
        return self.get_alert(alert_id)

    def get_alert(self, alert_id: int) -> Optional[RepositoryAlertRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                _ALERT_SELECT + " WHERE ra.id = ?", (alert_id,)
            ).fetchone()
        return RepositoryAlertRow.model_validate(dict(row)) if row else None

    def resolve_alert(
        self, alert_id: int, *, resolved_by: str, note: str
    ) -> RepositoryAlertRow:
        if not note or not note.strip():
            raise ValueError("Resolving an alert requires a note")
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE repository_alerts
                SET resolved = 1, resolved_at = ?, resolved_by = ?, resolution_note = ?
                WHERE id = ?
                """,
                (utcnow_iso(), resolved_by, note.strip(), alert_id),
            )
            if cursor.rowcount == 0:
                raise IntegrityError(f"Alert {alert_id} not found")
        alert = self.get_alert(alert_id)
        if alert is None:
            raise IntegrityError(f"Alert {alert_id} not found")
        return alert

    def unresolved_alerts(self, app_id: int | None = None) -> List[RepositoryAlertRow]:
        sql = _ALERT_SELECT + " WHERE ra.resolved = 0"
        params: list[Any] = []
        if app_id is not None:
            sql += " AND ra.monitored_app_id = ?"
            params.append(app_id)
        sql += " ORDER BY ra.created_at DESC"
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [RepositoryAlertRow.model_validate(dict(r)) for r in rows]

    def alerts_for_app(self, app_id: int, year: int | None = None) -> List[RepositoryAlertRow]:
        sql = _ALERT_SELECT + " WHERE ra.monitored_app_id = ?"
        params: list[Any] = [app_id]
        if year is not None:
            sql += " AND d.created_at >= ? AND d.created_at < ?"
            params.extend([f"{year:04d}-01-01", f"{year + 1:04d}-01-01"])
        sql += " ORDER BY ra.created_at DESC"
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [RepositoryAlertRow.model_validate(dict(r)) for r in rows]

    def resolve_alerts_for_legacy(self, cutoff: datetime) -> int:
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE repository_alerts
                SET resolved = 1, resolved_at = ?, resolved_by = 'system',
                    resolution_note = ?
                WHERE resolved = 0
                  AND deployment_id IN (
                    SELECT id FROM deployments
                    WHERE commit_sha IS NULL AND created_at < ?
                  )
                """,
                (utcnow_iso(), LEGACY_RESOLUTION_NOTE, format_utc_datetime(cutoff)),
            )
            return cursor.rowcount
