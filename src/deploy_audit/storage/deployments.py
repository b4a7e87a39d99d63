from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import sqlite3
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sanic.log import logger

from deploy_audit.errors import IntegrityError
from deploy_audit.metric import status_transition_total
from deploy_audit.status import (
    PROBLEM_STATUSES,
    PROTECTED_STATUSES,
    ChangeSource,
    FourEyesStatus,
    has_four_eyes,
)
from deploy_audit.storage.database import Database, db_bool, to_json, utcnow, utcnow_iso
from deploy_audit.storage.types import (
    DeploymentRow,
    StatusTransitionRow,
    format_utc_datetime,
    to_db_datetime,
)


@dataclass(frozen=True)
class InsertResult:
    deployment: DeploymentRow
    inserted: bool


@dataclass(frozen=True)
class StoreResult:
    deployment_id: int
    from_status: FourEyesStatus
    to_status: FourEyesStatus
    changed: bool
    protected: bool = False


_PROTECTED_SQL = ", ".join(f"'{s.value}'" for s in sorted(PROTECTED_STATUSES))


class DeploymentStore:
    def __init__(self, db: Database):
        self.db = db

    def insert_event(
        self,
        *,
        monitored_app_id: int,
        nais_deployment_id: str,
        created_at: datetime | str,
        team_slug: str,
        environment_name: str,
        app_name: str,
        deployer_username: str | None,
        commit_sha: str | None,
        trigger_url: str | None,
        detected_github_owner: str | None,
        detected_github_repo_name: str | None,
        resources: Sequence[Mapping[str, Any]] | None = None,
        status: FourEyesStatus = FourEyesStatus.pending,
    ) -> InsertResult:
        """Insert a deployment once; re-sync only refreshes resource metadata."""
        now = utcnow_iso()
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO deployments (
                    monitored_app_id,
                    nais_deployment_id,
                    created_at,
                    team_slug,
                    environment_name,
                    app_name,
                    deployer_username,
                    commit_sha,
                    trigger_url,
                    detected_github_owner,
                    detected_github_repo_name,
                    resources,
                    four_eyes_status,
                    has_four_eyes,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(nais_deployment_id) DO NOTHING
                """,
                (
                    monitored_app_id,
                    nais_deployment_id,
                    to_db_datetime(created_at),
                    team_slug,
                    environment_name,
                    app_name,
                    deployer_username,
                    commit_sha,
                    trigger_url,
                    detected_github_owner,
                    detected_github_repo_name,
                    to_json(list(resources) if resources is not None else None),
                    status.value,
                    db_bool(has_four_eyes(status)),
                    now,
                ),
            )
            inserted = cursor.rowcount > 0
            if inserted:
                deployment_id = cursor.lastrowid
                if status != FourEyesStatus.pending:
                    self._record_transition(
                        conn,
                        deployment_id=deployment_id,
                        from_status=None,
                        to_status=status,
                        changed_by="system",
                        source=ChangeSource.sync,
                        details={"reason": "initial_status"},
                        now=now,
                    )
            elif resources is not None:
                conn.execute(
                    """
                    UPDATE deployments SET resources = ?, updated_at = ?
                    WHERE nais_deployment_id = ? AND resources IS NOT ?
                    """,
                    (
                        to_json(list(resources)),
                        now,
                        nais_deployment_id,
                        to_json(list(resources)),
                    ),
                )

        deployment = self.get_by_nais_id(nais_deployment_id)
        if deployment is None:
            raise IntegrityError(f"Deployment {nais_deployment_id} vanished after insert")
        return InsertResult(deployment=deployment, inserted=inserted)

    def get(self, deployment_id: int) -> Optional[DeploymentRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM deployments WHERE id = ?", (deployment_id,)
            ).fetchone()
        return DeploymentRow.model_validate(dict(row)) if row is not None else None

    def require(self, deployment_id: int) -> DeploymentRow:
        deployment = self.get(deployment_id)
        if deployment is None:
            raise IntegrityError(f"Deployment {deployment_id} not found")
        return deployment

    def get_by_nais_id(self, nais_deployment_id: str) -> Optional[DeploymentRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM deployments WHERE nais_deployment_id = ?",
                (nais_deployment_id,),
            ).fetchone()
        return DeploymentRow.model_validate(dict(row)) if row is not None else None

    def latest_for_app(self, monitored_app_id: int) -> Optional[DeploymentRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM deployments
                WHERE monitored_app_id = ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (monitored_app_id,),
            ).fetchone()
        return DeploymentRow.model_validate(dict(row)) if row is not None else None

    def previous_deployment(
        self, deployment: DeploymentRow, audit_start_year: int | None = None
    ) -> Optional[DeploymentRow]:
        """Latest earlier deployment of the same app/environment, by created_at."""
        lower_bound = "0000"
        if audit_start_year is not None:
            lower_bound = f"{audit_start_year:04d}-01-01T00:00:00.000000Z"
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM deployments
                WHERE monitored_app_id = ?
                  AND environment_name = ?
                  AND id != ?
                  AND created_at < ?
                  AND created_at >= ?
                  AND commit_sha IS NOT NULL
                  AND commit_sha NOT LIKE 'refs/%'
                  AND (detected_github_owner IS ? AND detected_github_repo_name IS ?)
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (
                    deployment.monitored_app_id,
                    deployment.environment_name,
                    deployment.id,
                    format_utc_datetime(deployment.created_at),
                    lower_bound,
                    deployment.detected_github_owner,
                    deployment.detected_github_repo_name,
                ),
            ).fetchone()
        return DeploymentRow.model_validate(dict(row)) if row is not None else None

    def list_for_verification(
        self, monitored_app_id: int, limit: int | None = None
    ) -> List[DeploymentRow]:
        sql = """
            SELECT * FROM deployments
            WHERE monitored_app_id = ?
              AND four_eyes_status IN ('pending', 'error')
            ORDER BY
              CASE four_eyes_status WHEN 'pending' THEN 0 ELSE 1 END,
              created_at ASC
        """
        params: list[Any] = [monitored_app_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [DeploymentRow.model_validate(dict(r)) for r in rows]

    def list_for_app(
        self,
        monitored_app_id: int,
        *,
        status: FourEyesStatus | None = None,
        year: int | None = None,
        limit: int | None = None,
    ) -> List[DeploymentRow]:
        sql = "SELECT * FROM deployments WHERE monitored_app_id = ?"
        params: list[Any] = [monitored_app_id]
        if status is not None:
            sql += " AND four_eyes_status = ?"
            params.append(FourEyesStatus(status).value)
        if year is not None:
            sql += " AND created_at >= ? AND created_at < ?"
            params.extend([f"{year:04d}-01-01", f"{year + 1:04d}-01-01"])
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [DeploymentRow.model_validate(dict(r)) for r in rows]

    def status_counts(self, monitored_app_id: int | None = None) -> Dict[str, int]:
        sql = "SELECT four_eyes_status, COUNT(*) AS n FROM deployments"
        params: list[Any] = []
        if monitored_app_id is not None:
            sql += " WHERE monitored_app_id = ?"
            params.append(monitored_app_id)
        sql += " GROUP BY four_eyes_status"
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {row["four_eyes_status"]: int(row["n"]) for row in rows}

    def count_pending(self) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM deployments WHERE four_eyes_status = 'pending'"
            ).fetchone()
        return int(row[0])

    def store_result(
        self,
        deployment_id: int,
        *,
        status: FourEyesStatus,
        source: ChangeSource = ChangeSource.sync,
        changed_by: str | None = "system",
        details: Mapping[str, Any] | None = None,
        pr_number: int | None = None,
        pr_url: str | None = None,
        pr_data: Mapping[str, Any] | None = None,
        unverified_commits: Sequence[Mapping[str, Any]] | None = None,
        error: str | None = None,
    ) -> StoreResult:
        """Persist a classification unless the deployment is manually approved or legacy."""
        status = FourEyesStatus(status)
        now = utcnow_iso()
        with self.db.connect() as conn:
            current = self._current_status(conn, deployment_id)
            if current in PROTECTED_STATUSES:
                return StoreResult(
                    deployment_id=deployment_id,
                    from_status=current,
                    to_status=current,
                    changed=False,
                    protected=True,
                )

            cursor = conn.execute(
                f"""
                UPDATE deployments SET
                    four_eyes_status = ?,
                    has_four_eyes = ?,
                    github_pr_number = COALESCE(?, github_pr_number),
                    github_pr_url = COALESCE(?, github_pr_url),
                    github_pr_data = COALESCE(?, github_pr_data),
                    unverified_commits = ?,
                    verification_error = ?,
                    updated_at = ?
                WHERE id = ? AND four_eyes_status NOT IN ({_PROTECTED_SQL})
                """,
                (
                    status.value,
                    db_bool(has_four_eyes(status)),
                    pr_number,
                    pr_url,
                    to_json(pr_data),
                    to_json(list(unverified_commits)) if unverified_commits else None,
                    error,
                    now,
                    deployment_id,
                ),
            )
            if cursor.rowcount == 0:
                # a concurrent manual approval won the race
                return StoreResult(
                    deployment_id=deployment_id,
                    from_status=current,
                    to_status=current,
                    changed=False,
                    protected=True,
                )

            changed = current != status
            if changed:
                self._record_transition(
                    conn,
                    deployment_id=deployment_id,
                    from_status=current,
                    to_status=status,
                    changed_by=changed_by,
                    source=source,
                    details=details,
                    now=now,
                )

        return StoreResult(
            deployment_id=deployment_id,
            from_status=current,
            to_status=status,
            changed=changed,
        )

    def mark_error(self, deployment_id: int, message: str) -> StoreResult:
        return self.store_result(
            deployment_id,
            status=FourEyesStatus.error,
            source=ChangeSource.system,
            details={"error": message},
            error=message,
        )

    def manual_approve(
        self, deployment_id: int, *, approved_by: str, reason: str
    ) -> DeploymentRow:
        if not reason or not reason.strip():
            raise ValueError("Manual approval requires a justification")
        if not approved_by or not approved_by.strip():
            raise ValueError("Manual approval requires an approver")
        now = utcnow_iso()
        with self.db.connect() as conn:
            current = self._current_status(conn, deployment_id)
            conn.execute(
                """
                UPDATE deployments SET
                    four_eyes_status = ?,
                    has_four_eyes = 1,
                    manual_approval_by = ?,
                    manual_approval_reason = ?,
                    manual_approval_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    FourEyesStatus.manually_approved.value,
                    approved_by,
                    reason.strip(),
                    now,
                    now,
                    deployment_id,
                ),
            )
            if current != FourEyesStatus.manually_approved:
                self._record_transition(
                    conn,
                    deployment_id=deployment_id,
                    from_status=current,
                    to_status=FourEyesStatus.manually_approved,
                    changed_by=approved_by,
                    source=ChangeSource.manual,
                    details={"reason": reason.strip()},
                    now=now,
                )
        logger.info(
            "Manual approval deployment=%s by=%s from_status=%s",
            deployment_id,
            approved_by,
            current,
        )
        return self.require(deployment_id)

    def set_status(
        self,
        deployment_id: int,
        status: FourEyesStatus,
        *,
        changed_by: str,
        source: ChangeSource,
        details: Mapping[str, Any] | None = None,
    ) -> StoreResult:
        """Operator or system driven transition; ignores the protected statuses."""
        status = FourEyesStatus(status)
        now = utcnow_iso()
        with self.db.connect() as conn:
            current = self._current_status(conn, deployment_id)
            conn.execute(
                """
                UPDATE deployments SET
                    four_eyes_status = ?,
                    has_four_eyes = ?,
                    verification_error = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (status.value, db_bool(has_four_eyes(status)), now, deployment_id),
            )
            changed = current != status
            if changed:
                self._record_transition(
                    conn,
                    deployment_id=deployment_id,
                    from_status=current,
                    to_status=status,
                    changed_by=changed_by,
                    source=source,
                    details=details,
                    now=now,
                )
        return StoreResult(
            deployment_id=deployment_id,
            from_status=current,
            to_status=status,
            changed=changed,
        )

    def reset_status(self, deployment_id: int, *, changed_by: str) -> StoreResult:
        return self.set_status(
            deployment_id,
            FourEyesStatus.pending,
            changed_by=changed_by,
            source=ChangeSource.manual,
            details={"reason": "reverification_requested"},
        )

    def unprotected_for_repository(
        self, monitored_app_id: int, owner: str, repo_name: str
    ) -> List[DeploymentRow]:
        """Deployments from a repository that an operator decision may still move.

        Manually approved and legacy deployments are left out, and so are
        deployments already flagged as a repository mismatch.
        """
        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM deployments
                WHERE monitored_app_id = ?
                  AND detected_github_owner = ?
                  AND detected_github_repo_name = ?
                  AND four_eyes_status NOT IN ({_PROTECTED_SQL}, 'repository_mismatch')
                ORDER BY created_at ASC
                """,
                (monitored_app_id, owner, repo_name),
            ).fetchall()
        return [DeploymentRow.model_validate(dict(r)) for r in rows]

    def status_history(self, deployment_id: int) -> List[StatusTransitionRow]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM deployment_status_history
                WHERE deployment_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (deployment_id,),
            ).fetchall()
        return [StatusTransitionRow.model_validate(dict(r)) for r in rows]

    def claim_notification(
        self, deployment_id: int, message_ts: str, channel_id: str
    ) -> bool:
        """Record the posted message; False if another worker already did."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE deployments
                SET slack_message_ts = ?, slack_channel_id = ?
                WHERE id = ? AND slack_message_ts IS NULL
                """,
                (message_ts, channel_id, deployment_id),
            )
            return cursor.rowcount > 0

    def needing_notification(
        self, max_age_days: int = 7, now: datetime | None = None
    ) -> List[DeploymentRow]:
        now = now or utcnow()
        cutoff = format_utc_datetime(now - timedelta(days=max_age_days))
        problem = ", ".join(f"'{s.value}'" for s in sorted(PROBLEM_STATUSES))
        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT d.* FROM deployments d
                JOIN monitored_applications ma ON ma.id = d.monitored_app_id
                WHERE d.slack_message_ts IS NULL
                  AND ma.slack_notifications_enabled = 1
                  AND ma.slack_channel_id IS NOT NULL
                  AND ma.slack_notifications_enabled_at IS NOT NULL
                  AND d.created_at >= ma.slack_notifications_enabled_at
                  AND d.created_at >= ?
                  AND d.four_eyes_status IN ({problem})
                ORDER BY d.created_at ASC
                """,
                (cutoff,),
            ).fetchall()
        return [DeploymentRow.model_validate(dict(r)) for r in rows]

    def mark_legacy_without_sha(self, cutoff: datetime) -> List[int]:
        """Move deployments without a commit SHA older than cutoff to legacy."""
        now = utcnow_iso()
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, four_eyes_status FROM deployments
                WHERE commit_sha IS NULL
                  AND created_at < ?
                  AND four_eyes_status NOT IN ('legacy', 'manually_approved')
                """,
                (format_utc_datetime(cutoff),),
            ).fetchall()
            ids = []
            for row in rows:
                conn.execute(
                    """
                    UPDATE deployments
                    SET four_eyes_status = 'legacy', has_four_eyes = 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (now, row["id"]),
                )
                self._record_transition(
                    conn,
                    deployment_id=row["id"],
                    from_status=FourEyesStatus(row["four_eyes_status"]),
                    to_status=FourEyesStatus.legacy,
                    changed_by="system",
                    source=ChangeSource.system,
                    details={"reason": "aged_into_legacy_without_commit_sha"},
                    now=now,
                )
                ids.append(row["id"])
        return ids

    @staticmethod
    def _current_status(conn: sqlite3.Connection, deployment_id: int) -> FourEyesStatus:
        row = conn.execute(
            "SELECT four_eyes_status FROM deployments WHERE id = ?", (deployment_id,)
        ).fetchone()
        if row is None:
            raise IntegrityError(f"Deployment {deployment_id} not found")
        return FourEyesStatus(row["four_eyes_status"])

    @staticmethod
    def _record_transition(
        conn: sqlite3.Connection,
        *,
        deployment_id: int,
        from_status: FourEyesStatus | None,
        to_status: FourEyesStatus,
        changed_by: str | None,
        source: ChangeSource,
        details: Mapping[str, Any] | None,
        now: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO deployment_status_history (
                deployment_id,
                from_status,
                to_status,
                from_has_four_eyes,
                to_has_four_eyes,
                changed_by,
                change_source,
                details,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deployment_id,
                from_status.value if from_status is not None else None,
                to_status.value,
                db_bool(has_four_eyes(from_status)) if from_status is not None else None,
                db_bool(has_four_eyes(to_status)),
                changed_by,
                ChangeSource(source).value,
                to_json(dict(details)) if details is not None else None,
                now,
            ),
        )
        status_transition_total.labels(
            to_status=to_status.value, source=ChangeSource(source).value
        ).inc()
        logger.info(
            "Status transition deployment=%s from=%s to=%s source=%s by=%s",
            deployment_id,
            from_status.value if from_status is not None else None,
            to_status.value,
            ChangeSource(source).value,
            changed_by,
        )
