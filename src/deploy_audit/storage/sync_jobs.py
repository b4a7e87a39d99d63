from __future__ import annotations

from datetime import timedelta
from typing import Any, List, Mapping, Optional

from sanic.log import logger

from deploy_audit.errors import IntegrityError
from deploy_audit.metric import sync_lock_total
from deploy_audit.storage.database import Database, to_json, utcnow, utcnow_iso
from deploy_audit.storage.types import SyncJobRow, format_utc_datetime

JOB_NAIS_SYNC = "nais_sync"
JOB_GITHUB_VERIFY = "github_verify"

LOCK_TIMEOUT_MESSAGE = "Lock timeout - automatically released"


class SyncJobStore:
    def __init__(self, db: Database, worker_id: str):
        self.db = db
        self.worker_id = worker_id

    def release_expired(self) -> int:
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_jobs
                SET status = 'failed', completed_at = ?, error = ?
                WHERE status = 'running' AND lock_expires_at < ?
                """,
                (utcnow_iso(), LOCK_TIMEOUT_MESSAGE, utcnow_iso()),
            )
            released = cursor.rowcount
        if released:
            logger.warning("Released %d expired sync locks", released)
            sync_lock_total.labels(job_type="any", result="expired").inc(released)
        return released

    def acquire(
        self, job_type: str, app_id: int, timeout_minutes: int = 10
    ) -> Optional[int]:
        """Claim the (job_type, app) lock; None when another worker holds it."""
        self.release_expired()
        now = utcnow()
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_jobs (
                    job_type,
                    monitored_app_id,
                    status,
                    started_at,
                    locked_by,
                    lock_expires_at,
                    created_at
                ) VALUES (?, ?, 'running', ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    job_type,
                    app_id,
                    format_utc_datetime(now),
                    self.worker_id,
                    format_utc_datetime(now + timedelta(minutes=timeout_minutes)),
                    format_utc_datetime(now),
                ),
            )
            if cursor.rowcount == 0:
                sync_lock_total.labels(job_type=job_type, result="contended").inc()
                logger.info(
                    "Sync lock busy job_type=%s app_id=%s worker=%s",
                    job_type,
                    app_id,
                    self.worker_id,
                )
                return None
            job_id = cursor.lastrowid
        sync_lock_total.labels(job_type=job_type, result="acquired").inc()
        logger.debug(
            "Sync lock acquired job_type=%s app_id=%s job_id=%s", job_type, app_id, job_id
        )
        return job_id

    def release(
        self,
        job_id: int,
        status: str,
        result: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if status not in ("completed", "failed"):
            raise ValueError(f"Invalid final job status {status!r}")
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_jobs
                SET status = ?, completed_at = ?, result = ?, error = ?
                WHERE id = ? AND status = 'running'
                """,
                (
                    status,
                    utcnow_iso(),
                    to_json(dict(result)) if result is not None else None,
                    error,
                    job_id,
                ),
            )
            if cursor.rowcount == 0:
                raise IntegrityError(
                    f"Sync job {job_id} is not running (expired or already released)"
                )

    def cleanup(self, app_id: int, keep_last: int = 20) -> int:
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM sync_jobs
                WHERE monitored_app_id = ?
                  AND status != 'running'
                  AND id NOT IN (
                    SELECT id FROM sync_jobs
                    WHERE monitored_app_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                  )
                """,
                (app_id, app_id, keep_last),
            )
            return cursor.rowcount

    def list_for_app(self, app_id: int, limit: int = 20) -> List[SyncJobRow]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_jobs
                WHERE monitored_app_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (app_id, limit),
            ).fetchall()
        return [SyncJobRow.model_validate(dict(r)) for r in rows]

    def get(self, job_id: int) -> Optional[SyncJobRow]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM sync_jobs WHERE id = ?", (job_id,)).fetchone()
        return SyncJobRow.model_validate(dict(row)) if row else None
