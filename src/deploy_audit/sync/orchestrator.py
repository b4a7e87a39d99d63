from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import time
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from sanic.log import logger

from deploy_audit.errors import RateLimitError
from deploy_audit.metric import (
    cycle_duration_seconds,
    pending_deployments,
    sync_event_total,
)
from deploy_audit.nais import AppRef, DeploymentEventPage
from deploy_audit.notify import NotificationDispatcher, run_legacy_sweep
from deploy_audit.storage import AuditStore, MonitoredApplicationRow
from deploy_audit.storage.applications import (
    ALERT_HISTORICAL_REPOSITORY,
    ALERT_PENDING_APPROVAL,
    REPO_HISTORICAL,
    REPO_PENDING_APPROVAL,
)
from deploy_audit.storage.sync_jobs import JOB_GITHUB_VERIFY, JOB_NAIS_SYNC
from deploy_audit.verification.classifier import FourEyesClassifier
from deploy_audit.verification.verifier import (
    RESULT_FAILED,
    RESULT_SKIPPED,
    DeploymentVerifier,
)

LOCKED = "locked"
COMPLETED = "completed"
FAILED = "failed"


class OrchestratorConfig(Protocol):
    VERIFY_LIMIT_PER_APP: int
    SYNC_LOCK_TIMEOUT_MINUTES: int
    VERIFY_LOCK_TIMEOUT_MINUTES: int
    JOBS_KEEP_LAST: int


class EventSource(Protocol):
    async def fetch_deployment_events(
        self, app: AppRef, cursor: Optional[str] = None
    ) -> DeploymentEventPage: ...


@dataclass
class SyncSummary:
    fetched: int = 0
    new: int = 0
    skipped: int = 0
    legacy: int = 0
    alerts: int = 0


@dataclass
class VerifySummary:
    verified: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class LockedRun:
    status: str
    job_id: Optional[int] = None
    result: Any = None


@dataclass
class CycleSummary:
    applications: int = 0
    synced: int = 0
    new_deployments: int = 0
    verified: int = 0
    failed: int = 0
    locked: int = 0
    errors: int = 0
    rate_limited: bool = False
    notified: int = 0
    legacy: int = 0
    failures: List[str] = field(default_factory=list)


class SyncOrchestrator:
    def __init__(
        self,
        *,
        store: AuditStore,
        events: EventSource,
        verifier: DeploymentVerifier,
        config: OrchestratorConfig,
        dispatcher: Optional[NotificationDispatcher] = None,
        classifier: Optional[FourEyesClassifier] = None,
    ):
        self.store = store
        self.events = events
        self.verifier = verifier
        self.config = config
        self.dispatcher = dispatcher
        self.classifier = classifier or verifier.classifier

    async def sync_application(
        self, app: MonitoredApplicationRow, *, full: bool = False
    ) -> SyncSummary:
        summary = SyncSummary()
        latest = None if full else self.store.deployments.latest_for_app(app.id)
        now = datetime.now(timezone.utc)

        # pages arrive newest first; ingest oldest first so the first
        # repository an application deployed from is the one auto-approved
        fetched = []
        cursor: Optional[str] = None
        while True:
            page = await self.events.fetch_deployment_events(app, cursor)
            reached_known = False
            for event in page.events:
                if latest is not None and (
                    event.id == latest.nais_deployment_id
                    or event.created_at < latest.created_at
                ):
                    reached_known = True
                    break
                fetched.append(event)
            if reached_known or not page.has_more or page.next_cursor is None:
                break
            cursor = page.next_cursor

        summary.fetched = len(fetched)
        for event in reversed(fetched):
            self._ingest(app, event, summary, now)

        logger.info(
            "Synced app=%s mode=%s fetched=%d new=%d skipped=%d legacy=%d alerts=%d",
            app,
            "full" if latest is None else "incremental",
            summary.fetched,
            summary.new,
            summary.skipped,
            summary.legacy,
            summary.alerts,
        )
        return summary

    def _ingest(self, app, event, summary: SyncSummary, now: datetime) -> None:
        detected = event.detect_repository()
        if detected is None:
            logger.debug("Skipping event=%s without repository", event.id)
            sync_event_total.labels(result="skipped").inc()
            summary.skipped += 1
            return
        owner, repo_name = detected

        inserted = self.store.deployments.insert_event(
            monitored_app_id=app.id,
            nais_deployment_id=event.id,
            created_at=event.created_at,
            team_slug=event.team_slug,
            environment_name=event.environment_name,
            app_name=app.app_name,
            deployer_username=event.deployer_username,
            commit_sha=event.commit_sha,
            trigger_url=event.trigger_url,
            detected_github_owner=owner,
            detected_github_repo_name=repo_name,
            resources=[r.model_dump() for r in event.resources],
        )
        if not inserted.inserted:
            sync_event_total.labels(result="existing").inc()
            return
        sync_event_total.labels(result="new").inc()
        summary.new += 1
        deployment = inserted.deployment

        exemption = self.classifier.exempt(deployment, app, now)
        if exemption is not None:
            self.store.deployments.store_result(
                deployment.id,
                status=exemption.status,
                details=dict(exemption.details, rule=exemption.rule),
            )
            summary.legacy += 1
            return

        check = self.store.applications.check_repository(app.id, owner, repo_name)
        alert_type = None
        if check.status == REPO_PENDING_APPROVAL:
            alert_type = ALERT_PENDING_APPROVAL
        elif check.status == REPO_HISTORICAL:
            alert_type = ALERT_HISTORICAL_REPOSITORY
        if alert_type is not None:
            alert = self.store.applications.create_alert(
                app_id=app.id,
                deployment_id=deployment.id,
                alert_type=alert_type,
                detected_owner=owner,
                detected_repo_name=repo_name,
                expected_owner=check.active.github_owner if check.active else None,
                expected_repo_name=check.active.github_repo_name if check.active else None,
            )
            if alert is not None:
                summary.alerts += 1

    async def verify_application(
        self, app: MonitoredApplicationRow, *, limit: Optional[int] = None
    ) -> VerifySummary:
        summary = VerifySummary()
        deployments = self.store.deployments.list_for_verification(app.id, limit)
        for deployment in deployments:
            try:
                result = await self.verifier.verify(deployment, app)
            except RateLimitError as e:
                logger.warning(
                    "Rate limited while verifying app=%s deployment=%s reset_at=%s, "
                    "aborting batch (verified=%d)",
                    app,
                    deployment.id,
                    e.reset_at,
                    summary.verified,
                )
                raise
            if result.result == RESULT_FAILED:
                summary.failed += 1
            elif result.result == RESULT_SKIPPED:
                summary.skipped += 1
            else:
                summary.verified += 1

        if deployments:
            logger.info(
                "Verified app=%s candidates=%d verified=%d failed=%d skipped=%d",
                app,
                len(deployments),
                summary.verified,
                summary.failed,
                summary.skipped,
            )
        return summary

    async def run_locked(
        self,
        job_type: str,
        app: MonitoredApplicationRow,
        work: Callable[[], Awaitable[Any]],
        timeout_minutes: int,
    ) -> LockedRun:
        job_id = self.store.sync_jobs.acquire(job_type, app.id, timeout_minutes)
        if job_id is None:
            return LockedRun(status=LOCKED)
        try:
            result = await work()
        except Exception as e:
            self.store.sync_jobs.release(job_id, FAILED, error=str(e))
            raise
        payload = asdict(result) if result is not None else None
        self.store.sync_jobs.release(job_id, COMPLETED, result=payload)
        return LockedRun(status=COMPLETED, job_id=job_id, result=result)

    async def sync_application_locked(
        self, app: MonitoredApplicationRow, *, full: bool = False
    ) -> LockedRun:
        return await self.run_locked(
            JOB_NAIS_SYNC,
            app,
            lambda: self.sync_application(app, full=full),
            self.config.SYNC_LOCK_TIMEOUT_MINUTES,
        )

    async def verify_application_locked(
        self, app: MonitoredApplicationRow, *, limit: Optional[int] = None
    ) -> LockedRun:
        return await self.run_locked(
            JOB_GITHUB_VERIFY,
            app,
            lambda: self.verify_application(app, limit=limit),
            self.config.VERIFY_LOCK_TIMEOUT_MINUTES,
        )

    async def run_cycle(self) -> CycleSummary:
        started = time.monotonic()
        summary = CycleSummary()
        self.store.sync_jobs.release_expired()

        for app in self.store.applications.list_applications(active_only=True):
            summary.applications += 1
            try:
                synced = await self.sync_application_locked(app)
                if synced.status == LOCKED:
                    summary.locked += 1
                else:
                    summary.synced += 1
                    summary.new_deployments += synced.result.new

                if not summary.rate_limited:
                    verified = await self.verify_application_locked(
                        app, limit=self.config.VERIFY_LIMIT_PER_APP
                    )
                    if verified.status == LOCKED:
                        summary.locked += 1
                    else:
                        summary.verified += verified.result.verified
                        summary.failed += verified.result.failed
            except RateLimitError:
                summary.rate_limited = True
            except Exception as e:  # noqa: BLE001
                logger.error("Cycle failed for app=%s", app, exc_info=True)
                summary.errors += 1
                summary.failures.append(f"{app}: {e}")
            finally:
                self.store.sync_jobs.cleanup(app.id, self.config.JOBS_KEEP_LAST)

        if self.dispatcher is not None:
            try:
                notified = await self.dispatcher.notify_pending()
                summary.notified = notified.sent
            except Exception as e:  # noqa: BLE001
                logger.error("Notification pass failed", exc_info=True)
                summary.errors += 1
                summary.failures.append(f"notifications: {e}")
        summary.legacy = len(run_legacy_sweep(self.store).deployment_ids)

        pending_deployments.set(self.store.deployments.count_pending())
        elapsed = time.monotonic() - started
        cycle_duration_seconds.observe(elapsed)
        logger.info(
            "Cycle done apps=%d synced=%d new=%d verified=%d failed=%d locked=%d "
            "errors=%d rate_limited=%s notified=%d legacy=%d elapsed=%.1fs",
            summary.applications,
            summary.synced,
            summary.new_deployments,
            summary.verified,
            summary.failed,
            summary.locked,
            summary.errors,
            summary.rate_limited,
            summary.notified,
            summary.legacy,
            elapsed,
        )
        return summary
