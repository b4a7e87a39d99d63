from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sanic.log import logger

from deploy_audit import config
from deploy_audit.errors import IntegrityError, RateLimitError
from deploy_audit.metric import verification_total
from deploy_audit.status import FourEyesStatus, ImplicitApprovalMode
from deploy_audit.storage import AuditStore, DeploymentRow, MonitoredApplicationRow
from deploy_audit.storage.applications import REPO_ACTIVE
from deploy_audit.verification.classifier import FourEyesClassifier
from deploy_audit.verification.commits import RangeAuditor
from deploy_audit.verification.correlator import PullRequestCorrelator
from deploy_audit.verification.graph import CommitGraphWalker
from deploy_audit.verification.types import CodeHost, Evidence, Outcome, RangeAudit

RESULT_VERIFIED = "verified"
RESULT_SKIPPED = "skipped"
RESULT_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VerificationResult:
    deployment_id: int
    result: str
    status: FourEyesStatus
    rule: Optional[str] = None
    changed: bool = False
    protected: bool = False
    error: Optional[str] = None


class DeploymentVerifier:
    """Gathers evidence for one deployment, classifies it and stores the result."""

    def __init__(
        self,
        store: AuditStore,
        api: CodeHost,
        *,
        correlator: Optional[PullRequestCorrelator] = None,
        walker: Optional[CommitGraphWalker] = None,
        classifier: Optional[FourEyesClassifier] = None,
        clock: Callable[[], datetime] = _utcnow,
        max_commits: int = config.MAX_GRAPH_DEPTH,
    ):
        self.store = store
        self.api = api
        self.correlator = correlator or PullRequestCorrelator(api)
        self.walker = walker or CommitGraphWalker(
            api, store.commits, max_commits=max_commits
        )
        self.auditor = RangeAuditor(self.walker, self.correlator, store.commits)
        self.classifier = classifier or FourEyesClassifier()
        self.clock = clock

    async def verify(
        self,
        deployment: DeploymentRow,
        app: MonitoredApplicationRow,
        *,
        force_recheck: bool = False,
    ) -> VerificationResult:
        try:
            return await self._verify(deployment, app, force_recheck)
        except (RateLimitError, IntegrityError):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Verification failed deployment=%s app=%s sha=%s",
                deployment.id,
                app,
                deployment.commit_sha,
                exc_info=True,
            )
            stored = self.store.deployments.mark_error(deployment.id, str(exc))
            verification_total.labels(result=RESULT_FAILED).inc()
            return VerificationResult(
                deployment_id=deployment.id,
                result=RESULT_FAILED,
                status=stored.to_status,
                changed=stored.changed,
                protected=stored.protected,
                error=str(exc),
            )

    async def _verify(
        self,
        deployment: DeploymentRow,
        app: MonitoredApplicationRow,
        force_recheck: bool,
    ) -> VerificationResult:
        exemption = self.classifier.exempt(deployment, app, self.clock())
        if exemption is not None:
            return self._store(deployment, exemption)

        if deployment.commit_sha is None or deployment.repository is None:
            logger.debug(
                "Skipping deployment=%s without commit or repository", deployment.id
            )
            verification_total.labels(result=RESULT_SKIPPED).inc()
            return VerificationResult(
                deployment_id=deployment.id,
                result=RESULT_SKIPPED,
                status=deployment.four_eyes_status,
            )

        evidence = await self.gather_evidence(deployment, app, force_recheck)
        outcome = self.classifier.classify(
            evidence, expected_repository=self._active_repository(app)
        )
        return self._store(deployment, outcome, evidence)

    async def gather_evidence(
        self,
        deployment: DeploymentRow,
        app: MonitoredApplicationRow,
        force_recheck: bool = False,
    ) -> Evidence:
        owner = deployment.detected_github_owner
        repo = deployment.detected_github_repo_name
        sha = deployment.commit_sha
        mode = ImplicitApprovalMode(app.implicit_approval_mode)

        previous = self.store.deployments.previous_deployment(
            deployment, app.audit_start_year
        )
        previous_sha = previous.commit_sha if previous is not None else None
        if previous_sha == sha:
            return Evidence(
                commit_sha=sha,
                repository=deployment.repository,
                pull_request=None,
                previous_sha=previous_sha,
                range_audit=RangeAudit(
                    base_sha=sha, head_sha=sha, commits_checked=0, empty=True
                ),
                implicit_approval_mode=mode,
                default_branch=app.default_branch,
            )

        if force_recheck:
            self.correlator.clear()

        snapshot = None
        pr_not_found = False
        pr = await self.correlator.find_pull_request_for_commit(owner, repo, sha)
        if pr is not None:
            snapshot = await self.correlator.fetch_detailed_pull_request(
                owner, repo, pr.number, expected_sha=sha
            )
            pr_not_found = snapshot is None

        base_sha = previous_sha
        if base_sha is None and snapshot is not None:
            head = await self.walker.ensure_commit(owner, repo, sha)
            if head.is_merge_commit:
                base_sha = snapshot.base_sha

        range_audit = None
        if base_sha is not None and snapshot is not None:
            range_audit = await self.auditor.audit(
                owner,
                repo,
                base_sha,
                sha,
                deployed_pr=snapshot,
                force_recheck=force_recheck,
            )

        return Evidence(
            commit_sha=sha,
            repository=deployment.repository,
            pull_request=snapshot,
            pr_not_found=pr_not_found,
            previous_sha=previous_sha,
            range_audit=range_audit,
            implicit_approval_mode=mode,
            default_branch=app.default_branch,
        )

    def _active_repository(self, app: MonitoredApplicationRow) -> Optional[str]:
        for repo in self.store.applications.repositories_for_app(app.id):
            if repo.status == REPO_ACTIVE:
                return repo.full_name
        return None

    def _store(
        self,
        deployment: DeploymentRow,
        outcome: Outcome,
        evidence: Optional[Evidence] = None,
    ) -> VerificationResult:
        snapshot = evidence.pull_request if evidence is not None else None
        unverified = outcome.details.get("unreviewed") or None
        stored = self.store.deployments.store_result(
            deployment.id,
            status=outcome.status,
            details=dict(outcome.details, rule=outcome.rule),
            pr_number=snapshot.number if snapshot is not None else None,
            pr_url=snapshot.url if snapshot is not None else None,
            pr_data=snapshot.model_dump(mode="json") if snapshot is not None else None,
            unverified_commits=unverified,
        )
        verification_total.labels(result=outcome.status.value).inc()
        logger.info(
            "Verified deployment=%s sha=%s status=%s rule=%s changed=%s protected=%s",
            deployment.id,
            (deployment.commit_sha or "")[:7],
            stored.to_status.value,
            outcome.rule,
            stored.changed,
            stored.protected,
        )
        return VerificationResult(
            deployment_id=deployment.id,
            result=RESULT_VERIFIED,
            status=stored.to_status,
            rule=outcome.rule,
            changed=stored.changed,
            protected=stored.protected,
        )
