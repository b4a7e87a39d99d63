"""Four-eyes decision table.

Rules are plain functions evaluated top to bottom; the first one returning an
:class:`Outcome` decides the status. Exemption rules only look at the stored
deployment and never need the code host. Review rules look at the gathered
:class:`Evidence`.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from dateutil.relativedelta import relativedelta

from deploy_audit.status import FourEyesStatus
from deploy_audit.storage.types import DeploymentRow, MonitoredApplicationRow
from deploy_audit.verification.approval import (
    check_implicit_approval,
    evaluate_pr_approval,
)
from deploy_audit.verification.types import Evidence, Outcome

ExemptionRule = Callable[
    [DeploymentRow, MonitoredApplicationRow, datetime], Optional[Outcome]
]
ReviewRule = Callable[[Evidence], Optional[Outcome]]


def legacy_cutoff(now: datetime) -> datetime:
    return now - relativedelta(years=1)


def audit_start(app: MonitoredApplicationRow) -> Optional[datetime]:
    if app.audit_start_year is None:
        return None
    return datetime(app.audit_start_year, 1, 1, tzinfo=timezone.utc)


def rule_legacy_without_sha(
    deployment: DeploymentRow, app: MonitoredApplicationRow, now: datetime
) -> Optional[Outcome]:
    if deployment.commit_sha is None and deployment.created_at < legacy_cutoff(now):
        return Outcome(
            FourEyesStatus.legacy,
            "legacy_without_sha",
            {"reason": "no commit SHA and older than the legacy cutoff"},
        )
    return None


def rule_ref_instead_of_sha(
    deployment: DeploymentRow, app: MonitoredApplicationRow, now: datetime
) -> Optional[Outcome]:
    if deployment.commit_sha is not None and deployment.commit_sha.startswith("refs/"):
        return Outcome(
            FourEyesStatus.legacy,
            "ref_instead_of_sha",
            {"reason": f"deployed a ref ({deployment.commit_sha}), not a commit"},
        )
    return None


def rule_before_audit_start(
    deployment: DeploymentRow, app: MonitoredApplicationRow, now: datetime
) -> Optional[Outcome]:
    start = audit_start(app)
    if start is not None and deployment.created_at < start:
        return Outcome(
            FourEyesStatus.legacy,
            "before_audit_start",
            {"reason": f"deployed before audit start year {app.audit_start_year}"},
        )
    return None


def rule_no_changes(evidence: Evidence) -> Optional[Outcome]:
    if evidence.range_audit is not None and evidence.range_audit.empty:
        return Outcome(
            FourEyesStatus.no_changes,
            "no_changes",
            {"previous_sha": evidence.previous_sha},
        )
    return None


def rule_direct_push(evidence: Evidence) -> Optional[Outcome]:
    if evidence.pull_request is None:
        return Outcome(
            FourEyesStatus.direct_push,
            "direct_push",
            {"pr_not_found": evidence.pr_not_found},
        )
    return None


def rule_unreviewed_commits(evidence: Evidence) -> Optional[Outcome]:
    audit = evidence.range_audit
    if audit is None or not audit.unreviewed:
        return None
    return Outcome(
        FourEyesStatus.approved_pr_with_unreviewed,
        "unreviewed_commits",
        {
            "pr_number": evidence.pull_request.number,
            "unreviewed": [c.to_dict() for c in audit.unreviewed],
        },
    )


def rule_explicit_approval(evidence: Evidence) -> Optional[Outcome]:
    check = evaluate_pr_approval(evidence.pull_request)
    if not check.approved:
        return None
    audit = evidence.range_audit
    if audit is not None and audit.other_pr_numbers:
        return Outcome(
            FourEyesStatus.approved,
            "explicit_approval",
            {
                "pr_number": evidence.pull_request.number,
                "approver": check.approver,
                "other_prs": list(audit.other_pr_numbers),
            },
        )
    return Outcome(
        FourEyesStatus.approved_pr,
        "explicit_approval",
        {"pr_number": evidence.pull_request.number, "approver": check.approver},
    )


def rule_implicit_approval(evidence: Evidence) -> Optional[Outcome]:
    check = check_implicit_approval(
        evidence.pull_request, evidence.implicit_approval_mode
    )
    if not check.approved:
        return None
    return Outcome(
        FourEyesStatus.implicitly_approved,
        "implicit_approval",
        {
            "pr_number": evidence.pull_request.number,
            "mode": evidence.implicit_approval_mode.value,
            "merged_by": check.approver,
        },
    )


def rule_missing(evidence: Evidence) -> Optional[Outcome]:
    check = evaluate_pr_approval(evidence.pull_request)
    return Outcome(
        FourEyesStatus.missing,
        "missing_approval",
        {"pr_number": evidence.pull_request.number, "approval": check.reason},
    )


EXEMPTION_RULES: Sequence[ExemptionRule] = (
    rule_legacy_without_sha,
    rule_ref_instead_of_sha,
    rule_before_audit_start,
)

REVIEW_RULES: Sequence[ReviewRule] = (
    rule_no_changes,
    rule_direct_push,
    rule_unreviewed_commits,
    rule_explicit_approval,
    rule_implicit_approval,
    rule_missing,
)


class FourEyesClassifier:
    def __init__(
        self,
        exemption_rules: Sequence[ExemptionRule] = EXEMPTION_RULES,
        review_rules: Sequence[ReviewRule] = REVIEW_RULES,
    ):
        self.exemption_rules = tuple(exemption_rules)
        self.review_rules = tuple(review_rules)

    def exempt(
        self,
        deployment: DeploymentRow,
        app: MonitoredApplicationRow,
        now: datetime,
    ) -> Optional[Outcome]:
        for rule in self.exemption_rules:
            outcome = rule(deployment, app, now)
            if outcome is not None:
                return outcome
        return None

    def classify(
        self, evidence: Evidence, expected_repository: Optional[str] = None
    ) -> Outcome:
        for rule in self.review_rules:
            outcome = rule(evidence)
            if outcome is not None:
                break
        else:
            raise RuntimeError("No four-eyes rule matched")

        if expected_repository is not None and expected_repository != evidence.repository:
            details = dict(outcome.details)
            details["repository_mismatch"] = {
                "expected": expected_repository,
                "detected": evidence.repository,
            }
            outcome = replace(outcome, details=details)
        return outcome
