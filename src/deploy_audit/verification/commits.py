from __future__ import annotations

from typing import List, Optional

from sanic.log import logger

from deploy_audit.status import UnreviewedReason
from deploy_audit.storage.commits import CommitStore
from deploy_audit.storage.types import CommitRow
from deploy_audit.verification.approval import evaluate_pr_approval
from deploy_audit.verification.correlator import PullRequestCorrelator
from deploy_audit.verification.graph import CommitGraphWalker
from deploy_audit.verification.types import (
    PullRequestSnapshot,
    RangeAudit,
    UnreviewedCommit,
    rebase_key,
)

RECHECK = "recheck"
SKIP_VERIFIED = "skip_verified"
ADD_UNVERIFIED = "add_unverified"


def commit_cache_decision(commit: Optional[CommitRow], force_recheck: bool = False) -> str:
    if force_recheck or commit is None or commit.pr_approved is None:
        return RECHECK
    if commit.pr_approved:
        return SKIP_VERIFIED
    if commit.pr_approval_reason == UnreviewedReason.no_pr.value:
        # a PR may have been linked since the last lookup
        return RECHECK
    return ADD_UNVERIFIED


def _part_of(pr: PullRequestSnapshot, commit: CommitRow) -> bool:
    if pr.covers(commit.sha):
        return True
    key = rebase_key(commit.author_username, commit.author_date, commit.message)
    return pr.rebased_commit(key) is not None


def _cached_reason(commit: CommitRow) -> UnreviewedReason:
    try:
        return UnreviewedReason(commit.pr_approval_reason)
    except ValueError:
        return UnreviewedReason.pr_not_approved


class RangeAuditor:
    """Checks every commit in a deployed range for an approved originating PR."""

    def __init__(
        self,
        walker: CommitGraphWalker,
        correlator: PullRequestCorrelator,
        commits: CommitStore,
    ):
        self.walker = walker
        self.correlator = correlator
        self.commits = commits

    async def audit(
        self,
        owner: str,
        repo: str,
        base_sha: str,
        head_sha: str,
        deployed_pr: Optional[PullRequestSnapshot] = None,
        force_recheck: bool = False,
    ) -> RangeAudit:
        commits = await self.walker.commits_between(owner, repo, base_sha, head_sha)
        if not commits:
            return RangeAudit(
                base_sha=base_sha, head_sha=head_sha, commits_checked=0, empty=True
            )

        unreviewed: List[UnreviewedCommit] = []
        other_prs: set[int] = set()
        checked = 0
        for commit in commits:
            if commit.is_merge_commit:
                continue
            if deployed_pr is not None and _part_of(deployed_pr, commit):
                continue
            checked += 1
            finding, pr_number = await self.verify_commit(
                owner, repo, commit, force_recheck=force_recheck
            )
            if finding is not None:
                unreviewed.append(finding)
            elif pr_number is not None and (
                deployed_pr is None or pr_number != deployed_pr.number
            ):
                other_prs.add(pr_number)

        logger.info(
            "Range audit repo=%s/%s base=%s head=%s commits=%d checked=%d unreviewed=%d",
            owner,
            repo,
            base_sha[:7],
            head_sha[:7],
            len(commits),
            checked,
            len(unreviewed),
        )
        return RangeAudit(
            base_sha=base_sha,
            head_sha=head_sha,
            commits_checked=checked,
            unreviewed=unreviewed,
            other_pr_numbers=sorted(other_prs),
        )

    async def verify_commit(
        self, owner: str, repo: str, commit: CommitRow, force_recheck: bool = False
    ) -> tuple[Optional[UnreviewedCommit], Optional[int]]:
        decision = commit_cache_decision(commit, force_recheck)
        if decision == SKIP_VERIFIED:
            return None, commit.original_pr_number
        if decision == ADD_UNVERIFIED:
            return self._finding(commit, _cached_reason(commit)), None

        pr = await self.correlator.find_pull_request_for_commit(
            owner, repo, commit.sha, require_original=True, commit=commit
        )
        if pr is None:
            self.commits.set_verification(
                owner, repo, commit.sha, approved=False, reason=UnreviewedReason.no_pr.value
            )
            return self._finding(commit, UnreviewedReason.no_pr), None

        snapshot = await self.correlator.fetch_detailed_pull_request(owner, repo, pr.number)
        if snapshot is None:
            self.commits.set_verification(
                owner,
                repo,
                commit.sha,
                approved=False,
                reason=UnreviewedReason.pr_not_found.value,
                pr_number=pr.number,
                pr_title=pr.title,
                pr_url=pr.html_url,
            )
            return self._finding(commit, UnreviewedReason.pr_not_found, pr.number), None

        check = evaluate_pr_approval(snapshot)
        self.commits.set_verification(
            owner,
            repo,
            commit.sha,
            approved=check.approved,
            reason=check.reason if check.approved else UnreviewedReason.pr_not_approved.value,
            pr_number=snapshot.number,
            pr_title=snapshot.title,
            pr_url=snapshot.url,
        )
        if not check.approved:
            return (
                self._finding(commit, UnreviewedReason.pr_not_approved, snapshot.number),
                None,
            )
        return None, snapshot.number

    @staticmethod
    def _finding(
        commit: CommitRow, reason: UnreviewedReason, pr_number: Optional[int] = None
    ) -> UnreviewedCommit:
        return UnreviewedCommit(
            sha=commit.sha,
            reason=reason,
            message=commit.message,
            author=commit.author_username,
            pr_number=pr_number if pr_number is not None else commit.original_pr_number,
        )
