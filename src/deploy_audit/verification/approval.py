"""Review policy checks applied to a single pull request snapshot."""

from __future__ import annotations

import re
from typing import List, Optional

from deploy_audit.status import ImplicitApprovalMode
from deploy_audit.verification.types import (
    ApprovalCheck,
    PrCommitSnapshot,
    PullRequestSnapshot,
)

DEPENDABOT_IDENTITIES = frozenset({"dependabot[bot]", "dependabot"})


def _same(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


def base_merge_patterns(base_branch: str) -> List[re.Pattern]:
    base = re.escape(base_branch)
    return [
        re.compile(rf"^Merge branch '{base}' into", re.IGNORECASE),
        re.compile(r"^Merge branch '(main|master)' into", re.IGNORECASE),
        re.compile(rf"^Merge remote-tracking branch 'origin/{base}' into", re.IGNORECASE),
    ]


def is_base_merge_commit(commit: PrCommitSnapshot, base_branch: str) -> bool:
    """True for "Merge branch 'main' into feature" style merge commits.

    The message alone is not enough: a single-parent commit can carry any
    message, so only real merges qualify.
    """
    if len(commit.parent_shas) < 2:
        return False
    message = commit.message or ""
    return any(p.match(message) for p in base_merge_patterns(base_branch))


def last_reviewable_commit(
    snapshot: PullRequestSnapshot,
) -> Optional[PrCommitSnapshot]:
    if not snapshot.commits:
        return None
    real = [
        c for c in snapshot.commits if not is_base_merge_commit(c, snapshot.base_ref)
    ]
    return real[-1] if real else snapshot.commits[-1]


def evaluate_pr_approval(snapshot: PullRequestSnapshot) -> ApprovalCheck:
    """An APPROVED review at or after the last authored commit is required.

    Merges of the base branch into the PR branch do not move the last commit,
    so refreshing a branch after approval keeps the approval valid.
    """
    last = last_reviewable_commit(snapshot)
    if last is None:
        return ApprovalCheck(approved=False, reason="no_commits")

    approvals = [
        r
        for r in snapshot.reviews
        if r.state == "APPROVED" and r.submitted_at is not None
    ]
    if not approvals:
        return ApprovalCheck(approved=False, reason="no_approved_reviews")

    last_at = last.timestamp
    if last_at is None:
        raise ValueError(f"Commit {last.sha} in PR #{snapshot.number} has no timestamp")

    qualifying = [r for r in approvals if r.submitted_at >= last_at]
    if not qualifying:
        return ApprovalCheck(approved=False, reason="approval_before_last_commit")

    return ApprovalCheck(
        approved=True,
        reason="approved_after_last_commit",
        approver=qualifying[0].username,
    )


def check_implicit_approval(
    snapshot: PullRequestSnapshot, mode: ImplicitApprovalMode
) -> ApprovalCheck:
    mode = ImplicitApprovalMode(mode)
    if mode == ImplicitApprovalMode.off:
        return ApprovalCheck(approved=False, reason="implicit_off")

    merger = snapshot.merged_by
    creator = snapshot.author
    if merger is None or creator is None:
        return ApprovalCheck(approved=False, reason="implicit_missing_identities")

    if mode == ImplicitApprovalMode.dependabot_only:
        if creator.lower() != "dependabot[bot]":
            return ApprovalCheck(approved=False, reason="implicit_not_dependabot")
        authors = {(c.author or "").lower() for c in snapshot.commits}
        if not authors or not authors <= DEPENDABOT_IDENTITIES:
            return ApprovalCheck(approved=False, reason="implicit_foreign_commits")
        if _same(merger, creator):
            return ApprovalCheck(approved=False, reason="implicit_self_merge")
        return ApprovalCheck(
            approved=True, reason="implicit_dependabot_only", approver=merger
        )

    last = last_reviewable_commit(snapshot)
    last_author = last.author if last is not None else None
    if last_author is None:
        return ApprovalCheck(approved=False, reason="implicit_missing_identities")
    if _same(merger, creator):
        return ApprovalCheck(approved=False, reason="implicit_self_merge")
    if _same(merger, last_author):
        return ApprovalCheck(approved=False, reason="implicit_merger_is_last_author")
    return ApprovalCheck(approved=True, reason="implicit_all", approver=merger)
