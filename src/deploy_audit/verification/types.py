from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence, Tuple

import pydantic

from deploy_audit.github.model import CheckRun, Commit, CompareResult, PullRequest, Review
from deploy_audit.status import FourEyesStatus, ImplicitApprovalMode, UnreviewedReason
from deploy_audit.storage.types import UTCDateTime


class CodeHost(Protocol):
    async def get_commit(self, owner: str, repo: str, sha: str) -> Commit: ...

    async def get_pulls_for_commit(
        self, owner: str, repo: str, sha: str
    ) -> List[PullRequest]: ...

    async def get_pull(self, owner: str, repo: str, number: int) -> PullRequest: ...

    async def get_pull_reviews(
        self, owner: str, repo: str, number: int
    ) -> List[Review]: ...

    async def get_pull_commits(
        self, owner: str, repo: str, number: int
    ) -> List[Commit]: ...

    async def get_check_runs(self, owner: str, repo: str, ref: str) -> List[CheckRun]: ...

    async def compare_commits(
        self, owner: str, repo: str, base: str, head: str
    ) -> CompareResult: ...


RebaseKey = Tuple[str, datetime, str]


def rebase_key(
    author: Optional[str], authored_at: Optional[datetime], message: Optional[str]
) -> Optional[RebaseKey]:
    """Identity of a change that survives "rebase and merge".

    Rebasing rewrites the SHA and committer date but keeps the author, the
    author date and the subject line.
    """
    if not author or authored_at is None or not message:
        return None
    subject = message.splitlines()[0].strip()
    return (author.lower(), authored_at, subject)


class SnapshotModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="forbid", frozen=True)


class ReviewSnapshot(SnapshotModel):
    username: Optional[str]
    state: Literal["APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED", "PENDING"]
    submitted_at: Optional[UTCDateTime] = None


class PrCommitSnapshot(SnapshotModel):
    sha: str
    author: Optional[str] = None
    message: str = ""
    authored_at: Optional[UTCDateTime] = None
    committed_at: Optional[UTCDateTime] = None
    parent_shas: List[str] = pydantic.Field(default_factory=list)

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.committed_at or self.authored_at


class CheckSnapshot(SnapshotModel):
    name: str
    status: str
    conclusion: Optional[str] = None


class PullRequestSnapshot(SnapshotModel):
    """Review-relevant state of a pull request, stored with the deployment."""

    number: int
    title: str
    url: Optional[str] = None
    author: Optional[str] = None
    state: str
    base_ref: str
    base_sha: str
    head_sha: str
    merge_commit_sha: Optional[str] = None
    created_at: Optional[UTCDateTime] = None
    merged_at: Optional[UTCDateTime] = None
    merged_by: Optional[str] = None
    commits: List[PrCommitSnapshot] = pydantic.Field(default_factory=list)
    reviews: List[ReviewSnapshot] = pydantic.Field(default_factory=list)
    checks: List[CheckSnapshot] = pydantic.Field(default_factory=list)

    @classmethod
    def from_github(
        cls,
        pr: PullRequest,
        reviews: Sequence[Review],
        commits: Sequence[Commit],
        checks: Sequence[CheckRun] = (),
    ) -> "PullRequestSnapshot":
        return cls(
            number=pr.number,
            title=pr.title,
            url=pr.html_url,
            author=pr.user.login if pr.user is not None else None,
            state=pr.state,
            base_ref=pr.base.ref,
            base_sha=pr.base.sha,
            head_sha=pr.head.sha,
            merge_commit_sha=pr.merge_commit_sha,
            created_at=pr.created_at,
            merged_at=pr.merged_at,
            merged_by=pr.merged_by.login if pr.merged_by is not None else None,
            commits=[
                PrCommitSnapshot(
                    sha=c.sha,
                    author=c.author_login,
                    message=c.commit.message,
                    authored_at=c.author_date,
                    committed_at=c.committer_date,
                    parent_shas=c.parent_shas,
                )
                for c in commits
            ],
            reviews=[
                ReviewSnapshot(
                    username=r.user.login if r.user is not None else None,
                    state=r.state,
                    submitted_at=r.submitted_at,
                )
                for r in reviews
            ],
            checks=[
                CheckSnapshot(name=c.name, status=c.status, conclusion=c.conclusion)
                for c in checks
            ],
        )

    @property
    def commit_shas(self) -> set[str]:
        return {c.sha for c in self.commits}

    def covers(self, sha: str) -> bool:
        return sha in self.commit_shas or sha in (self.head_sha, self.merge_commit_sha)

    def rebased_commit(self, key: Optional[RebaseKey]) -> Optional[PrCommitSnapshot]:
        """The PR commit a rebased commit on the base branch was made from."""
        if key is None:
            return None
        for commit in self.commits:
            if rebase_key(commit.author, commit.authored_at, commit.message) == key:
                return commit
        return None

    def matches(self, sha: str) -> bool:
        return sha in (self.head_sha, self.merge_commit_sha)

    @property
    def checks_passed(self) -> Optional[bool]:
        completed = [c for c in self.checks if c.status == "completed"]
        if not completed:
            return None
        return all(
            c.conclusion in ("success", "neutral", "skipped") for c in completed
        )


@dataclass(frozen=True)
class UnreviewedCommit:
    sha: str
    reason: UnreviewedReason
    message: Optional[str] = None
    author: Optional[str] = None
    pr_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "reason": self.reason.value,
            "message": (self.message or "").split("\n", 1)[0][:200],
            "author": self.author,
            "pr_number": self.pr_number,
        }


@dataclass(frozen=True)
class RangeAudit:
    base_sha: str
    head_sha: str
    commits_checked: int
    unreviewed: List[UnreviewedCommit] = field(default_factory=list)
    other_pr_numbers: List[int] = field(default_factory=list)
    empty: bool = False


@dataclass(frozen=True)
class ApprovalCheck:
    approved: bool
    reason: str
    approver: Optional[str] = None


@dataclass(frozen=True)
class Evidence:
    commit_sha: str
    repository: str
    pull_request: Optional[PullRequestSnapshot]
    pr_not_found: bool = False
    previous_sha: Optional[str] = None
    range_audit: Optional[RangeAudit] = None
    implicit_approval_mode: ImplicitApprovalMode = ImplicitApprovalMode.off
    default_branch: str = "main"


@dataclass(frozen=True)
class Outcome:
    status: FourEyesStatus
    rule: str
    details: Dict[str, Any] = field(default_factory=dict)
