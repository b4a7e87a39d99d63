from __future__ import annotations

from enum import Enum
from typing import FrozenSet


class FourEyesStatus(str, Enum):
    pending = "pending"
    legacy = "legacy"
    no_changes = "no_changes"
    approved = "approved"
    approved_pr = "approved_pr"
    implicitly_approved = "implicitly_approved"
    manually_approved = "manually_approved"
    direct_push = "direct_push"
    approved_pr_with_unreviewed = "approved_pr_with_unreviewed"
    missing = "missing"
    repository_mismatch = "repository_mismatch"
    error = "error"

    def __str__(self) -> str:
        return self.value


class UnreviewedReason(str, Enum):
    no_pr = "no_pr"
    pr_not_approved = "pr_not_approved"
    pr_not_found = "pr_not_found"


class ImplicitApprovalMode(str, Enum):
    off = "off"
    dependabot_only = "dependabot_only"
    all = "all"


class ChangeSource(str, Enum):
    sync = "sync"
    manual = "manual"
    system = "system"


APPROVED_STATUSES: FrozenSet[FourEyesStatus] = frozenset(
    {
        FourEyesStatus.no_changes,
        FourEyesStatus.approved,
        FourEyesStatus.approved_pr,
        FourEyesStatus.implicitly_approved,
        FourEyesStatus.manually_approved,
    }
)

NOT_APPROVED_STATUSES: FrozenSet[FourEyesStatus] = frozenset(
    {
        FourEyesStatus.direct_push,
        FourEyesStatus.approved_pr_with_unreviewed,
        FourEyesStatus.missing,
        FourEyesStatus.repository_mismatch,
    }
)

PENDING_STATUSES: FrozenSet[FourEyesStatus] = frozenset({FourEyesStatus.pending})

LEGACY_STATUSES: FrozenSet[FourEyesStatus] = frozenset({FourEyesStatus.legacy})

# statuses automatic classification must leave alone
PROTECTED_STATUSES: FrozenSet[FourEyesStatus] = frozenset(
    {FourEyesStatus.manually_approved, FourEyesStatus.legacy}
)

# statuses that raise a "needs attention" notification
PROBLEM_STATUSES = NOT_APPROVED_STATUSES


def has_four_eyes(status: FourEyesStatus | str) -> bool:
    status = FourEyesStatus(status)
    return status in APPROVED_STATUSES or status in LEGACY_STATUSES


def status_group(status: FourEyesStatus | str) -> str:
    status = FourEyesStatus(status)
    if status in APPROVED_STATUSES:
        return "approved"
    if status in NOT_APPROVED_STATUSES:
        return "not_approved"
    if status in PENDING_STATUSES:
        return "pending"
    if status in LEGACY_STATUSES:
        return "legacy"
    return "error"
