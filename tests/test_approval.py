import pytest

from deploy_audit.status import ImplicitApprovalMode
from deploy_audit.verification.approval import (
    check_implicit_approval,
    evaluate_pr_approval,
    is_base_merge_commit,
)
from deploy_audit.verification.types import (
    PrCommitSnapshot,
    PullRequestSnapshot,
    ReviewSnapshot,
)

from fakes import at


def commit(sha, minutes, author="bob", message="change", parents=("p",)):
    return PrCommitSnapshot(
        sha=sha,
        author=author,
        message=message,
        committed_at=at(minutes),
        parent_shas=list(parents),
    )


def review(user, minutes, state="APPROVED"):
    return ReviewSnapshot(username=user, state=state, submitted_at=at(minutes))


def snapshot(commits, reviews=(), author="bob", merged_by="carol"):
    return PullRequestSnapshot(
        number=42,
        title="Feature",
        author=author,
        state="closed",
        base_ref="main",
        base_sha="base0",
        head_sha=commits[-1].sha if commits else "head",
        merge_commit_sha="m42",
        merged_by=merged_by,
        commits=list(commits),
        reviews=list(reviews),
    )


def test_approval_after_last_commit():
    check = evaluate_pr_approval(
        snapshot([commit("c1", 0), commit("c2", 5)], [review("alice", 10)])
    )
    assert check.approved
    assert check.approver == "alice"


def test_approval_at_same_instant_counts():
    check = evaluate_pr_approval(snapshot([commit("c1", 5)], [review("alice", 5)]))
    assert check.approved


def test_approval_before_last_commit_is_stale():
    check = evaluate_pr_approval(
        snapshot([commit("c1", 0), commit("c2", 20)], [review("alice", 10)])
    )
    assert not check.approved
    assert check.reason == "approval_before_last_commit"


@pytest.mark.parametrize("state", ["COMMENTED", "CHANGES_REQUESTED", "DISMISSED"])
def test_only_approved_reviews_count(state):
    check = evaluate_pr_approval(
        snapshot([commit("c1", 0)], [review("alice", 10, state=state)])
    )
    assert not check.approved
    assert check.reason == "no_approved_reviews"


def test_pr_without_commits_is_not_approved():
    check = evaluate_pr_approval(snapshot([], [review("alice", 10)]))
    assert not check.approved
    assert check.reason == "no_commits"


def test_base_branch_merge_after_approval_keeps_approval():
    refresh = commit(
        "c3", 30, message="Merge branch 'main' into feature-42", parents=("c2", "main1")
    )
    check = evaluate_pr_approval(
        snapshot([commit("c1", 0), commit("c2", 5), refresh], [review("alice", 10)])
    )
    assert is_base_merge_commit(refresh, "main")
    assert check.approved


def test_single_parent_commit_with_merge_message_moves_last_commit():
    disguised = commit("c2", 20, message="Merge branch 'main' into feature-42")
    check = evaluate_pr_approval(
        snapshot([commit("c1", 5), disguised], [review("alice", 10)])
    )
    assert not is_base_merge_commit(disguised, "main")
    assert not check.approved
    assert check.reason == "approval_before_last_commit"


def test_remote_tracking_merge_is_a_base_merge():
    refresh = commit(
        "c3",
        30,
        message="Merge remote-tracking branch 'origin/develop' into feat",
        parents=("c2", "develop1"),
    )
    assert is_base_merge_commit(refresh, "develop")
    pull_merge = commit("c4", 30, message="Merge pull request #7", parents=("a", "b"))
    assert not is_base_merge_commit(pull_merge, "main")


def test_implicit_approval_off():
    check = check_implicit_approval(
        snapshot([commit("c1", 0)]), ImplicitApprovalMode.off
    )
    assert not check.approved
    assert check.reason == "implicit_off"


def test_implicit_all_requires_a_different_merger():
    pr = snapshot([commit("c1", 0, author="bob")], author="bob", merged_by="carol")
    assert check_implicit_approval(pr, ImplicitApprovalMode.all).approved

    self_merged = snapshot([commit("c1", 0)], author="bob", merged_by="Bob")
    check = check_implicit_approval(self_merged, ImplicitApprovalMode.all)
    assert not check.approved
    assert check.reason == "implicit_self_merge"


def test_implicit_all_rejects_merger_who_wrote_last_commit():
    pr = snapshot(
        [commit("c1", 0, author="bob"), commit("c2", 5, author="carol")],
        author="bob",
        merged_by="carol",
    )
    check = check_implicit_approval(pr, ImplicitApprovalMode.all)
    assert not check.approved
    assert check.reason == "implicit_merger_is_last_author"


def test_implicit_dependabot_only():
    bot = "dependabot[bot]"
    pr = snapshot([commit("c1", 0, author=bot)], author=bot, merged_by="carol")
    check = check_implicit_approval(pr, "dependabot_only")
    assert check.approved
    assert check.approver == "carol"

    human_pr = snapshot([commit("c1", 0)], author="bob", merged_by="carol")
    assert (
        check_implicit_approval(human_pr, "dependabot_only").reason
        == "implicit_not_dependabot"
    )

    tampered = snapshot(
        [commit("c1", 0, author=bot), commit("c2", 5, author="mallory")],
        author=bot,
        merged_by="carol",
    )
    assert (
        check_implicit_approval(tampered, "dependabot_only").reason
        == "implicit_foreign_commits"
    )
