from datetime import timedelta

import pytest

from deploy_audit.errors import RateLimitError
from deploy_audit.status import FourEyesStatus
from deploy_audit.storage import AuditStore
from deploy_audit.verification import DeploymentVerifier
from deploy_audit.verification.verifier import RESULT_FAILED, RESULT_VERIFIED

from fakes import (
    FakeCodeHost,
    T0,
    at,
    make_commit,
    make_pull,
    make_review,
)


@pytest.fixture
def store(tmp_path):
    store = AuditStore(tmp_path / "audit.sqlite3")
    store.initialize()
    return store


@pytest.fixture
def app(store):
    app = store.applications.upsert_application(
        team_slug="team", environment_name="prod", app_name="svc"
    )
    store.applications.check_repository(app.id, "org", "svc")
    return app


@pytest.fixture
def host():
    return FakeCodeHost()


def make_verifier(store, host, **kwargs):
    return DeploymentVerifier(store, host, clock=lambda: at(24 * 60), **kwargs)


def deploy(store, app, nais_id, sha, minutes=100, owner="org", repo="svc", created_at=None):
    return store.deployments.insert_event(
        monitored_app_id=app.id,
        nais_deployment_id=nais_id,
        created_at=created_at or at(minutes),
        team_slug="team",
        environment_name="prod",
        app_name="svc",
        deployer_username="deployer",
        commit_sha=sha,
        trigger_url=None,
        detected_github_owner=owner,
        detected_github_repo_name=repo,
    ).deployment


def add_squashed_pr(host, review_minutes):
    host.add_commit(make_commit("base0", [], 0))
    host.add_commit(make_commit("c1", ["base0"], 5, author="bob"))
    host.add_commit(make_commit("sq42", ["base0"], 60, author="bob"))
    host.add_pull(
        make_pull(42, head_sha="c1", merge_commit_sha="sq42"),
        commits=["c1"],
        reviews=[make_review("alice", "APPROVED", review_minutes)],
    )


def add_history_with_direct_push(host):
    # base0 <- deadbeef <- m1 (merge of PR #7)
    #    \                /
    #     `---- p1 ------'
    host.add_commit(make_commit("base0", [], 0))
    host.add_commit(make_commit("deadbeef", ["base0"], 1, author="mallory"))
    host.add_commit(make_commit("p1", ["base0"], 2, author="bob"))
    host.add_commit(make_commit("m1", ["deadbeef", "p1"], 3, author="carol"))
    host.add_pull(
        make_pull(7, head_sha="p1", merge_commit_sha="m1"),
        commits=["p1"],
        reviews=[make_review("alice", "APPROVED", 10)],
    )


@pytest.mark.asyncio
async def test_old_deployment_without_sha_is_legacy_without_remote_calls(store, app, host):
    deployment = deploy(
        store, app, "old", None, created_at=T0 - timedelta(days=500)
    )

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.legacy
    assert result.rule == "legacy_without_sha"
    assert host.calls == []
    assert store.deployments.require(deployment.id).has_four_eyes


@pytest.mark.asyncio
async def test_ref_deployment_is_legacy(store, app, host):
    deployment = deploy(store, app, "ref", "refs/heads/main")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.legacy
    assert result.rule == "ref_instead_of_sha"
    assert host.calls == []


@pytest.mark.asyncio
async def test_commit_without_pr_is_direct_push(store, app, host):
    host.add_commit(make_commit("abc123", ["base0"], 5))
    deployment = deploy(store, app, "d1", "abc123")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.result == RESULT_VERIFIED
    assert result.status == FourEyesStatus.direct_push
    stored = store.deployments.require(deployment.id)
    assert not stored.has_four_eyes
    assert stored.github_pr_number is None


@pytest.mark.asyncio
async def test_pr_approved_after_last_commit(store, app, host):
    add_squashed_pr(host, review_minutes=10)
    deployment = deploy(store, app, "d1", "sq42")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.approved_pr
    assert result.rule == "explicit_approval"
    stored = store.deployments.require(deployment.id)
    assert stored.has_four_eyes
    assert stored.github_pr_number == 42
    assert stored.github_pr_url == "https://github.com/org/svc/pull/42"
    assert stored.github_pr_data["reviews"][0]["username"] == "alice"
    history = store.deployments.status_history(deployment.id)
    assert history[-1].details["approver"] == "alice"


@pytest.mark.asyncio
async def test_approval_before_last_commit_is_missing(store, app, host):
    add_squashed_pr(host, review_minutes=3)
    deployment = deploy(store, app, "d1", "sq42")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.missing
    details = store.deployments.status_history(deployment.id)[-1].details
    assert details["approval"] == "approval_before_last_commit"


@pytest.mark.asyncio
async def test_implicit_approval_when_enabled(store, host):
    app = store.applications.upsert_application(
        team_slug="team",
        environment_name="prod",
        app_name="svc",
        implicit_approval_mode="all",
    )
    host.add_commit(make_commit("base0", [], 0))
    host.add_commit(make_commit("c1", ["base0"], 5, author="bob"))
    host.add_commit(make_commit("sq42", ["base0"], 60, author="bob"))
    host.add_pull(make_pull(42, head_sha="c1", merge_commit_sha="sq42"), commits=["c1"])
    deployment = deploy(store, app, "d1", "sq42")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.implicitly_approved


@pytest.mark.asyncio
async def test_direct_push_in_range_overrides_pr_approval(store, app, host):
    add_history_with_direct_push(host)
    deploy(store, app, "d0", "base0", minutes=0)
    deployment = deploy(store, app, "d1", "m1")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.approved_pr_with_unreviewed
    assert result.rule == "unreviewed_commits"
    stored = store.deployments.require(deployment.id)
    assert stored.github_pr_number == 7
    assert [c["sha"] for c in stored.unverified_commits] == ["deadbeef"]
    assert stored.unverified_commits[0]["reason"] == "no_pr"
    assert stored.unverified_commits[0]["author"] == "mallory"

    cached = store.commits.get("org", "svc", "deadbeef")
    assert cached.pr_approved is False


@pytest.mark.asyncio
async def test_other_approved_prs_in_range(store, app, host):
    host.add_commit(make_commit("base0", [], 0))
    host.add_commit(make_commit("p1", ["base0"], 2))
    host.add_commit(make_commit("m1", ["base0", "p1"], 3))
    host.add_commit(make_commit("p2", ["m1"], 4))
    host.add_commit(make_commit("m2", ["m1", "p2"], 6))
    host.add_pull(
        make_pull(7, head_sha="p1", merge_commit_sha="m1"),
        commits=["p1"],
        reviews=[make_review("alice", "APPROVED", 10)],
    )
    host.add_pull(
        make_pull(8, head_sha="p2", merge_commit_sha="m2", base_sha="m1"),
        commits=["p2"],
        reviews=[make_review("dave", "APPROVED", 10)],
    )
    deploy(store, app, "d0", "base0", minutes=0)
    deployment = deploy(store, app, "d1", "m2")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.approved
    details = store.deployments.status_history(deployment.id)[-1].details
    assert details["pr_number"] == 8
    assert details["other_prs"] == [7]


@pytest.mark.asyncio
async def test_redeploying_same_commit_is_no_changes(store, app, host):
    deploy(store, app, "d0", "abc123", minutes=0)
    deployment = deploy(store, app, "d1", "abc123")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.no_changes
    assert host.calls == []


@pytest.mark.asyncio
async def test_verification_is_idempotent(store, app, host):
    add_squashed_pr(host, review_minutes=10)
    deployment = deploy(store, app, "d1", "sq42")
    verifier = make_verifier(store, host)

    first = await verifier.verify(deployment, app)
    second = await verifier.verify(store.deployments.require(deployment.id), app)

    assert first.changed
    assert not second.changed
    assert second.status == FourEyesStatus.approved_pr
    assert len(store.deployments.status_history(deployment.id)) == 1


@pytest.mark.asyncio
async def test_manual_approval_is_not_overwritten(store, app, host):
    host.add_commit(make_commit("abc123", ["base0"], 5))
    deployment = deploy(store, app, "d1", "abc123")
    store.deployments.manual_approve(
        deployment.id, approved_by="lead", reason="Reviewed in a pairing session"
    )

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.protected
    assert not result.changed
    assert result.status == FourEyesStatus.manually_approved
    stored = store.deployments.require(deployment.id)
    assert stored.four_eyes_status == FourEyesStatus.manually_approved


@pytest.mark.asyncio
async def test_unexpected_repository_is_recorded(store, app, host):
    host.add_commit(make_commit("abc123", ["base0"], 5))
    deployment = deploy(store, app, "d1", "abc123", repo="svc-fork")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.direct_push
    details = store.deployments.status_history(deployment.id)[-1].details
    assert details["repository_mismatch"] == {
        "expected": "org/svc",
        "detected": "org/svc-fork",
    }


@pytest.mark.asyncio
async def test_graph_walk_failure_marks_error(store, app, host):
    add_history_with_direct_push(host)
    deploy(store, app, "d0", "base0", minutes=0)
    deployment = deploy(store, app, "d1", "m1")

    result = await make_verifier(store, host, max_commits=2).verify(deployment, app)

    assert result.result == RESULT_FAILED
    assert result.status == FourEyesStatus.error
    stored = store.deployments.require(deployment.id)
    assert "exceeded 2 commits" in stored.verification_error


@pytest.mark.asyncio
async def test_rate_limit_propagates(store, app, host):
    host.rate_limited = True
    deployment = deploy(store, app, "d1", "abc123")

    with pytest.raises(RateLimitError):
        await make_verifier(store, host).verify(deployment, app)

    stored = store.deployments.require(deployment.id)
    assert stored.four_eyes_status == FourEyesStatus.pending


def add_rebased_pr(host):
    # PR #9 (o1, o2) landed on main with "rebase and merge" as r1, r2
    host.add_commit(make_commit("base0", [], 0))
    host.add_commit(make_commit("o1", ["base0"], 1, author="bob", message="Add endpoint"))
    host.add_commit(make_commit("o2", ["o1"], 2, author="bob", message="Wire endpoint"))
    host.add_commit(make_commit("r1", ["base0"], 1, author="bob", message="Add endpoint"))
    host.add_commit(make_commit("r2", ["r1"], 2, author="bob", message="Wire endpoint"))
    host.add_pull(
        make_pull(9, head_sha="o2", merge_commit_sha="r2"),
        commits=["o1", "o2"],
        reviews=[make_review("alice", "APPROVED", 10)],
        associated=["o1", "o2", "r1"],
    )


@pytest.mark.asyncio
async def test_rebase_merged_pr_is_approved(store, app, host):
    add_rebased_pr(host)
    deploy(store, app, "d0", "base0", minutes=0)
    deployment = deploy(store, app, "d1", "r2")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.approved_pr
    stored = store.deployments.require(deployment.id)
    assert stored.github_pr_number == 9
    assert not stored.unverified_commits


@pytest.mark.asyncio
async def test_rebased_commits_of_earlier_pr_are_matched(store, app, host):
    add_rebased_pr(host)
    host.add_commit(make_commit("c10", ["r2"], 20, author="bob"))
    host.add_commit(make_commit("sq10", ["r2"], 40, author="bob"))
    host.add_pull(
        make_pull(10, head_sha="c10", merge_commit_sha="sq10", base_sha="r2"),
        commits=["c10"],
        reviews=[make_review("dave", "APPROVED", 30)],
    )
    deploy(store, app, "d0", "base0", minutes=0)
    deployment = deploy(store, app, "d1", "sq10")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.approved
    details = store.deployments.status_history(deployment.id)[-1].details
    assert details["other_prs"] == [9]
    cached = store.commits.get("org", "svc", "r1")
    assert cached.pr_approved is True
    assert cached.original_pr_number == 9


@pytest.mark.asyncio
async def test_commit_with_different_author_is_not_a_rebased_copy(store, app, host):
    add_rebased_pr(host)
    host.add_commit(
        make_commit("x1", ["r2"], 1, author="mallory", message="Add endpoint")
    )
    host.add_commit(make_commit("sq10", ["x1"], 40, author="bob"))
    host.add_commit(make_commit("c10", ["x1"], 20, author="bob"))
    host.add_pull(
        make_pull(10, head_sha="c10", merge_commit_sha="sq10", base_sha="x1"),
        commits=["c10"],
        reviews=[make_review("dave", "APPROVED", 30)],
    )
    host.commit_pulls["x1"] = [9]
    deploy(store, app, "d0", "r2", minutes=0)
    deployment = deploy(store, app, "d1", "sq10")

    result = await make_verifier(store, host).verify(deployment, app)

    assert result.status == FourEyesStatus.approved_pr_with_unreviewed
    stored = store.deployments.require(deployment.id)
    assert [c["sha"] for c in stored.unverified_commits] == ["x1"]
