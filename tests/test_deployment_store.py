from datetime import datetime, timedelta, timezone

import pytest

from deploy_audit.errors import IntegrityError
from deploy_audit.status import ChangeSource, FourEyesStatus
from deploy_audit.storage import AuditStore


def _store(tmp_path):
    store = AuditStore(tmp_path / "audit.sqlite3")
    store.initialize()
    return store


def _app(store, **kwargs):
    return store.applications.upsert_application(
        team_slug="team", environment_name="prod", app_name="svc", **kwargs
    )


def _insert(store, app, nais_id, created_at, sha="abc123", **kwargs):
    data = dict(
        monitored_app_id=app.id,
        nais_deployment_id=nais_id,
        created_at=created_at,
        team_slug="team",
        environment_name="prod",
        app_name="svc",
        deployer_username="deployer",
        commit_sha=sha,
        trigger_url=None,
        detected_github_owner="org",
        detected_github_repo_name="svc",
    )
    data.update(kwargs)
    return store.deployments.insert_event(**data)


T = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_insert_event_is_idempotent(tmp_path):
    store = _store(tmp_path)
    app = _app(store)

    first = _insert(store, app, "d1", T, resources=[{"kind": "Application"}])
    second = _insert(
        store, app, "d1", T, resources=[{"kind": "Application"}, {"kind": "Topic"}]
    )

    assert first.inserted
    assert not second.inserted
    assert second.deployment.id == first.deployment.id
    assert second.deployment.four_eyes_status == FourEyesStatus.pending
    assert len(second.deployment.resources) == 2
    assert store.deployments.status_history(first.deployment.id) == []


def test_previous_deployment_uses_created_at_not_insert_order(tmp_path):
    store = _store(tmp_path)
    app = _app(store)

    d3 = _insert(store, app, "d3", T + timedelta(hours=3), sha="sha3").deployment
    d1 = _insert(store, app, "d1", T + timedelta(hours=1), sha="sha1").deployment
    d2 = _insert(store, app, "d2", T + timedelta(hours=2), sha="sha2").deployment

    assert store.deployments.previous_deployment(d3).id == d2.id
    assert store.deployments.previous_deployment(d2).id == d1.id
    assert store.deployments.previous_deployment(d1) is None


def test_previous_deployment_skips_unusable_candidates(tmp_path):
    store = _store(tmp_path)
    app = _app(store)

    _insert(store, app, "old", datetime(2024, 6, 1, tzinfo=timezone.utc), sha="sha0")
    _insert(store, app, "nosha", T + timedelta(hours=1), sha=None)
    _insert(store, app, "ref", T + timedelta(hours=2), sha="refs/heads/main")
    _insert(
        store,
        app,
        "other-repo",
        T + timedelta(hours=3),
        sha="sha-x",
        detected_github_repo_name="other",
    )
    current = _insert(store, app, "cur", T + timedelta(hours=4), sha="sha4").deployment

    assert store.deployments.previous_deployment(current).commit_sha == "sha0"
    assert store.deployments.previous_deployment(current, audit_start_year=2025) is None


def test_store_result_writes_history_only_on_change(tmp_path):
    store = _store(tmp_path)
    app = _app(store)
    deployment = _insert(store, app, "d1", T).deployment

    first = store.deployments.store_result(
        deployment.id, status=FourEyesStatus.approved_pr, pr_number=42
    )
    second = store.deployments.store_result(
        deployment.id, status=FourEyesStatus.approved_pr, pr_number=42
    )

    assert first.changed
    assert not second.changed
    history = store.deployments.status_history(deployment.id)
    assert len(history) == 1
    assert history[0].from_status == "pending"
    assert history[0].to_status == "approved_pr"
    assert history[0].from_has_four_eyes is False
    assert history[0].to_has_four_eyes is True
    assert history[0].change_source == "sync"

    stored = store.deployments.require(deployment.id)
    assert stored.has_four_eyes
    assert stored.github_pr_number == 42


def test_manual_approval_is_sticky(tmp_path):
    store = _store(tmp_path)
    app = _app(store)
    deployment = _insert(store, app, "d1", T).deployment
    store.deployments.store_result(deployment.id, status=FourEyesStatus.direct_push)

    approved = store.deployments.manual_approve(
        deployment.id, approved_by="lead", reason="hotfix reviewed after deploy"
    )
    assert approved.four_eyes_status == FourEyesStatus.manually_approved
    assert approved.manual_approval_by == "lead"
    assert approved.manual_approval_at is not None

    result = store.deployments.store_result(
        deployment.id, status=FourEyesStatus.direct_push
    )
    assert result.protected
    assert not result.changed
    assert (
        store.deployments.require(deployment.id).four_eyes_status
        == FourEyesStatus.manually_approved
    )

    sources = [h.change_source for h in store.deployments.status_history(deployment.id)]
    assert sources == ["sync", "manual"]


def test_manual_approval_requires_reason(tmp_path):
    store = _store(tmp_path)
    app = _app(store)
    deployment = _insert(store, app, "d1", T).deployment

    with pytest.raises(ValueError):
        store.deployments.manual_approve(deployment.id, approved_by="lead", reason=" ")
    with pytest.raises(ValueError):
        store.deployments.manual_approve(deployment.id, approved_by="", reason="ok")
    with pytest.raises(IntegrityError):
        store.deployments.manual_approve(999, approved_by="lead", reason="ok")


def test_reset_status_returns_to_pending(tmp_path):
    store = _store(tmp_path)
    app = _app(store)
    deployment = _insert(store, app, "d1", T).deployment
    store.deployments.manual_approve(deployment.id, approved_by="lead", reason="ok")

    result = store.deployments.reset_status(deployment.id, changed_by="lead")

    assert result.to_status == FourEyesStatus.pending
    assert store.deployments.require(deployment.id).has_four_eyes is False
    assert store.deployments.status_history(deployment.id)[-1].change_source == "manual"


def test_list_for_verification_orders_pending_before_error(tmp_path):
    store = _store(tmp_path)
    app = _app(store)
    e = _insert(store, app, "e", T).deployment
    p2 = _insert(store, app, "p2", T + timedelta(hours=2)).deployment
    p1 = _insert(store, app, "p1", T + timedelta(hours=1)).deployment
    done = _insert(store, app, "done", T + timedelta(hours=3)).deployment
    store.deployments.mark_error(e.id, "boom")
    store.deployments.store_result(done.id, status=FourEyesStatus.approved_pr)

    ids = [d.id for d in store.deployments.list_for_verification(app.id)]
    assert ids == [p1.id, p2.id, e.id]
    assert [d.id for d in store.deployments.list_for_verification(app.id, 1)] == [p1.id]

    errored = store.deployments.require(e.id)
    assert errored.verification_error == "boom"
    assert store.deployments.status_counts(app.id) == {
        "pending": 2,
        "error": 1,
        "approved_pr": 1,
    }


def test_claim_notification_only_once(tmp_path):
    store = _store(tmp_path)
    app = _app(store)
    deployment = _insert(store, app, "d1", T).deployment

    assert store.deployments.claim_notification(deployment.id, "1.1", "C1")
    assert not store.deployments.claim_notification(deployment.id, "1.2", "C1")
    assert store.deployments.require(deployment.id).slack_message_ts == "1.1"


def test_set_status_records_source(tmp_path):
    store = _store(tmp_path)
    app = _app(store)
    deployment = _insert(store, app, "d1", T).deployment

    store.deployments.set_status(
        deployment.id,
        FourEyesStatus.repository_mismatch,
        changed_by="lead",
        source=ChangeSource.manual,
    )

    history = store.deployments.status_history(deployment.id)
    assert history[0].to_status == "repository_mismatch"
    assert history[0].changed_by == "lead"
