import pytest

from deploy_audit.errors import IntegrityError
from deploy_audit.storage import AuditStore, CommitRow, CommitStore


def _store(tmp_path):
    store = AuditStore(tmp_path / "audit.sqlite3")
    store.initialize()
    return store


def _commit(sha="a" * 40, **updates):
    data = {
        "sha": sha,
        "repo_owner": "org",
        "repo_name": "svc",
        "author_username": "alice",
        "author_date": "2026-02-19T10:00:00Z",
        "committer_date": "2026-02-19T10:05:00Z",
        "message": "Add feature",
        "parent_shas": ["b" * 40],
        "is_merge_commit": False,
    }
    data.update(updates)
    return CommitRow.model_validate(data)


def _updated_at(store, sha):
    with store.db.connect() as conn:
        return conn.execute(
            "SELECT updated_at FROM commits WHERE sha = ?", (sha,)
        ).fetchone()[0]


def test_upsert_round_trip(tmp_path):
    store = _store(tmp_path)
    stored = store.commits.upsert(_commit())

    assert stored.author_username == "alice"
    assert stored.parent_shas == ["b" * 40]
    assert stored.is_merge_commit is False
    assert store.commits.has_cached("org", "svc", "a" * 40)
    assert not store.commits.has_cached("org", "other", "a" * 40)
    assert store.commits.count("org", "svc") == 1


def test_upsert_never_erases_known_values(tmp_path):
    store = _store(tmp_path)
    store.commits.upsert(_commit())

    partial = CommitRow(sha="a" * 40, repo_owner="org", repo_name="svc")
    merged = store.commits.upsert(partial)

    assert merged.author_username == "alice"
    assert merged.message == "Add feature"
    assert merged.parent_shas == ["b" * 40]


def test_repeated_upsert_leaves_row_untouched(tmp_path):
    store = _store(tmp_path)
    store.commits.upsert(_commit())
    first = _updated_at(store, "a" * 40)

    store.commits.upsert(_commit())
    assert _updated_at(store, "a" * 40) == first

    store.commits.upsert(_commit(message="Add feature, reworded"))
    assert _updated_at(store, "a" * 40) >= first
    assert store.commits.get("org", "svc", "a" * 40).message == "Add feature, reworded"


def test_upsert_many_is_atomic(tmp_path, monkeypatch):
    store = _store(tmp_path)
    original = CommitStore._upsert
    calls = []

    def flaky(conn, commit, now):
        calls.append(commit.sha)
        if len(calls) == 2:
            raise RuntimeError("disk full")
        original(conn, commit, now)

    monkeypatch.setattr(CommitStore, "_upsert", staticmethod(flaky))

    with pytest.raises(RuntimeError):
        store.commits.upsert_many([_commit("1" * 40), _commit("2" * 40)])

    assert store.commits.count("org", "svc") == 0


def test_set_verification(tmp_path):
    store = _store(tmp_path)
    store.commits.upsert(_commit())

    store.commits.set_verification(
        "org",
        "svc",
        "a" * 40,
        approved=True,
        reason="approved_after_last_commit",
        pr_number=42,
        pr_title="Feature",
        pr_url="https://github.com/org/svc/pull/42",
    )

    row = store.commits.get("org", "svc", "a" * 40)
    assert row.pr_approved is True
    assert row.original_pr_number == 42
    assert row.pr_approval_reason == "approved_after_last_commit"

    with pytest.raises(IntegrityError):
        store.commits.set_verification(
            "org", "svc", "f" * 40, approved=False, reason="no_pr"
        )


def test_later_verdict_without_pr_keeps_known_pr(tmp_path):
    store = _store(tmp_path)
    store.commits.upsert(_commit())
    store.commits.set_verification(
        "org",
        "svc",
        "a" * 40,
        approved=True,
        reason="approved_after_last_commit",
        pr_number=5,
        pr_title="Fix login",
        pr_url="https://github.com/org/svc/pull/5",
    )

    store.commits.set_verification("org", "svc", "a" * 40, approved=False, reason="no_pr")

    row = store.commits.get("org", "svc", "a" * 40)
    assert row.pr_approved is False
    assert row.pr_approval_reason == "no_pr"
    assert row.original_pr_number == 5
    assert row.original_pr_title == "Fix login"
    assert row.original_pr_url == "https://github.com/org/svc/pull/5"


def test_get_many_returns_only_known(tmp_path):
    store = _store(tmp_path)
    store.commits.upsert_many([_commit("1" * 40), _commit("2" * 40)])

    found = store.commits.get_many("org", "svc", ["1" * 40, "3" * 40])
    assert set(found) == {"1" * 40}
    assert store.commits.get_many("org", "svc", []) == {}


def test_upsert_raises_when_row_cannot_be_read_back(tmp_path, monkeypatch):
    store = _store(tmp_path)
    monkeypatch.setattr(store.commits, "get", lambda *args: None)

    with pytest.raises(IntegrityError, match="vanished after upsert"):
        store.commits.upsert(_commit())
