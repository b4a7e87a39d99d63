import sqlite3

from deploy_audit.db_migrations import current_revision, head_revision, migrate_db
from deploy_audit.storage import AuditStore


def test_migrate_db_runs_from_packaged_scripts(tmp_path, monkeypatch):
    db_path = tmp_path / "runtime" / "audit.sqlite3"
    monkeypatch.chdir(tmp_path)

    assert current_revision(db_path) is None
    assert migrate_db(db_path, revision="head") == head_revision()

    with sqlite3.connect(str(db_path)) as conn:
        tables = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        indexes = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        deployment_columns = {
            row[1] for row in conn.execute("PRAGMA table_info(deployments)").fetchall()
        }
        revision = conn.execute("SELECT version_num FROM alembic_version").fetchone()[0]

    assert {
        "monitored_applications",
        "application_repositories",
        "deployments",
        "deployment_status_history",
        "commits",
        "repository_alerts",
        "sync_jobs",
    } <= tables
    assert "idx_sync_jobs_running" in indexes
    assert {"slack_message_ts", "slack_channel_id"} <= deployment_columns
    assert revision == "0003_add_slack_message_columns"


def test_migrated_db_is_compatible_with_store(tmp_path):
    db_path = tmp_path / "audit.sqlite3"
    migrate_db(db_path)

    store = AuditStore(db_path, worker_id="w1")
    store.initialize()
    app = store.applications.upsert_application(
        team_slug="team", environment_name="prod", app_name="svc"
    )

    assert store.sync_jobs.acquire("nais_sync", app.id) is not None
    assert store.sync_jobs.acquire("nais_sync", app.id) is None


def test_partial_migration_reports_revision(tmp_path):
    db_path = tmp_path / "audit.sqlite3"

    assert migrate_db(db_path, revision="0001_initial") == "0001_initial"
    assert current_revision(db_path) == "0001_initial"
    assert migrate_db(db_path) == "0003_add_slack_message_columns"
