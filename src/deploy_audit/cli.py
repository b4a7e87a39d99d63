import asyncio
from datetime import datetime, timezone
import logging
from typing import List, Optional

import humanize
from tabulate import tabulate
import typer

from deploy_audit import config
from deploy_audit.db_migrations import current_revision, migrate_db
from deploy_audit.logger import configure_logging
from deploy_audit.model import load_applications, register_applications
from deploy_audit.notify import run_legacy_sweep
from deploy_audit.runtime import audit_services, open_store
from deploy_audit.status import FourEyesStatus
from deploy_audit.storage import AuditStore, MonitoredApplicationRow
from deploy_audit.sync.repositories import approve_repository, reject_repository

logger = logging.getLogger("deploy_audit")

app = typer.Typer()


@app.callback()
def init():
    configure_logging(logger)


def _select_apps(store: AuditStore, name: Optional[str]) -> List[MonitoredApplicationRow]:
    if name is None:
        return store.applications.list_applications(active_only=True)
    try:
        team, env, app_name = name.split("/")
    except ValueError:
        raise typer.BadParameter("expected team/environment/app", param_hint="--app")
    found = store.applications.find_application(team, env, app_name)
    if found is None:
        raise typer.BadParameter(f"application {name} is not registered")
    return [found]


async def job_loop():
    store = open_store()
    logger.info("Entering job loop worker=%s interval=%ss", config.POD_ID, config.SYNC_INTERVAL)
    async with audit_services(store) as services:
        while True:
            try:
                await services.orchestrator.run_cycle()
            except (KeyboardInterrupt, asyncio.CancelledError):
                raise
            except Exception:  # noqa: BLE001
                logger.error("Job loop encountered error", exc_info=True)
            logger.debug("Sleeping for %d", config.SYNC_INTERVAL)
            await asyncio.sleep(config.SYNC_INTERVAL)


@app.command()
def migrate(database: str = typer.Option(config.DATABASE_PATH, help="sqlite path")):
    before = current_revision(database)
    after = migrate_db(database)
    logger.info("Database migrated path=%s from=%s to=%s", database, before, after)
    typer.echo(f"{database}: {after}")


@app.command()
def register(path: str = typer.Argument(config.APPS_CONFIG)):
    """Register the applications declared in the YAML apps file."""
    store = open_store()
    registered = register_applications(store, load_applications(path))
    for monitored in registered:
        typer.echo(f"{monitored.id}\t{monitored}")


@app.command()
def sync(
    app_name: Optional[str] = typer.Option(None, "--app"),
    full: bool = False,
):
    store = open_store()

    async def handle():
        async with audit_services(store) as services:
            for monitored in _select_apps(store, app_name):
                run = await services.orchestrator.sync_application_locked(
                    monitored, full=full
                )
                typer.echo(f"{monitored}: {run.status} {run.result or ''}")

    asyncio.run(handle())


@app.command()
def verify(
    app_name: Optional[str] = typer.Option(None, "--app"),
    limit: int = config.VERIFY_LIMIT_PER_APP,
):
    store = open_store()

    async def handle():
        async with audit_services(store) as services:
            for monitored in _select_apps(store, app_name):
                run = await services.orchestrator.verify_application_locked(
                    monitored, limit=limit
                )
                typer.echo(f"{monitored}: {run.status} {run.result or ''}")

    asyncio.run(handle())


@app.command()
def notify():
    store = open_store()

    async def handle():
        async with audit_services(store) as services:
            if services.dispatcher is None:
                typer.echo("Notifications are not configured")
                raise typer.Exit(1)
            summary = await services.dispatcher.notify_pending()
            sweep = run_legacy_sweep(store)
            typer.echo(
                f"sent={summary.sent} lost_race={summary.lost_race} "
                f"failed={summary.failed} legacy={len(sweep.deployment_ids)}"
            )

    asyncio.run(handle())


@app.command()
def worker():
    asyncio.run(job_loop())


@app.command()
def serve(host: str = "0.0.0.0", port: int = 8000):
    from deploy_audit.web import create_app

    create_app().run(host=host, port=port, single_process=True)


@app.command()
def approve(deployment_id: int, approved_by: str, reason: str):
    store = open_store()
    deployment = store.deployments.manual_approve(
        deployment_id, approved_by=approved_by, reason=reason
    )
    typer.echo(f"Deployment {deployment.id}: {deployment.four_eyes_status.value}")


@app.command()
def reset(deployment_id: int, changed_by: str):
    store = open_store()
    result = store.deployments.reset_status(deployment_id, changed_by=changed_by)
    typer.echo(
        f"Deployment {deployment_id}: {result.from_status.value} -> {result.to_status.value}"
    )


@app.command()
def resolve_alert(alert_id: int, resolved_by: str, note: str):
    store = open_store()
    alert = store.applications.resolve_alert(alert_id, resolved_by=resolved_by, note=note)
    typer.echo(f"Alert {alert.id} resolved by {alert.resolved_by}")


@app.command()
def approve_repo(repo_id: int, approved_by: str, active: bool = False):
    repo = approve_repository(
        open_store(), repo_id, approved_by=approved_by, set_active=active
    )
    typer.echo(f"{repo.full_name}: {repo.status}")


@app.command()
def reject_repo(repo_id: int, rejected_by: str):
    moved = reject_repository(open_store(), repo_id, rejected_by=rejected_by)
    typer.echo(f"Repository {repo_id} rejected, {moved} deployments flagged")


@app.command()
def summary():
    store = open_store()
    now = datetime.now(timezone.utc)
    columns = [
        FourEyesStatus.pending,
        FourEyesStatus.approved_pr,
        FourEyesStatus.approved,
        FourEyesStatus.direct_push,
        FourEyesStatus.missing,
        FourEyesStatus.approved_pr_with_unreviewed,
        FourEyesStatus.error,
    ]
    rows = []
    for monitored in store.applications.list_applications(active_only=False):
        counts = store.deployments.status_counts(monitored.id)
        latest = store.deployments.latest_for_app(monitored.id)
        rows.append(
            [str(monitored)]
            + [counts.get(s.value, 0) for s in columns]
            + [
                len(store.applications.unresolved_alerts(monitored.id)),
                humanize.naturaltime(now - latest.created_at) if latest else "never",
            ]
        )
    headers = ["application"] + [s.value for s in columns] + ["alerts", "last deploy"]
    typer.echo(tabulate(rows, headers=headers))


def main():
    app()
