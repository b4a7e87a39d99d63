from contextlib import AsyncExitStack
import time
from typing import Any, Dict, Optional

from sanic import Sanic, response, Request
from sanic.exceptions import BadRequest, NotFound
from sanic.log import logger
import sanic.log
from prometheus_client import core
from prometheus_client.exposition import generate_latest

from deploy_audit import config
from deploy_audit.errors import IntegrityError
from deploy_audit.logger import configure_logging
from deploy_audit.metric import (
    db_size_bytes,
    error_counter,
    observe_view_response_latency,
    pending_deployments,
    request_counter,
    sqlite_db_total_size_bytes,
)
from deploy_audit.runtime import audit_services, open_store
from deploy_audit.status import FourEyesStatus, has_four_eyes, status_group
from deploy_audit.storage import AuditStore
from deploy_audit.sync.repositories import approve_repository, reject_repository
from deploy_audit.sync.scheduler import SyncScheduler


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def _require_text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise BadRequest(f"'{key}' is required")
    return value.strip()


def application_list(store: AuditStore) -> list:
    result = []
    for app in store.applications.list_applications(active_only=False):
        data = _dump(app)
        data["status_counts"] = store.deployments.status_counts(app.id)
        data["repositories"] = [
            _dump(r) for r in store.applications.repositories_for_app(app.id)
        ]
        result.append(data)
    return result


def deployment_list(
    store: AuditStore,
    app_id: int,
    status: Optional[str] = None,
    year: Optional[int] = None,
    limit: int = 100,
) -> list:
    if store.applications.get_application(app_id) is None:
        raise NotFound(f"Application {app_id} not found")
    if status is not None:
        try:
            status = FourEyesStatus(status)
        except ValueError:
            raise BadRequest(f"Unknown status {status!r}")
    return [
        _dump(d)
        for d in store.deployments.list_for_app(
            app_id, status=status, year=year, limit=limit
        )
    ]


def deployment_detail(store: AuditStore, deployment_id: int) -> Dict[str, Any]:
    deployment = store.deployments.get(deployment_id)
    if deployment is None:
        raise NotFound(f"Deployment {deployment_id} not found")
    data = _dump(deployment)
    data["status_group"] = status_group(deployment.four_eyes_status)
    data["history"] = [_dump(h) for h in store.deployments.status_history(deployment_id)]
    return data


def alert_list(store: AuditStore, app_id: Optional[int] = None) -> list:
    return [_dump(a) for a in store.applications.unresolved_alerts(app_id)]


def audit_export(store: AuditStore, app_id: int, year: int) -> Dict[str, Any]:
    """Yearly audit trail: every deployment with its four-eyes verdict."""
    app = store.applications.get_application(app_id)
    if app is None:
        raise NotFound(f"Application {app_id} not found")
    deployments = store.deployments.list_for_app(app_id, year=year)
    rows = []
    for d in reversed(deployments):
        rows.append(
            {
                "id": d.id,
                "nais_deployment_id": d.nais_deployment_id,
                "created_at": d.model_dump(mode="json")["created_at"],
                "commit_sha": d.commit_sha,
                "repository": d.repository,
                "deployer": d.deployer_username,
                "status": d.four_eyes_status.value,
                "has_four_eyes": d.has_four_eyes,
                "pr_number": d.github_pr_number,
                "pr_url": d.github_pr_url,
                "manual_approval_by": d.manual_approval_by,
                "manual_approval_reason": d.manual_approval_reason,
                "unverified_commits": d.unverified_commits or [],
            }
        )
    counts: Dict[str, int] = {}
    for row in rows:
        counts[row["status"]] = counts.get(row["status"], 0) + 1
    return {
        "application": str(app),
        "year": year,
        "total": len(rows),
        "with_four_eyes": sum(1 for r in rows if r["has_four_eyes"]),
        "pending": counts.get(FourEyesStatus.pending.value, 0),
        "status_counts": counts,
        "alerts": [_dump(a) for a in store.applications.alerts_for_app(app_id, year)],
        "deployments": rows,
    }


def approve_deployment(
    store: AuditStore, deployment_id: int, payload: Dict[str, Any]
) -> Dict[str, Any]:
    approved_by = _require_text(payload, "approved_by")
    reason = _require_text(payload, "reason")
    try:
        deployment = store.deployments.manual_approve(
            deployment_id, approved_by=approved_by, reason=reason
        )
    except IntegrityError as e:
        raise NotFound(str(e))
    return _dump(deployment)


def reset_deployment(
    store: AuditStore, deployment_id: int, payload: Dict[str, Any]
) -> Dict[str, Any]:
    changed_by = _require_text(payload, "changed_by")
    try:
        result = store.deployments.reset_status(deployment_id, changed_by=changed_by)
    except IntegrityError as e:
        raise NotFound(str(e))
    return {
        "deployment_id": result.deployment_id,
        "from_status": result.from_status.value,
        "to_status": result.to_status.value,
        "has_four_eyes": has_four_eyes(result.to_status),
    }


def resolve_alert(
    store: AuditStore, alert_id: int, payload: Dict[str, Any]
) -> Dict[str, Any]:
    resolved_by = _require_text(payload, "resolved_by")
    note = _require_text(payload, "note")
    try:
        alert = store.applications.resolve_alert(
            alert_id, resolved_by=resolved_by, note=note
        )
    except IntegrityError as e:
        raise NotFound(str(e))
    return _dump(alert)


def create_app(store: Optional[AuditStore] = None):
    app = Sanic("deploy_audit")
    app.update_config(config)

    configure_logging(sanic.log.logger)

    app.ctx.store = store or open_store()
    app.ctx.services = None
    app.ctx.scheduler = None

    @app.listener("before_server_start")
    async def init(app, loop):
        logger.debug("Creating service stack")
        app.ctx.exit_stack = AsyncExitStack()
        app.ctx.services = await app.ctx.exit_stack.enter_async_context(
            audit_services(app.ctx.store)
        )

        async def run_sync(app_id: int, full: bool) -> None:
            orchestrator = app.ctx.services.orchestrator
            monitored = app.ctx.store.applications.require_application(app_id)
            await orchestrator.sync_application_locked(monitored, full=full)
            await orchestrator.verify_application_locked(
                monitored, limit=config.VERIFY_LIMIT_PER_APP
            )

        app.ctx.scheduler = SyncScheduler(handler=run_sync)

    @app.listener("after_server_stop")
    async def shutdown(app, loop):
        if app.ctx.scheduler is not None:
            await app.ctx.scheduler.shutdown()
        await app.ctx.exit_stack.aclose()

    @app.on_request
    async def on_request(request: Request):
        request.ctx.started = time.monotonic()
        if request.path == "/metrics":
            return
        request_counter.labels(path=request.path).inc()

    @app.on_response
    async def on_response(request: Request, resp):
        started = getattr(request.ctx, "started", None)
        if started is not None and resp is not None:
            path = request.route.path if request.route is not None else request.path
            observe_view_response_latency(
                path, request.method, resp.status, time.monotonic() - started
            )

    @app.get("/status")
    async def status(request):
        logger.debug("status check")
        return response.text("ok")

    @app.get("/metrics")
    async def metrics(request):
        pending_deployments.set(app.ctx.store.deployments.count_pending())
        db_size_bytes.set(sqlite_db_total_size_bytes(app.ctx.store.db.db_path))
        return response.raw(generate_latest(core.REGISTRY))

    @app.get("/api/applications")
    async def applications(request):
        return response.json(application_list(app.ctx.store))

    @app.get("/api/applications/<app_id:int>/deployments")
    async def deployments(request, app_id: int):
        year = request.args.get("year")
        return response.json(
            deployment_list(
                app.ctx.store,
                app_id,
                status=request.args.get("status"),
                year=int(year) if year else None,
                limit=int(request.args.get("limit", 100)),
            )
        )

    @app.get("/api/applications/<app_id:int>/audit/<year:int>")
    async def audit(request, app_id: int, year: int):
        return response.json(audit_export(app.ctx.store, app_id, year))

    @app.get("/api/deployments/<deployment_id:int>")
    async def deployment(request, deployment_id: int):
        return response.json(deployment_detail(app.ctx.store, deployment_id))

    @app.post("/api/deployments/<deployment_id:int>/approve")
    async def approve(request, deployment_id: int):
        data = approve_deployment(app.ctx.store, deployment_id, request.json or {})
        dispatcher = app.ctx.services.dispatcher if app.ctx.services else None
        if dispatcher is not None:
            try:
                await dispatcher.update_notification(
                    app.ctx.store.deployments.require(deployment_id)
                )
            except Exception:  # noqa: BLE001
                error_counter.labels(context="notification_update").inc()
                logger.error(
                    "Failed to update notification deployment=%s",
                    deployment_id,
                    exc_info=True,
                )
        return response.json(data)

    @app.post("/api/deployments/<deployment_id:int>/reset")
    async def reset(request, deployment_id: int):
        return response.json(
            reset_deployment(app.ctx.store, deployment_id, request.json or {})
        )

    @app.get("/api/alerts")
    async def alerts(request):
        app_id = request.args.get("app_id")
        return response.json(
            alert_list(app.ctx.store, int(app_id) if app_id else None)
        )

    @app.post("/api/alerts/<alert_id:int>/resolve")
    async def resolve(request, alert_id: int):
        return response.json(resolve_alert(app.ctx.store, alert_id, request.json or {}))

    @app.post("/api/repositories/<repo_id:int>/approve")
    async def approve_repo(request, repo_id: int):
        payload = request.json or {}
        try:
            repo = approve_repository(
                app.ctx.store,
                repo_id,
                approved_by=_require_text(payload, "approved_by"),
                set_active=bool(payload.get("set_active", False)),
            )
        except IntegrityError as e:
            raise NotFound(str(e))
        return response.json(_dump(repo))

    @app.post("/api/repositories/<repo_id:int>/reject")
    async def reject_repo(request, repo_id: int):
        payload = request.json or {}
        try:
            moved = reject_repository(
                app.ctx.store,
                repo_id,
                rejected_by=_require_text(payload, "rejected_by"),
            )
        except IntegrityError as e:
            raise NotFound(str(e))
        return response.json({"repository_id": repo_id, "deployments_flagged": moved})

    @app.post("/api/applications/<app_id:int>/sync")
    async def sync(request, app_id: int):
        if app.ctx.store.applications.get_application(app_id) is None:
            raise NotFound(f"Application {app_id} not found")
        full = bool((request.json or {}).get("full", False))
        scheduled = await app.ctx.scheduler.request(app_id, full=full)
        return response.json({"scheduled": scheduled}, status=202)

    return app
