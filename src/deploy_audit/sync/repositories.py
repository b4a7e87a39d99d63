"""Operator decisions on repositories detected for an application."""

from __future__ import annotations

from sanic.log import logger

from deploy_audit.status import ChangeSource, FourEyesStatus
from deploy_audit.storage import ApplicationRepositoryRow, AuditStore
from deploy_audit.storage.applications import ALERT_PENDING_APPROVAL


def approve_repository(
    store: AuditStore, repo_id: int, *, approved_by: str, set_active: bool = False
) -> ApplicationRepositoryRow:
    repo = store.applications.approve_repository(
        repo_id, approved_by=approved_by, set_active=set_active
    )
    for alert in store.applications.unresolved_alerts(repo.monitored_app_id):
        if (
            alert.alert_type == ALERT_PENDING_APPROVAL
            and alert.detected_github_owner == repo.github_owner
            and alert.detected_github_repo_name == repo.github_repo_name
        ):
            store.applications.resolve_alert(
                alert.id,
                resolved_by=approved_by,
                note=f"Repository {repo.full_name} approved",
            )
    logger.info(
        "Repository approved repo=%s app_id=%s by=%s status=%s",
        repo.full_name,
        repo.monitored_app_id,
        approved_by,
        repo.status,
    )
    return repo


def reject_repository(store: AuditStore, repo_id: int, *, rejected_by: str) -> int:
    """Drop a pending repository; its deployments become repository_mismatch.

    Deployments already classified from it lose their approval too, except
    manually approved and legacy ones.
    """
    repo = store.applications.reject_repository(repo_id)
    deployments = store.deployments.unprotected_for_repository(
        repo.monitored_app_id, repo.github_owner, repo.github_repo_name
    )
    for deployment in deployments:
        store.deployments.set_status(
            deployment.id,
            FourEyesStatus.repository_mismatch,
            changed_by=rejected_by,
            source=ChangeSource.manual,
            details={"reason": "repository_rejected", "repository": repo.full_name},
        )
    logger.warning(
        "Repository rejected repo=%s app_id=%s by=%s deployments=%d",
        repo.full_name,
        repo.monitored_app_id,
        rejected_by,
        len(deployments),
    )
    return len(deployments)
