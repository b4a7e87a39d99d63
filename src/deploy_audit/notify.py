from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

import aiohttp
from sanic.log import logger

from deploy_audit import config as app_config
from deploy_audit.errors import AuditError
from deploy_audit.metric import notification_total
from deploy_audit.slack import Transport, deployment_message
from deploy_audit.storage import AuditStore, DeploymentRow, MonitoredApplicationRow
from deploy_audit.verification.classifier import legacy_cutoff

SENT = "sent"
LOST_RACE = "lost_race"
FAILED = "failed"
RETRACT_FAILED = "retract_failed"

TRANSPORT_ERRORS = (AuditError, aiohttp.ClientError, asyncio.TimeoutError)


@dataclass
class NotificationSummary:
    sent: int = 0
    lost_race: int = 0
    failed: int = 0

    def add(self, result: str) -> None:
        setattr(self, result, getattr(self, result) + 1)


@dataclass(frozen=True)
class LegacySweepResult:
    deployment_ids: list
    alerts_resolved: int


class NotificationDispatcher:
    """Posts one alert message per problem deployment.

    The message is posted first and then claimed on the deployment row; a
    dispatcher that loses the claim deletes its own message again.
    """

    def __init__(
        self,
        store: AuditStore,
        transport: Transport,
        *,
        max_age_days: int = app_config.NOTIFICATION_MAX_AGE_DAYS,
        dry_run: bool = False,
        retract_attempts: int = 3,
        retract_delay: float = 1.0,
    ):
        self.store = store
        self.transport = transport
        self.max_age_days = max_age_days
        self.dry_run = dry_run
        self.retract_attempts = retract_attempts
        self.retract_delay = retract_delay

    async def notify_deployment(self, deployment: DeploymentRow, channel: str) -> str:
        text = deployment_message(deployment)
        ts = await self.transport.post_message(channel, text)
        if self.store.deployments.claim_notification(deployment.id, ts, channel):
            logger.info(
                "Notified deployment=%s status=%s channel=%s ts=%s",
                deployment.id,
                deployment.four_eyes_status.value,
                channel,
                ts,
            )
            notification_total.labels(result=SENT).inc()
            return SENT

        logger.info(
            "Notification for deployment=%s already claimed, retracting ts=%s",
            deployment.id,
            ts,
        )
        await self.retract(deployment, channel, ts)
        notification_total.labels(result=LOST_RACE).inc()
        return LOST_RACE

    async def retract(self, deployment: DeploymentRow, channel: str, ts: str) -> bool:
        """Delete a message that lost the claim, retrying transport failures."""
        for attempt in range(1, self.retract_attempts + 1):
            try:
                await self.transport.delete_message(channel, ts)
                return True
            except TRANSPORT_ERRORS:
                logger.warning(
                    "Retract attempt %d/%d failed deployment=%s channel=%s ts=%s",
                    attempt,
                    self.retract_attempts,
                    deployment.id,
                    channel,
                    ts,
                    exc_info=True,
                )
                if attempt < self.retract_attempts:
                    await asyncio.sleep(self.retract_delay * attempt)

        logger.error(
            "Duplicate notification left posted deployment=%s channel=%s ts=%s",
            deployment.id,
            channel,
            ts,
        )
        notification_total.labels(result=RETRACT_FAILED).inc()
        return False

    async def notify_pending(self, now: Optional[datetime] = None) -> NotificationSummary:
        summary = NotificationSummary()
        apps: Dict[int, MonitoredApplicationRow] = {}
        candidates = self.store.deployments.needing_notification(
            self.max_age_days, now=now
        )
        for deployment in candidates:
            app = apps.get(deployment.monitored_app_id)
            if app is None:
                app = self.store.applications.require_application(
                    deployment.monitored_app_id
                )
                apps[app.id] = app
            if self.dry_run:
                logger.info(
                    "DRY RUN: would notify deployment=%s channel=%s",
                    deployment.id,
                    app.slack_channel_id,
                )
                continue
            try:
                summary.add(await self.notify_deployment(deployment, app.slack_channel_id))
            except TRANSPORT_ERRORS:
                logger.error(
                    "Failed to notify deployment=%s", deployment.id, exc_info=True
                )
                notification_total.labels(result=FAILED).inc()
                summary.add(FAILED)

        if candidates:
            logger.info(
                "Notification pass candidates=%d sent=%d lost_race=%d failed=%d",
                len(candidates),
                summary.sent,
                summary.lost_race,
                summary.failed,
            )
        return summary

    async def update_notification(self, deployment: DeploymentRow) -> bool:
        if deployment.slack_message_ts is None or deployment.slack_channel_id is None:
            return False
        await self.transport.update_message(
            deployment.slack_channel_id,
            deployment.slack_message_ts,
            deployment_message(deployment),
        )
        notification_total.labels(result="updated").inc()
        return True


def run_legacy_sweep(store: AuditStore, now: Optional[datetime] = None) -> LegacySweepResult:
    cutoff = legacy_cutoff(now or datetime.now(timezone.utc))
    ids = store.deployments.mark_legacy_without_sha(cutoff)
    resolved = store.applications.resolve_alerts_for_legacy(cutoff)
    if ids or resolved:
        logger.info(
            "Legacy sweep marked=%d alerts_resolved=%d cutoff=%s",
            len(ids),
            resolved,
            cutoff.date(),
        )
    return LegacySweepResult(deployment_ids=ids, alerts_resolved=resolved)
