from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import aiohttp
from sanic.log import logger

from deploy_audit import config as app_config
from deploy_audit.errors import AuditError, RateLimitError
from deploy_audit.metric import record_api_call
from deploy_audit.status import FourEyesStatus, has_four_eyes
from deploy_audit.storage.types import DeploymentRow

SLACK_API_URL = "https://slack.com/api"

STATUS_TITLES = {
    FourEyesStatus.direct_push: "Direct push to the default branch",
    FourEyesStatus.approved_pr_with_unreviewed: "Deployment contains unreviewed commits",
    FourEyesStatus.missing: "Deployed pull request lacks approval",
    FourEyesStatus.repository_mismatch: "Deployed from an unapproved repository",
    FourEyesStatus.manually_approved: "Manually approved",
}


class SlackError(AuditError):
    pass


class Transport(Protocol):
    async def post_message(self, channel: str, text: str) -> str: ...

    async def update_message(self, channel: str, ts: str, text: str) -> None: ...

    async def delete_message(self, channel: str, ts: str) -> None: ...


def deployment_message(deployment: DeploymentRow) -> str:
    status = deployment.four_eyes_status
    marker = ":white_check_mark:" if has_four_eyes(status) else ":warning:"
    title = STATUS_TITLES.get(status, status.value)
    lines = [
        f"{marker} *{title}*",
        f"Application: {deployment.team_slug}/{deployment.environment_name}/{deployment.app_name}",
        f"Deployed: {deployment.created_at:%Y-%m-%d %H:%M} UTC"
        + (f" by {deployment.deployer_username}" if deployment.deployer_username else ""),
    ]
    if deployment.commit_sha:
        sha = deployment.commit_sha[:7]
        if deployment.repository:
            lines.append(
                f"Commit: <https://github.com/{deployment.repository}/commit/"
                f"{deployment.commit_sha}|{sha}>"
            )
        else:
            lines.append(f"Commit: {sha}")
    if deployment.github_pr_url:
        lines.append(f"Pull request: <{deployment.github_pr_url}|#{deployment.github_pr_number}>")
    if deployment.unverified_commits:
        lines.append(f"Unreviewed commits: {len(deployment.unverified_commits)}")
    if status == FourEyesStatus.manually_approved and deployment.manual_approval_by:
        lines.append(
            f"Approved by {deployment.manual_approval_by}: {deployment.manual_approval_reason}"
        )
    return "\n".join(lines)


class SlackTransport:
    """Minimal Slack Web API client for posting and editing alert messages."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: Optional[str] = app_config.SLACK_BOT_TOKEN,
        base_url: str = SLACK_API_URL,
    ):
        if not token:
            raise ValueError("SLACK_BOT_TOKEN is not configured")
        self.session = session
        self.token = token
        self.base_url = base_url.rstrip("/")

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        record_api_call(f"slack/{method}")
        async with self.session.post(
            f"{self.base_url}/{method}",
            json=payload,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json; charset=utf-8",
            },
        ) as response:
            if response.status == 429:
                raise RateLimitError(
                    "Slack rate limit exceeded",
                    reset_at=response.headers.get("Retry-After"),
                )
            response.raise_for_status()
            body = await response.json()
        if not body.get("ok"):
            raise SlackError(f"Slack {method} failed: {body.get('error', 'unknown')}")
        return body

    async def post_message(self, channel: str, text: str) -> str:
        body = await self._call("chat.postMessage", {"channel": channel, "text": text})
        logger.debug("Posted Slack message channel=%s ts=%s", channel, body["ts"])
        return body["ts"]

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        await self._call("chat.update", {"channel": channel, "ts": ts, "text": text})

    async def delete_message(self, channel: str, ts: str) -> None:
        await self._call("chat.delete", {"channel": channel, "ts": ts})
