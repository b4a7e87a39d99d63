from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Annotated, Any, Dict, List

import pydantic
from pydantic import BeforeValidator, PlainSerializer

from deploy_audit.status import FourEyesStatus, has_four_eyes


def _parse_utc_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"Unsupported datetime value type: {type(value)!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_db_datetime(value: datetime | str | None) -> str | None:
    if value is None:
        return None
    return format_utc_datetime(_parse_utc_datetime(value))


def _parse_json_list(value: Any) -> Any:
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


def _parse_bool(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return bool(value)
    return value


UTCDateTime = Annotated[
    datetime,
    BeforeValidator(_parse_utc_datetime),
    PlainSerializer(format_utc_datetime, return_type=str, when_used="always"),
]

JSONList = Annotated[List[Any], BeforeValidator(_parse_json_list)]
JSONDict = Annotated[Dict[str, Any], BeforeValidator(_parse_json_list)]
DBBool = Annotated[bool, BeforeValidator(_parse_bool)]


class StorageModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="ignore", validate_assignment=True)


class CommitRow(StorageModel):
    sha: str
    repo_owner: str
    repo_name: str
    author_username: str | None = None
    author_date: UTCDateTime | None = None
    committer_date: UTCDateTime | None = None
    message: str | None = None
    parent_shas: JSONList | None = None
    original_pr_number: int | None = None
    original_pr_title: str | None = None
    original_pr_url: str | None = None
    pr_approved: DBBool | None = None
    pr_approval_reason: str | None = None
    is_merge_commit: DBBool | None = None
    html_url: str | None = None
    updated_at: UTCDateTime | None = None

    @property
    def timestamp(self) -> datetime | None:
        return self.committer_date or self.author_date


class MonitoredApplicationRow(StorageModel):
    id: int
    team_slug: str
    environment_name: str
    app_name: str
    default_branch: str = "main"
    audit_start_year: int | None = None
    implicit_approval_mode: str = "off"
    slack_notifications_enabled: DBBool = False
    slack_channel_id: str | None = None
    slack_notifications_enabled_at: UTCDateTime | None = None
    is_active: DBBool = True
    created_at: UTCDateTime | None = None

    def __str__(self) -> str:
        return f"{self.team_slug}/{self.environment_name}/{self.app_name}"


class ApplicationRepositoryRow(StorageModel):
    id: int
    monitored_app_id: int
    github_owner: str
    github_repo_name: str
    status: str
    approved_at: UTCDateTime | None = None
    approved_by: str | None = None
    created_at: UTCDateTime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.github_owner}/{self.github_repo_name}"


class DeploymentRow(StorageModel):
    id: int
    monitored_app_id: int
    nais_deployment_id: str
    created_at: UTCDateTime
    team_slug: str
    environment_name: str
    app_name: str
    deployer_username: str | None = None
    commit_sha: str | None = None
    trigger_url: str | None = None
    detected_github_owner: str | None = None
    detected_github_repo_name: str | None = None
    resources: JSONList | None = None
    four_eyes_status: FourEyesStatus = FourEyesStatus.pending
    has_four_eyes: DBBool = False
    github_pr_number: int | None = None
    github_pr_url: str | None = None
    github_pr_data: JSONDict | None = None
    unverified_commits: JSONList | None = None
    verification_error: str | None = None
    manual_approval_by: str | None = None
    manual_approval_reason: str | None = None
    manual_approval_at: UTCDateTime | None = None
    slack_message_ts: str | None = None
    slack_channel_id: str | None = None
    updated_at: UTCDateTime | None = None

    @pydantic.model_validator(mode="after")
    def _check_projection(self) -> "DeploymentRow":
        if self.has_four_eyes != has_four_eyes(self.four_eyes_status):
            raise ValueError(
                f"has_four_eyes={self.has_four_eyes} does not match "
                f"status {self.four_eyes_status}"
            )
        return self

    @property
    def repository(self) -> str | None:
        if self.detected_github_owner is None or self.detected_github_repo_name is None:
            return None
        return f"{self.detected_github_owner}/{self.detected_github_repo_name}"


class StatusTransitionRow(StorageModel):
    id: int
    deployment_id: int
    from_status: str | None
    to_status: str
    from_has_four_eyes: DBBool | None = None
    to_has_four_eyes: DBBool
    changed_by: str | None = None
    change_source: str
    details: JSONDict | None = None
    created_at: UTCDateTime


class RepositoryAlertRow(StorageModel):
    id: int
    monitored_app_id: int
    deployment_id: int
    alert_type: str
    expected_github_owner: str
    expected_github_repo_name: str
    detected_github_owner: str
    detected_github_repo_name: str
    resolved: DBBool = False
    resolved_at: UTCDateTime | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None
    created_at: UTCDateTime | None = None
    nais_deployment_id: str | None = None
    deployment_created_at: UTCDateTime | None = None
    commit_sha: str | None = None


class SyncJobRow(StorageModel):
    id: int
    job_type: str
    monitored_app_id: int
    status: str
    started_at: UTCDateTime | None = None
    completed_at: UTCDateTime | None = None
    locked_by: str | None = None
    lock_expires_at: UTCDateTime | None = None
    result: JSONDict | None = None
    error: str | None = None
    created_at: UTCDateTime | None = None
