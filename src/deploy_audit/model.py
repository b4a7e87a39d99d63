from pathlib import Path
from typing import List, Optional, Union

import pydantic
import yaml

from deploy_audit.status import ImplicitApprovalMode


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="forbid", populate_by_name=True)


class Application(Model):
    team: str
    environment: str
    app: str
    default_branch: str = pydantic.Field("main", alias="default-branch")
    audit_start_year: Optional[int] = pydantic.Field(None, alias="audit-start-year")
    implicit_approval: ImplicitApprovalMode = pydantic.Field(
        ImplicitApprovalMode.off, alias="implicit-approval"
    )
    slack_channel: Optional[str] = pydantic.Field(None, alias="slack-channel")
    notifications: bool = False
    active: bool = True

    @pydantic.model_validator(mode="after")
    def _channel_required(self) -> "Application":
        if self.notifications and not self.slack_channel:
            raise ValueError(
                f"{self.team}/{self.environment}/{self.app}: "
                "notifications require slack-channel"
            )
        return self


class AppsConfig(Model):
    applications: List[Application] = pydantic.Field(default_factory=list)


def load_applications(path: Union[str, Path]) -> AppsConfig:
    with open(path) as fh:
        data = yaml.safe_load(fh) or {}
    return AppsConfig.model_validate(data)


def register_applications(store, config: AppsConfig) -> list:
    registered = []
    for entry in config.applications:
        registered.append(
            store.applications.upsert_application(
                team_slug=entry.team,
                environment_name=entry.environment,
                app_name=entry.app,
                default_branch=entry.default_branch,
                audit_start_year=entry.audit_start_year,
                implicit_approval_mode=entry.implicit_approval,
                slack_channel_id=entry.slack_channel,
                slack_notifications_enabled=entry.notifications,
                is_active=entry.active,
            )
        )
    return registered
