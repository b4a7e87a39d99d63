"""Deployment events from the NAIS console GraphQL API."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple

import aiohttp
import pydantic
from sanic.log import logger

from deploy_audit import config as app_config
from deploy_audit.errors import AuditError, NotFoundError, RateLimitError
from deploy_audit.metric import record_api_call
from deploy_audit.storage.types import UTCDateTime

APP_DEPLOYMENTS_QUERY = """
query AppDeploys($team: Slug!, $env: String!, $app: String!, $first: Int, $after: Cursor) {
  team(slug: $team) {
    environment(name: $env) {
      application(name: $app) {
        deployments(first: $first, after: $after) {
          pageInfo { hasNextPage endCursor totalCount }
          nodes {
            id
            createdAt
            teamSlug
            environmentName
            triggerUrl
            repository
            commitSha
            deployerUsername
            resources { nodes { id kind name } }
          }
        }
      }
    }
  }
}
"""

_GITHUB_URL = re.compile(r"^https?://github\.com/([^/]+)/([^/]+)")
_REPOSITORY = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$")


def parse_repository(value: Optional[str]) -> Optional[Tuple[str, str]]:
    if not value:
        return None
    m = _REPOSITORY.match(value.strip())
    if m is None:
        return None
    return m.group(1), m.group(2)


def parse_trigger_url(url: Optional[str]) -> Optional[Tuple[str, str]]:
    """``https://github.com/org/svc/actions/runs/1`` -> ``("org", "svc")``."""
    if not url:
        return None
    m = _GITHUB_URL.match(url)
    if m is None:
        return None
    repo = m.group(2)
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return m.group(1), repo


class EventModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)


class DeploymentResource(EventModel):
    id: Optional[str] = None
    kind: str
    name: str


class DeploymentEvent(EventModel):
    id: str
    created_at: UTCDateTime = pydantic.Field(alias="createdAt")
    team_slug: str = pydantic.Field(alias="teamSlug")
    environment_name: str = pydantic.Field(alias="environmentName")
    trigger_url: Optional[str] = pydantic.Field(default=None, alias="triggerUrl")
    repository: Optional[str] = None
    commit_sha: Optional[str] = pydantic.Field(default=None, alias="commitSha")
    deployer_username: Optional[str] = pydantic.Field(
        default=None, alias="deployerUsername"
    )
    resources: List[DeploymentResource] = pydantic.Field(default_factory=list)

    @pydantic.field_validator("resources", mode="before")
    @classmethod
    def _unwrap_nodes(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("nodes") or []
        return value if value is not None else []

    @pydantic.field_validator("commit_sha", "deployer_username", "repository", mode="before")
    @classmethod
    def _empty_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def detect_repository(self) -> Optional[Tuple[str, str]]:
        return parse_repository(self.repository) or parse_trigger_url(self.trigger_url)


@dataclass(frozen=True)
class DeploymentEventPage:
    events: List[DeploymentEvent]
    next_cursor: Optional[str]
    has_more: bool


class AppRef(Protocol):
    team_slug: str
    environment_name: str
    app_name: str


class NaisClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str = app_config.NAIS_GRAPHQL_URL,
        api_key: Optional[str] = app_config.NAIS_API_KEY,
        page_size: int = app_config.NAIS_PAGE_SIZE,
    ):
        if not url.endswith("/graphql"):
            url = url.rstrip("/") + "/graphql"
        self.session = session
        self.url = url
        self.api_key = api_key
        self.page_size = page_size
        self.call_count = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        self.call_count += 1
        record_api_call("nais/graphql")
        async with self.session.post(
            self.url,
            json={"query": query, "variables": variables},
            headers=self._headers(),
        ) as response:
            if response.status == 429:
                raise RateLimitError("NAIS API rate limit exceeded")
            if response.status >= 400:
                text = await response.text()
                raise AuditError(
                    f"NAIS API returned HTTP {response.status}: {text[:200]}"
                )
            try:
                payload = await response.json()
            except aiohttp.ContentTypeError as e:
                raise AuditError(
                    f"NAIS API did not return JSON, check that {self.url} is the "
                    "GraphQL endpoint"
                ) from e

        if payload.get("errors"):
            messages = "; ".join(e.get("message", "") for e in payload["errors"])
            raise AuditError(f"NAIS GraphQL error: {messages}")
        return payload.get("data") or {}

    async def fetch_deployment_events(
        self, app: AppRef, cursor: Optional[str] = None
    ) -> DeploymentEventPage:
        data = await self._query(
            APP_DEPLOYMENTS_QUERY,
            {
                "team": app.team_slug,
                "env": app.environment_name,
                "app": app.app_name,
                "first": self.page_size,
                "after": cursor,
            },
        )
        application = ((data.get("team") or {}).get("environment") or {}).get(
            "application"
        )
        if application is None:
            raise NotFoundError(
                f"Application {app.team_slug}/{app.environment_name}/{app.app_name} "
                "not found or not accessible"
            )

        deployments = application["deployments"]
        page_info = deployments.get("pageInfo") or {}
        events = [DeploymentEvent.model_validate(n) for n in deployments["nodes"]]
        logger.debug(
            "NAIS page app=%s/%s/%s events=%d has_next=%s",
            app.team_slug,
            app.environment_name,
            app.app_name,
            len(events),
            page_info.get("hasNextPage"),
        )
        return DeploymentEventPage(
            events=events,
            next_cursor=page_info.get("endCursor"),
            has_more=bool(page_info.get("hasNextPage")),
        )
