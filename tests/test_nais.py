from types import SimpleNamespace

import pytest

from deploy_audit.errors import AuditError, NotFoundError, RateLimitError
from deploy_audit.nais import (
    DeploymentEvent,
    NaisClient,
    parse_repository,
    parse_trigger_url,
)

APP = SimpleNamespace(team_slug="team", environment_name="prod", app_name="svc")

NODE = {
    "id": "dep-1",
    "createdAt": "2026-03-02T09:00:00Z",
    "teamSlug": "team",
    "environmentName": "prod",
    "triggerUrl": "https://github.com/org/svc/actions/runs/1",
    "repository": "",
    "commitSha": "abc123",
    "deployerUsername": "",
    "resources": {"nodes": [{"id": "r1", "kind": "Application", "name": "svc"}]},
}


class FakeResponse:
    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self):
        return self.payload

    async def text(self):
        return str(self.payload)


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, headers=None):
        self.requests.append((url, json, headers))
        return self.responses.pop(0)


def page(nodes, has_next=False, cursor=None):
    return {
        "data": {
            "team": {
                "environment": {
                    "application": {
                        "deployments": {
                            "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
                            "nodes": nodes,
                        }
                    }
                }
            }
        }
    }


@pytest.mark.parametrize(
    "value, expected",
    [
        ("org/svc", ("org", "svc")),
        (" org/svc.api ", ("org", "svc.api")),
        ("not a repo", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_repository(value, expected):
    assert parse_repository(value) == expected


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://github.com/org/svc/actions/runs/1", ("org", "svc")),
        ("https://github.com/org/svc.git", ("org", "svc")),
        ("https://gitlab.com/org/svc", None),
        (None, None),
    ],
)
def test_parse_trigger_url(url, expected):
    assert parse_trigger_url(url) == expected


def test_event_parsing():
    event = DeploymentEvent.model_validate(NODE)

    assert event.id == "dep-1"
    assert event.created_at.tzinfo is not None
    assert event.repository is None
    assert event.deployer_username is None
    assert [r.kind for r in event.resources] == ["Application"]
    assert event.detect_repository() == ("org", "svc")


def test_repository_field_wins_over_trigger_url():
    event = DeploymentEvent.model_validate(dict(NODE, repository="org/other"))
    assert event.detect_repository() == ("org", "other")


@pytest.mark.asyncio
async def test_fetch_deployment_events_page():
    session = FakeSession(FakeResponse(payload=page([NODE], has_next=True, cursor="c1")))
    client = NaisClient(session, url="https://console.example/", api_key="key", page_size=25)

    result = await client.fetch_deployment_events(APP, cursor="c0")

    assert [e.id for e in result.events] == ["dep-1"]
    assert result.has_more
    assert result.next_cursor == "c1"
    url, body, headers = session.requests[0]
    assert url == "https://console.example/graphql"
    assert body["variables"] == {
        "team": "team",
        "env": "prod",
        "app": "svc",
        "first": 25,
        "after": "c0",
    }
    assert headers["Authorization"] == "Bearer key"


@pytest.mark.asyncio
async def test_unknown_application():
    session = FakeSession(FakeResponse(payload={"data": {"team": None}}))
    client = NaisClient(session, url="https://console.example/graphql", api_key=None)

    with pytest.raises(NotFoundError):
        await client.fetch_deployment_events(APP)
    assert "Authorization" not in session.requests[0][2]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error",
    [
        (FakeResponse(status=429), RateLimitError),
        (FakeResponse(status=502, payload={"message": "bad gateway"}), AuditError),
        (FakeResponse(payload={"errors": [{"message": "forbidden"}]}), AuditError),
    ],
)
async def test_api_errors(response, error):
    client = NaisClient(FakeSession(response), url="https://console.example/graphql")

    with pytest.raises(error):
        await client.fetch_deployment_events(APP)
