from http import HTTPStatus

import gidgethub
import pytest

from deploy_audit.errors import NotFoundError, RateLimitError
from deploy_audit.github.api import API


class FakeGitHub:
    def __init__(self, items=None, error=None):
        self.items = items or {}
        self.error = error
        self.urls = []

    async def getitem(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.items[url]

    async def getiter(self, url, iterable_key=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        for item in self.items[url]:
            yield item


COMMIT = {
    "sha": "abc123",
    "commit": {
        "message": "Merge pull request #7",
        "author": {"name": "Alice", "date": "2026-03-02T09:00:00Z"},
        "committer": {"name": "GitHub", "date": "2026-03-02T09:05:00Z"},
    },
    "author": {"login": "alice"},
    "parents": [{"sha": "p1"}, {"sha": "p2"}],
}


@pytest.mark.asyncio
async def test_get_commit_parses_model():
    gh = FakeGitHub({"/repos/org/svc/commits/abc123": COMMIT})
    api = API(gh)

    commit = await api.get_commit("org", "svc", "abc123")

    assert commit.author_login == "alice"
    assert commit.parent_shas == ["p1", "p2"]
    assert commit.is_merge
    assert commit.committer_date.minute == 5
    assert api.call_count == 1


@pytest.mark.asyncio
async def test_check_runs_use_iterable_key():
    url = "/repos/org/svc/commits/abc123/check-runs"
    gh = FakeGitHub({url: [{"name": "tests", "status": "completed", "conclusion": "success"}]})

    runs = await API(gh).get_check_runs("org", "svc", "abc123")

    assert [r.name for r in runs] == ["tests"]


@pytest.mark.asyncio
async def test_not_found_is_translated():
    gh = FakeGitHub(error=gidgethub.BadRequest(HTTPStatus.NOT_FOUND, "Not Found"))

    with pytest.raises(NotFoundError):
        await API(gh).get_pull("org", "svc", 42)


@pytest.mark.asyncio
async def test_rate_limit_is_translated():
    gh = FakeGitHub(
        error=gidgethub.BadRequest(
            HTTPStatus.FORBIDDEN, "API rate limit exceeded for installation"
        )
    )

    with pytest.raises(RateLimitError):
        await API(gh).get_pulls_for_commit("org", "svc", "abc123")


@pytest.mark.asyncio
async def test_other_errors_propagate():
    gh = FakeGitHub(error=gidgethub.BadRequest(HTTPStatus.FORBIDDEN, "Resource not accessible"))

    with pytest.raises(gidgethub.BadRequest):
        await API(gh).compare_commits("org", "svc", "a", "b")
