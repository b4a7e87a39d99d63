from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any, AsyncIterator, List, Optional

import gidgethub
from gidgethub.abc import GitHubAPI
from aiolimiter import AsyncLimiter
from sanic.log import logger

from deploy_audit.errors import NotFoundError, RateLimitError
from deploy_audit.github.model import (
    CheckRun,
    Commit,
    CompareResult,
    PullRequest,
    Review,
)
from deploy_audit.metric import rate_limit_total, record_api_call


def _is_rate_limited(exc: gidgethub.BadRequest) -> bool:
    if isinstance(exc, gidgethub.RateLimitExceeded):
        return True
    status = getattr(exc, "status_code", None)
    if status in (HTTPStatus.FORBIDDEN, HTTPStatus.TOO_MANY_REQUESTS):
        return "rate limit" in str(exc).lower()
    return False


@asynccontextmanager
async def _translate_errors(url: str):
    try:
        yield
    except gidgethub.BadRequest as exc:
        if _is_rate_limited(exc):
            rate_limit_total.inc()
            reset_at = None
            rate_limit = getattr(exc, "rate_limit", None)
            if rate_limit is not None:
                reset_at = rate_limit.reset_datetime
            logger.warning("GitHub rate limit hit url=%s reset_at=%s", url, reset_at)
            raise RateLimitError(f"GitHub rate limit exceeded ({url})", reset_at) from exc
        if getattr(exc, "status_code", None) == HTTPStatus.NOT_FOUND:
            raise NotFoundError(url) from exc
        raise


class API:
    gh: GitHubAPI

    call_count: int

    def __init__(self, gh: GitHubAPI, limiter: Optional[AsyncLimiter] = None):
        self.gh = gh
        self.limiter = limiter or AsyncLimiter(10, 1)
        self.call_count = 0

    async def _getitem(self, url: str) -> Any:
        self.call_count += 1
        record_api_call(url)
        async with self.limiter, _translate_errors(url):
            return await self.gh.getitem(url)

    async def _getiter(
        self, url: str, iterable_key: Optional[str] = None
    ) -> AsyncIterator[Any]:
        self.call_count += 1
        record_api_call(url)
        await self.limiter.acquire()
        async with _translate_errors(url):
            if iterable_key is None:
                async for item in self.gh.getiter(url):
                    yield item
            else:
                async for item in self.gh.getiter(url, iterable_key=iterable_key):
                    yield item

    async def get_commit(self, owner: str, repo: str, sha: str) -> Commit:
        url = f"/repos/{owner}/{repo}/commits/{sha}"
        logger.debug("Get commit %s", url)
        return Commit.model_validate(await self._getitem(url))

    async def get_pulls_for_commit(
        self, owner: str, repo: str, sha: str
    ) -> List[PullRequest]:
        url = f"/repos/{owner}/{repo}/commits/{sha}/pulls"
        logger.debug("Get pulls for commit %s", url)
        return [PullRequest.model_validate(item) async for item in self._getiter(url)]

    async def get_pull(self, owner: str, repo: str, number: int) -> PullRequest:
        url = f"/repos/{owner}/{repo}/pulls/{number}"
        logger.debug("Get pull %s", url)
        return PullRequest.model_validate(await self._getitem(url))

    async def get_pull_reviews(self, owner: str, repo: str, number: int) -> List[Review]:
        url = f"/repos/{owner}/{repo}/pulls/{number}/reviews?per_page=100"
        return [Review.model_validate(item) async for item in self._getiter(url)]

    async def get_pull_commits(self, owner: str, repo: str, number: int) -> List[Commit]:
        url = f"/repos/{owner}/{repo}/pulls/{number}/commits?per_page=100"
        return [Commit.model_validate(item) async for item in self._getiter(url)]

    async def get_check_runs(self, owner: str, repo: str, ref: str) -> List[CheckRun]:
        url = f"/repos/{owner}/{repo}/commits/{ref}/check-runs"
        return [
            CheckRun.model_validate(item)
            async for item in self._getiter(url, iterable_key="check_runs")
        ]

    async def compare_commits(
        self, owner: str, repo: str, base: str, head: str
    ) -> CompareResult:
        url = f"/repos/{owner}/{repo}/compare/{base}...{head}"
        logger.debug("Compare %s", url)
        return CompareResult.model_validate(await self._getitem(url))
