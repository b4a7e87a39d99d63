from __future__ import annotations

import asyncio
from typing import MutableMapping, Optional, Tuple

import cachetools
from sanic.log import logger

from deploy_audit.errors import NotFoundError
from deploy_audit.github.model import PullRequest
from deploy_audit.storage.types import CommitRow
from deploy_audit.verification.types import CodeHost, PullRequestSnapshot, rebase_key

SnapshotKey = Tuple[str, str, int]


def make_snapshot_cache(maxsize: int = 1000, ttl: float = 600) -> cachetools.TTLCache:
    return cachetools.TTLCache(maxsize=maxsize, ttl=ttl)


class PullRequestCorrelator:
    """Maps commits to the pull requests that introduced them.

    Snapshots are memoized in the cache passed in by the caller; pass a fresh
    cache (or call :meth:`clear`) to drop state between runs.
    """

    def __init__(
        self,
        api: CodeHost,
        cache: Optional[MutableMapping[SnapshotKey, PullRequestSnapshot]] = None,
    ):
        self.api = api
        self.cache = cache if cache is not None else make_snapshot_cache()

    def clear(self) -> None:
        self.cache.clear()

    async def find_pull_request_for_commit(
        self,
        owner: str,
        repo: str,
        sha: str,
        *,
        require_original: bool = False,
        commit: Optional[CommitRow] = None,
    ) -> Optional[PullRequest]:
        """Return the merged PR for ``sha``.

        With ``require_original`` the commit must be one of the PR's own
        commits, not one that only became reachable through a merge of the
        base branch into the PR branch. A commit rewritten by "rebase and
        merge" is matched to the PR commit it was made from when ``commit``
        carries its author, author date and message.
        """
        pulls = await self.api.get_pulls_for_commit(owner, repo, sha)
        merged = [p for p in pulls if p.is_merged]
        logger.debug(
            "Commit PR lookup repo=%s/%s sha=%s pulls=%d merged=%d",
            owner,
            repo,
            sha[:7],
            len(pulls),
            len(merged),
        )
        if not merged:
            return None

        for pr in merged:
            if sha in (pr.merge_commit_sha, pr.head.sha):
                return pr

        if not require_original:
            return merged[0]

        key = None
        if commit is not None:
            key = rebase_key(commit.author_username, commit.author_date, commit.message)
        for pr in merged:
            commits = await self.api.get_pull_commits(owner, repo, pr.number)
            if any(c.sha == sha for c in commits):
                return pr
            rebased = [
                c
                for c in commits
                if key is not None
                and rebase_key(c.author_login, c.author_date, c.commit.message) == key
            ]
            if rebased:
                logger.info(
                    "Matched rebased commit repo=%s/%s sha=%s pr=%d original=%s",
                    owner,
                    repo,
                    sha[:7],
                    pr.number,
                    rebased[0].sha[:7],
                )
                return pr
            logger.info(
                "Commit not original to PR repo=%s/%s sha=%s pr=%d",
                owner,
                repo,
                sha[:7],
                pr.number,
            )
        return None

    async def fetch_detailed_pull_request(
        self,
        owner: str,
        repo: str,
        number: int,
        *,
        expected_sha: Optional[str] = None,
    ) -> Optional[PullRequestSnapshot]:
        """Snapshot of a PR, or None if the code host no longer has it.

        A cached snapshot whose head and merge SHAs both differ from
        ``expected_sha`` is considered stale and fetched again.
        """
        key = (owner, repo, number)
        cached = self.cache.get(key)
        if cached is not None:
            if expected_sha is None or cached.matches(expected_sha):
                return cached
            logger.info(
                "Refreshing stale PR snapshot repo=%s/%s pr=%d expected_sha=%s",
                owner,
                repo,
                number,
                expected_sha[:7],
            )

        try:
            pr = await self.api.get_pull(owner, repo, number)
            reviews, commits = await asyncio.gather(
                self.api.get_pull_reviews(owner, repo, number),
                self.api.get_pull_commits(owner, repo, number),
            )
            checks = await self.api.get_check_runs(owner, repo, pr.head.sha)
        except NotFoundError:
            logger.warning("PR not found repo=%s/%s pr=%d", owner, repo, number)
            return None

        snapshot = PullRequestSnapshot.from_github(pr, reviews, commits, checks)
        self.cache[key] = snapshot
        return snapshot
