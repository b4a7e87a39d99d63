from __future__ import annotations

from datetime import datetime, timezone
import heapq
from typing import Dict, List, Optional, Set, Tuple

from sanic.log import logger

from deploy_audit.errors import GraphWalkError, NotFoundError
from deploy_audit.github.model import Commit
from deploy_audit.storage.commits import CommitStore
from deploy_audit.storage.types import CommitRow
from deploy_audit.verification.types import CodeHost

_HEAD = 1
_BASE = 2
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def commit_row_from_github(owner: str, repo: str, commit: Commit) -> CommitRow:
    return CommitRow(
        sha=commit.sha,
        repo_owner=owner,
        repo_name=repo,
        author_username=commit.author_login,
        author_date=commit.author_date,
        committer_date=commit.committer_date,
        message=commit.commit.message,
        parent_shas=commit.parent_shas,
        is_merge_commit=commit.is_merge,
        html_url=commit.html_url,
    )


class CommitGraphWalker:
    """Finds the commits reachable from a head SHA but not from a base SHA.

    Parent pointers come from the commit store; missing commits are fetched
    from the code host and cached before the walk continues. The code host's
    compare endpoint is tried first when enabled.
    """

    def __init__(
        self,
        api: CodeHost,
        commits: CommitStore,
        *,
        max_commits: int = 1000,
        use_compare: bool = True,
    ):
        self.api = api
        self.commits = commits
        self.max_commits = max_commits
        self.use_compare = use_compare

    async def ensure_commit(self, owner: str, repo: str, sha: str) -> CommitRow:
        cached = self.commits.get(owner, repo, sha)
        if cached is not None and cached.parent_shas is not None:
            return cached
        remote = await self.api.get_commit(owner, repo, sha)
        return self.commits.upsert(commit_row_from_github(owner, repo, remote))

    async def commits_between(
        self, owner: str, repo: str, base_sha: str, head_sha: str
    ) -> List[CommitRow]:
        if base_sha == head_sha:
            return []

        if self.use_compare:
            compared = await self._compare(owner, repo, base_sha, head_sha)
            if compared is not None:
                return compared

        return await self._walk(owner, repo, base_sha, head_sha)

    async def _compare(
        self, owner: str, repo: str, base_sha: str, head_sha: str
    ) -> Optional[List[CommitRow]]:
        try:
            result = await self.api.compare_commits(owner, repo, base_sha, head_sha)
        except NotFoundError:
            logger.info(
                "Compare unavailable repo=%s/%s base=%s head=%s, walking graph",
                owner,
                repo,
                base_sha[:7],
                head_sha[:7],
            )
            return None

        if result.total_commits != len(result.commits):
            # compare is capped, fall back to the full walk
            logger.info(
                "Compare truncated repo=%s/%s total=%d returned=%d",
                owner,
                repo,
                result.total_commits,
                len(result.commits),
            )
            return None

        rows = [commit_row_from_github(owner, repo, c) for c in result.commits]
        self.commits.upsert_many(rows)
        return self.commits_in_order(owner, repo, [r.sha for r in rows])

    def commits_in_order(self, owner: str, repo: str, shas: List[str]) -> List[CommitRow]:
        stored = self.commits.get_many(owner, repo, shas)
        return [stored[sha] for sha in shas if sha in stored]

    async def _walk(
        self, owner: str, repo: str, base_sha: str, head_sha: str
    ) -> List[CommitRow]:
        # Newest-first traversal painting commits reachable from head and from
        # base; stops once every queued commit is reachable from base.
        flags: Dict[str, int] = {head_sha: _HEAD, base_sha: _BASE}
        loaded: Dict[str, CommitRow] = {}
        queue: List[Tuple[float, str]] = []
        visits = 0

        async def load(sha: str) -> CommitRow:
            nonlocal visits
            if sha not in loaded:
                visits += 1
                if visits > self.max_commits:
                    raise GraphWalkError(
                        f"Commit graph walk {owner}/{repo} {base_sha[:7]}..{head_sha[:7]} "
                        f"exceeded {self.max_commits} commits"
                    )
                loaded[sha] = await self.ensure_commit(owner, repo, sha)
            return loaded[sha]

        def priority(commit: CommitRow) -> float:
            ts = commit.timestamp or _EPOCH
            return -ts.timestamp()

        for sha in (head_sha, base_sha):
            heapq.heappush(queue, (priority(await load(sha)), sha))

        def only_base_left() -> bool:
            return all(flags[s] & _BASE for _, s in queue)

        processed: Dict[str, int] = {}
        while queue and not only_base_left():
            _, sha = heapq.heappop(queue)
            current = flags[sha]
            if processed.get(sha) == current:
                continue
            processed[sha] = current
            commit = await load(sha)
            for parent in commit.parent_shas or []:
                merged = flags.get(parent, 0) | current
                if merged != flags.get(parent):
                    flags[parent] = merged
                    heapq.heappush(queue, (priority(await load(parent)), parent))

        result = [
            loaded[sha]
            for sha, flag in flags.items()
            if flag == _HEAD and sha != base_sha
        ]
        result.sort(key=lambda c: c.timestamp or _EPOCH)
        logger.debug(
            "Graph walk repo=%s/%s base=%s head=%s commits=%d visited=%d",
            owner,
            repo,
            base_sha[:7],
            head_sha[:7],
            len(result),
            visits,
        )
        return result
