from __future__ import annotations

import sqlite3
from typing import Iterable, Optional, Sequence

from sanic.log import logger

from deploy_audit.errors import IntegrityError
from deploy_audit.metric import commit_upsert_total
from deploy_audit.storage.database import Database, db_bool, to_json, utcnow_iso
from deploy_audit.storage.types import CommitRow, to_db_datetime

_MERGEABLE_FIELDS = (
    "author_username",
    "author_date",
    "committer_date",
    "message",
    "parent_shas",
    "original_pr_number",
    "original_pr_title",
    "original_pr_url",
    "pr_approved",
    "pr_approval_reason",
    "is_merge_commit",
    "html_url",
)

# Known values are never replaced by NULL, and a no-op upsert leaves the row
# (including updated_at) untouched.
_UPSERT_SQL = """
INSERT INTO commits (
    sha, repo_owner, repo_name, {fields}, created_at, updated_at
) VALUES (?, ?, ?, {placeholders}, ?, ?)
ON CONFLICT(repo_owner, repo_name, sha) DO UPDATE SET
    {assignments},
    updated_at = excluded.updated_at
WHERE {changed}
""".format(
    fields=", ".join(_MERGEABLE_FIELDS),
    placeholders=", ".join("?" for _ in _MERGEABLE_FIELDS),
    assignments=",\n    ".join(
        f"{f} = COALESCE(excluded.{f}, commits.{f})" for f in _MERGEABLE_FIELDS
    ),
    changed="\n    OR ".join(
        f"(excluded.{f} IS NOT NULL AND excluded.{f} IS NOT commits.{f})"
        for f in _MERGEABLE_FIELDS
    ),
)


def _commit_params(commit: CommitRow, now: str) -> tuple:
    return (
        commit.sha,
        commit.repo_owner,
        commit.repo_name,
        commit.author_username,
        to_db_datetime(commit.author_date),
        to_db_datetime(commit.committer_date),
        commit.message,
        to_json(commit.parent_shas),
        commit.original_pr_number,
        commit.original_pr_title,
        commit.original_pr_url,
        db_bool(commit.pr_approved),
        commit.pr_approval_reason,
        db_bool(commit.is_merge_commit),
        commit.html_url,
        now,
        now,
    )


class CommitStore:
    def __init__(self, db: Database):
        self.db = db

    def upsert(self, commit: CommitRow) -> CommitRow:
        with self.db.connect() as conn:
            self._upsert(conn, commit, utcnow_iso())
        commit_upsert_total.inc()
        stored = self.get(commit.repo_owner, commit.repo_name, commit.sha)
        if stored is None:
            raise IntegrityError(f"Commit {commit.sha} vanished after upsert")
        return stored

    def upsert_many(self, commits: Sequence[CommitRow]) -> int:
        """Write all commits in one transaction; nothing is stored if any fails."""
        if not commits:
            return 0
        now = utcnow_iso()
        with self.db.connect() as conn:
            for commit in commits:
                self._upsert(conn, commit, now)
        commit_upsert_total.inc(len(commits))
        logger.debug("Upserted %d commits", len(commits))
        return len(commits)

    def get(self, repo_owner: str, repo_name: str, sha: str) -> Optional[CommitRow]:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM commits
                WHERE repo_owner = ? AND repo_name = ? AND sha = ?
                """,
                (repo_owner, repo_name, sha),
            ).fetchone()
        if row is None:
            return None
        return CommitRow.model_validate(dict(row))

    def get_many(
        self, repo_owner: str, repo_name: str, shas: Iterable[str]
    ) -> dict[str, CommitRow]:
        shas = list(shas)
        if not shas:
            return {}
        placeholders = ", ".join("?" for _ in shas)
        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM commits
                WHERE repo_owner = ? AND repo_name = ? AND sha IN ({placeholders})
                """,
                (repo_owner, repo_name, *shas),
            ).fetchall()
        return {row["sha"]: CommitRow.model_validate(dict(row)) for row in rows}

    def has_cached(self, repo_owner: str, repo_name: str, sha: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM commits
                WHERE repo_owner = ? AND repo_name = ? AND sha = ?
                LIMIT 1
                """,
                (repo_owner, repo_name, sha),
            ).fetchone()
        return row is not None

    def set_verification(
        self,
        repo_owner: str,
        repo_name: str,
        sha: str,
        *,
        approved: bool,
        reason: str,
        pr_number: int | None = None,
        pr_title: str | None = None,
        pr_url: str | None = None,
    ) -> None:
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE commits SET
                    original_pr_number = COALESCE(?, original_pr_number),
                    original_pr_title = COALESCE(?, original_pr_title),
                    original_pr_url = COALESCE(?, original_pr_url),
                    pr_approved = ?,
                    pr_approval_reason = ?,
                    updated_at = ?
                WHERE repo_owner = ? AND repo_name = ? AND sha = ?
                """,
                (
                    pr_number,
                    pr_title,
                    pr_url,
                    db_bool(approved),
                    reason,
                    utcnow_iso(),
                    repo_owner,
                    repo_name,
                    sha,
                ),
            )
            if cursor.rowcount == 0:
                raise IntegrityError(
                    f"Commit {repo_owner}/{repo_name}@{sha} is not in the commit store"
                )

    def count(self, repo_owner: str, repo_name: str) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM commits WHERE repo_owner = ? AND repo_name = ?",
                (repo_owner, repo_name),
            ).fetchone()
        return int(row[0])

    @staticmethod
    def _upsert(conn: sqlite3.Connection, commit: CommitRow, now: str) -> None:
        conn.execute(_UPSERT_SQL, _commit_params(commit, now))
