from datetime import datetime
from typing import List, Literal, Optional

import pydantic


class Model(pydantic.BaseModel):
    pass


class User(Model):
    login: str


class GitActor(Model):
    name: Optional[str] = None
    email: Optional[str] = None
    date: Optional[datetime] = None


class GitCommitData(Model):
    message: str = ""
    author: Optional[GitActor] = None
    committer: Optional[GitActor] = None


class ParentRef(Model):
    sha: str


class Commit(Model):
    sha: str
    commit: GitCommitData
    author: Optional[User] = None
    committer: Optional[User] = None
    parents: List[ParentRef] = pydantic.Field(default_factory=list)
    html_url: Optional[str] = None

    @property
    def author_login(self) -> Optional[str]:
        if self.author is not None:
            return self.author.login
        if self.commit.author is not None:
            return self.commit.author.name
        return None

    @property
    def author_date(self) -> Optional[datetime]:
        return self.commit.author.date if self.commit.author is not None else None

    @property
    def committer_date(self) -> Optional[datetime]:
        return self.commit.committer.date if self.commit.committer is not None else None

    @property
    def parent_shas(self) -> List[str]:
        return [p.sha for p in self.parents]

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    def __str__(self) -> str:
        return f"Commit({self.sha[:7]})"


class PrConnection(Model):
    ref: str
    sha: str


class PullRequest(Model):
    number: int
    title: str = ""
    html_url: Optional[str] = None
    state: Literal["open", "closed"]
    user: Optional[User] = None
    created_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    merged_by: Optional[User] = None
    merge_commit_sha: Optional[str] = None
    base: PrConnection
    head: PrConnection

    @property
    def is_merged(self) -> bool:
        return self.merged_at is not None

    def __str__(self) -> str:
        return f"PR(#{self.number})"


class Review(Model):
    id: int
    user: Optional[User] = None
    state: str
    submitted_at: Optional[datetime] = None


class CheckRun(Model):
    name: str
    status: str
    conclusion: Optional[str] = None
    html_url: Optional[str] = None


class CompareResult(Model):
    status: str
    ahead_by: int = 0
    behind_by: int = 0
    total_commits: int = 0
    commits: List[Commit] = pydantic.Field(default_factory=list)
