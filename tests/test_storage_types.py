from datetime import datetime, timezone

import pydantic
import pytest

from deploy_audit.status import FourEyesStatus, has_four_eyes, status_group
from deploy_audit.storage.types import (
    CommitRow,
    DeploymentRow,
    format_utc_datetime,
    to_db_datetime,
)


def test_format_utc_datetime_is_lexically_ordered():
    earlier = datetime(2026, 1, 1, 9, 0, 0, 5, tzinfo=timezone.utc)
    later = datetime(2026, 1, 1, 9, 0, 1, tzinfo=timezone.utc)
    assert format_utc_datetime(earlier) == "2026-01-01T09:00:00.000005Z"
    assert format_utc_datetime(earlier) < format_utc_datetime(later)


def test_to_db_datetime_normalizes_offsets():
    assert to_db_datetime("2026-02-19T12:00:00+01:00") == "2026-02-19T11:00:00.000000Z"
    assert to_db_datetime(None) is None


def test_commit_row_timestamp_prefers_committer_date():
    row = CommitRow(
        sha="a" * 40,
        repo_owner="org",
        repo_name="svc",
        author_date="2026-02-19T10:00:00Z",
        committer_date="2026-02-19T11:00:00Z",
        parent_shas='["b"]',
        pr_approved=1,
    )
    assert row.timestamp == datetime(2026, 2, 19, 11, 0, tzinfo=timezone.utc)
    assert row.parent_shas == ["b"]
    assert row.pr_approved is True

    only_author = CommitRow(
        sha="c" * 40,
        repo_owner="org",
        repo_name="svc",
        author_date="2026-02-19T10:00:00Z",
    )
    assert only_author.timestamp == datetime(2026, 2, 19, 10, 0, tzinfo=timezone.utc)


def _deployment(**updates):
    data = {
        "id": 1,
        "monitored_app_id": 1,
        "nais_deployment_id": "d1",
        "created_at": "2026-02-19T10:00:00Z",
        "team_slug": "team",
        "environment_name": "prod",
        "app_name": "svc",
        "detected_github_owner": "org",
        "detected_github_repo_name": "svc",
    }
    data.update(updates)
    return DeploymentRow.model_validate(data)


def test_deployment_row_rejects_inconsistent_projection():
    assert _deployment(four_eyes_status="approved_pr", has_four_eyes=1).has_four_eyes
    with pytest.raises(pydantic.ValidationError):
        _deployment(four_eyes_status="direct_push", has_four_eyes=1)
    with pytest.raises(pydantic.ValidationError):
        _deployment(four_eyes_status="legacy", has_four_eyes=0)


def test_deployment_row_repository():
    assert _deployment().repository == "org/svc"
    assert _deployment(detected_github_repo_name=None).repository is None


@pytest.mark.parametrize(
    "status,expected,group",
    [
        (FourEyesStatus.pending, False, "pending"),
        (FourEyesStatus.legacy, True, "legacy"),
        (FourEyesStatus.no_changes, True, "approved"),
        (FourEyesStatus.approved, True, "approved"),
        (FourEyesStatus.approved_pr, True, "approved"),
        (FourEyesStatus.implicitly_approved, True, "approved"),
        (FourEyesStatus.manually_approved, True, "approved"),
        (FourEyesStatus.direct_push, False, "not_approved"),
        (FourEyesStatus.approved_pr_with_unreviewed, False, "not_approved"),
        (FourEyesStatus.missing, False, "not_approved"),
        (FourEyesStatus.repository_mismatch, False, "not_approved"),
        (FourEyesStatus.error, False, "error"),
    ],
)
def test_has_four_eyes_projection(status, expected, group):
    assert has_four_eyes(status) is expected
    assert has_four_eyes(status.value) is expected
    assert status_group(status) == group
