from pathlib import Path
import re

from prometheus_client import Counter, Gauge, Histogram

request_counter = Counter(
    "deploy_audit_num_req", "Total number of requests", labelnames=["path"]
)

error_counter = Counter(
    "deploy_audit_error_counter", "Total number of errors", labelnames=["context"]
)

api_call_count = Counter(
    "deploy_audit_num_api_calls",
    "Total number of code host API calls",
    labelnames=["endpoint"],
)

rate_limit_total = Counter(
    "deploy_audit_rate_limit_total",
    "Number of requests rejected by the code host rate limit",
)

sync_event_total = Counter(
    "deploy_audit_sync_event_total",
    "Deployment events seen by the sync orchestrator",
    labelnames=["result"],
)

verification_total = Counter(
    "deploy_audit_verification_total",
    "Deployment verification outcomes",
    labelnames=["result"],
)

status_transition_total = Counter(
    "deploy_audit_status_transition_total",
    "Recorded four-eyes status transitions",
    labelnames=["to_status", "source"],
)

sync_lock_total = Counter(
    "deploy_audit_sync_lock_total",
    "Sync job lock outcomes",
    labelnames=["job_type", "result"],
)

commit_upsert_total = Counter(
    "deploy_audit_commit_upsert_total",
    "Number of commits written to the commit store",
)

alert_total = Counter(
    "deploy_audit_alert_total",
    "Repository alerts raised",
    labelnames=["alert_type"],
)

notification_total = Counter(
    "deploy_audit_notification_total",
    "Deployment notification outcomes",
    labelnames=["result"],
)

sync_scheduler_total = Counter(
    "deploy_audit_sync_scheduler_total",
    "On-demand sync requests",
    labelnames=["result"],
)

pending_deployments = Gauge(
    "deploy_audit_pending_deployments", "Deployments waiting for verification"
)

db_size_bytes = Gauge(
    "deploy_audit_db_size_bytes", "Size of the sqlite database including WAL files"
)

view_response_latency_seconds = Histogram(
    "deploy_audit_view_response_latency_seconds",
    "Latency of web view responses",
    labelnames=["path", "method", "status"],
)

cycle_duration_seconds = Histogram(
    "deploy_audit_cycle_duration_seconds",
    "Duration of a full sync/verify/notify cycle",
)

_VARIABLE_SEGMENT = re.compile(r"^([0-9]+|[0-9a-f]{7,40})$")


def _normalize_api_endpoint(endpoint: str) -> str:
    if endpoint.endswith("/access_tokens") or endpoint == "installation_token":
        return "installation_token"
    path = endpoint.split("?", 1)[0].strip("/")
    parts = path.split("/")
    if len(parts) >= 3 and parts[0] == "repos":
        parts = parts[3:]
    if not parts or parts == [""]:
        return "repository"
    head = parts[0]
    if head == "contents":
        return "contents/xxx"
    if head == "compare":
        return "compare"
    rest = [p for p in parts[1:] if not _VARIABLE_SEGMENT.match(p)]
    return "/".join([head] + rest)


def record_api_call(endpoint: str) -> None:
    api_call_count.labels(endpoint=_normalize_api_endpoint(endpoint)).inc()


def observe_view_response_latency(
    path: str, method: str, status: int, seconds: float
) -> None:
    view_response_latency_seconds.labels(
        path=path, method=method, status=str(status)
    ).observe(seconds)


def sqlite_db_total_size_bytes(db_path) -> float:
    total = 0
    for candidate in (
        Path(db_path),
        Path(f"{db_path}-wal"),
        Path(f"{db_path}-shm"),
    ):
        if candidate.exists():
            total += candidate.stat().st_size
    return float(total)
