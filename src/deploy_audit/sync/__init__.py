from deploy_audit.sync.orchestrator import (
    CycleSummary,
    LockedRun,
    SyncOrchestrator,
    SyncSummary,
    VerifySummary,
)
from deploy_audit.sync.repositories import approve_repository, reject_repository
from deploy_audit.sync.scheduler import SyncScheduler

__all__ = [
    "CycleSummary",
    "LockedRun",
    "SyncOrchestrator",
    "SyncScheduler",
    "SyncSummary",
    "VerifySummary",
    "approve_repository",
    "reject_repository",
]
