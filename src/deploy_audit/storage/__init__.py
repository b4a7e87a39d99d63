from deploy_audit.storage.applications import ApplicationStore, RepositoryCheck
from deploy_audit.storage.commits import CommitStore
from deploy_audit.storage.database import Database
from deploy_audit.storage.deployments import DeploymentStore, InsertResult, StoreResult
from deploy_audit.storage.sync_jobs import SyncJobStore
from deploy_audit.storage.types import (
    ApplicationRepositoryRow,
    CommitRow,
    DeploymentRow,
    MonitoredApplicationRow,
    RepositoryAlertRow,
    StatusTransitionRow,
    SyncJobRow,
)


class AuditStore:
    """All stores sharing one sqlite database."""

    def __init__(self, db_path, worker_id: str = "local"):
        self.db = Database(db_path)
        self.commits = CommitStore(self.db)
        self.deployments = DeploymentStore(self.db)
        self.applications = ApplicationStore(self.db)
        self.sync_jobs = SyncJobStore(self.db, worker_id)

    def initialize(self) -> None:
        self.db.initialize()


__all__ = [
    "ApplicationRepositoryRow",
    "ApplicationStore",
    "AuditStore",
    "CommitRow",
    "CommitStore",
    "Database",
    "DeploymentRow",
    "DeploymentStore",
    "InsertResult",
    "MonitoredApplicationRow",
    "RepositoryAlertRow",
    "RepositoryCheck",
    "StatusTransitionRow",
    "StoreResult",
    "SyncJobRow",
    "SyncJobStore",
]
