"""Historical sync of past correspondence for newly added contacts."""

from .credentials import AccessToken, HttpTokenSource, RefreshingCredentialProvider
from .heartbeat import LeaseHeartbeat
from .pool import SyncWorkerPool, WorkerFactory
from .scheduler import SyncJobScheduler
from .worker import HistoricalSyncWorker

__all__ = [
    "AccessToken",
    "HistoricalSyncWorker",
    "HttpTokenSource",
    "LeaseHeartbeat",
    "RefreshingCredentialProvider",
    "SyncJobScheduler",
    "SyncWorkerPool",
    "WorkerFactory",
]
