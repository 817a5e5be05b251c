"""Run queued sync jobs concurrently, one SQLite connection per job."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime

from ..core.datetime_utils import utc_now
from ..core.interfaces import CaseRepository, SyncJobRepository
from ..core.models import SyncJob, SyncJobStatus
from ..storage import ConnectionPool
from .worker import HistoricalSyncWorker

LOGGER = logging.getLogger(__name__)

WorkerFactory = Callable[[CaseRepository, SyncJobRepository], HistoricalSyncWorker]

# A job works on one connection and renews its lease on a second.
CONNECTIONS_PER_JOB = 2


def is_runnable(job: SyncJob, now: datetime) -> bool:
    """Return whether a worker may pick up ``job`` at ``now``."""
    if job.status is SyncJobStatus.PENDING:
        return True
    if job.status is SyncJobStatus.IN_PROGRESS:
        return job.lease_expires_at is None or job.lease_expires_at <= now
    return False


class SyncWorkerPool:
    """Dispatch runnable jobs to a bounded thread pool."""

    def __init__(
        self,
        connection_pool: ConnectionPool,
        worker_factory: WorkerFactory,
        *,
        max_workers: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        capacity = connection_pool.pool_size // CONNECTIONS_PER_JOB
        if capacity < 1:
            raise ValueError(
                f"Sync jobs need {CONNECTIONS_PER_JOB} connections; "
                f"pool holds {connection_pool.pool_size}"
            )
        if max_workers > capacity:
            LOGGER.warning(
                "Connection pool of %d serves at most %d sync worker(s); %d requested",
                connection_pool.pool_size,
                capacity,
                max_workers,
            )
            max_workers = capacity
        self._connection_pool = connection_pool
        self._worker_factory = worker_factory
        self._max_workers = max_workers
        self._clock = clock

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def runnable_job_ids(self) -> list[int]:
        """Pending jobs plus in-progress jobs whose lease has lapsed."""
        now = self._clock()
        with self._connection_pool.acquire() as repository:
            jobs = repository.list_sync_jobs(
                (SyncJobStatus.PENDING, SyncJobStatus.IN_PROGRESS)
            )
        return [job.id for job in jobs if job.id is not None and is_runnable(job, now)]

    def run_pending(self) -> list[SyncJob]:
        """Run every runnable job once and return their resulting records."""
        job_ids = self.runnable_job_ids()
        if not job_ids:
            LOGGER.info("No sync jobs to run")
            return []

        LOGGER.info(
            "Running %d sync job(s) on %d worker(s)",
            len(job_ids),
            min(self._max_workers, len(job_ids)),
        )
        results: list[SyncJob] = []
        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="sync-worker"
        ) as executor:
            futures = {executor.submit(self.run_job, job_id): job_id for job_id in job_ids}
            for future in as_completed(futures):
                job_id = futures[future]
                try:
                    results.append(future.result())
                except Exception:  # pylint: disable=broad-except
                    LOGGER.exception("Sync job %s crashed", job_id)
        results.sort(key=lambda job: job.id or 0)
        return results

    def run_job(self, job_id: int) -> SyncJob:
        """Run one job on connections borrowed from the pool."""
        with self._connection_pool.acquire_many(CONNECTIONS_PER_JOB) as (
            repository,
            lease_repository,
        ):
            worker = self._worker_factory(repository, lease_repository)
            return worker.run(job_id)


__all__ = ["CONNECTIONS_PER_JOB", "SyncWorkerPool", "WorkerFactory", "is_runnable"]
