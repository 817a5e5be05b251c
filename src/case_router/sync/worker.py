"""Historical backfill of correspondence with a newly added contact."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TypeVar

from ..core.config import SyncSettings
from ..core.datetime_utils import utc_now
from ..core.errors import (
    CredentialError,
    NotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    SyncJobError,
    TransientProviderError,
)
from ..core.interfaces import (
    AttachmentStore,
    CaseRepository,
    CredentialProvider,
    MailProvider,
    SyncJobRepository,
)
from ..core.models import Message, MessagePage, ProviderMessage, SyncJob, SyncJobStatus
from ..ingestion import MessageIngestor, message_from_provider
from .heartbeat import LeaseHeartbeat

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class HistoricalSyncWorker:
    """Run one sync job page by page, checkpointing after every message."""

    def __init__(
        self,
        repository: CaseRepository,
        provider: MailProvider,
        credentials: CredentialProvider,
        ingestor: MessageIngestor,
        settings: SyncSettings | None = None,
        *,
        page_size: int = 50,
        attachment_store: AttachmentStore | None = None,
        lease_repository: SyncJobRepository | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._repository = repository
        self._provider = provider
        self._credentials = credentials
        self._ingestor = ingestor
        self._settings = settings or SyncSettings()
        self._page_size = page_size
        self._attachment_store = attachment_store
        self._lease_repository = lease_repository or repository
        self._worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"
        self._clock = clock
        self._sleep = sleep

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def run(self, job_id: int) -> SyncJob:
        """Process ``job_id`` until it completes, fails, is cancelled or deferred."""
        job = self._repository.get_sync_job(job_id)
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found")
        if job.status.is_terminal:
            LOGGER.info("Sync job %s already %s", job_id, job.status.value)
            return job

        lease = timedelta(seconds=self._settings.lease_seconds)
        now = self._clock()
        if not self._lease_repository.acquire_sync_lease(
            job_id, self._worker_id, now, now + lease
        ):
            LOGGER.info("Sync job %s is leased by another worker; skipping", job_id)
            return job

        heartbeat = LeaseHeartbeat(
            lambda: self._lease_repository.renew_sync_lease(
                job_id, self._worker_id, self._clock() + lease
            ),
            self._settings.heartbeat_seconds,
            name=f"sync-lease-{job_id}",
        )
        heartbeat.start()
        try:
            job = self._repository.get_sync_job(job_id) or job
            return self._process(job, heartbeat)
        finally:
            heartbeat.stop()
            self._lease_repository.release_sync_lease(job_id, self._worker_id)

    def _process(self, job: SyncJob, heartbeat: LeaseHeartbeat) -> SyncJob:
        if job.status.is_terminal:
            return job
        if self._repository.is_sync_cancel_requested(job.id):
            return self._finish(job, SyncJobStatus.CANCELLED)

        job.status = SyncJobStatus.IN_PROGRESS
        job.started_at = job.started_at or self._clock()
        job.error_message = None
        self._repository.save_sync_job(job)
        LOGGER.info(
            "Sync job %s started for %s (cursor=%s offset=%s synced=%s)",
            job.id,
            job.contact_address,
            job.cursor,
            job.cursor_offset,
            job.synced_count,
        )

        try:
            return self._sync_pages(job, heartbeat)
        except CredentialError as exc:
            LOGGER.error("Sync job %s failed on credentials: %s", job.id, exc)
            return self._finish(job, SyncJobStatus.FAILED, str(exc))
        except TransientProviderError as exc:
            return self._defer(job, exc)
        except ProviderError as exc:
            LOGGER.error("Sync job %s rejected by provider: %s", job.id, exc)
            return self._finish(job, SyncJobStatus.FAILED, str(exc))
        except SyncJobError as exc:
            LOGGER.warning("Sync job %s interrupted: %s", job.id, exc)
            return job
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unexpected error in sync job %s", job.id)
            return self._defer(job, exc)

    def _sync_pages(self, job: SyncJob, heartbeat: LeaseHeartbeat) -> SyncJob:
        while True:
            if self._repository.is_sync_cancel_requested(job.id):
                LOGGER.info(
                    "Sync job %s cancelled after %s messages", job.id, job.synced_count
                )
                return self._finish(job, SyncJobStatus.CANCELLED)
            if heartbeat.lost:
                raise SyncJobError(f"Lease on sync job {job.id} was lost")

            page = self._fetch_page(job)
            if page.total_estimate is not None:
                job.total_count = page.total_estimate

            for index, item in enumerate(page.messages):
                if index < job.cursor_offset:
                    continue
                self._sync_message(job, item)
                job.synced_count += 1
                job.cursor_offset = index + 1
                self._repository.save_sync_job(job)

            job.cursor = page.next_cursor
            job.cursor_offset = 0
            self._repository.save_sync_job(job)
            LOGGER.debug(
                "Sync job %s page done (synced=%s total=%s)",
                job.id,
                job.synced_count,
                job.total_count,
            )
            if page.next_cursor is None:
                LOGGER.info(
                    "Sync job %s completed with %s messages", job.id, job.synced_count
                )
                return self._finish(job, SyncJobStatus.COMPLETED)

    def _fetch_page(self, job: SyncJob) -> MessagePage:
        return self._call(
            job,
            lambda token: self._provider.list_messages(
                token,
                job.contact_address,
                cursor=job.cursor,
                page_size=self._page_size,
            ),
        )

    def _sync_message(self, job: SyncJob, item: ProviderMessage) -> None:
        message = message_from_provider(job.firm_id, job.principal_id, item)
        try:
            result = self._ingestor.ingest(message)
        except ValueError as exc:
            LOGGER.warning(
                "Skipping provider message %s in sync job %s: %s", item.id, job.id, exc
            )
            return
        if self._attachment_store is not None:
            self._store_attachments(job, result.message, self._attachment_store)

    def _store_attachments(
        self, job: SyncJob, message: Message, store: AttachmentStore
    ) -> None:
        for attachment in message.attachments:
            if attachment.storage_ref and store.exists(attachment.storage_ref):
                continue
            content = self._call(
                job,
                lambda token, attachment_id=attachment.provider_attachment_id: (
                    self._provider.download_attachment(
                        token, message.provider_message_id, attachment_id
                    )
                ),
            )
            storage_ref = store.save(message, attachment, content)
            if attachment.id is not None:
                self._repository.set_attachment_storage_ref(attachment.id, storage_ref)
            attachment.storage_ref = storage_ref

    def _call(self, job: SyncJob, operation: Callable[[str], T]) -> T:
        """Run a provider call, retrying transient failures with backoff."""
        delay = self._settings.backoff_seconds
        attempt = 1
        while True:
            try:
                return self._with_fresh_credentials(job, operation)
            except TransientProviderError as exc:
                if attempt >= self._settings.max_call_retries:
                    raise
                wait = delay
                if isinstance(exc, ProviderRateLimitError) and exc.retry_after:
                    wait = max(wait, exc.retry_after)
                wait = min(wait, self._settings.max_backoff_seconds)
                LOGGER.warning(
                    "Transient provider error in sync job %s (attempt %s/%s): %s; "
                    "retrying in %.1fs",
                    job.id,
                    attempt,
                    self._settings.max_call_retries,
                    exc,
                    wait,
                )
                self._sleep(wait)
                delay *= 2
                attempt += 1

    def _with_fresh_credentials(
        self, job: SyncJob, operation: Callable[[str], T]
    ) -> T:
        rejections = 0
        while True:
            token = self._credentials.get_token(job.principal_id)
            try:
                return operation(token)
            except ProviderAuthError as exc:
                self._credentials.invalidate(job.principal_id)
                if rejections >= self._settings.auth_retry_limit:
                    raise CredentialError(
                        f"Provider rejected {rejections + 1} credentials for "
                        f"principal {job.principal_id}: {exc}"
                    ) from exc
                rejections += 1
                LOGGER.info(
                    "Credential rejected for principal %s; acquiring a fresh one",
                    job.principal_id,
                )

    def _defer(self, job: SyncJob, exc: Exception) -> SyncJob:
        job.attempts += 1
        reason = f"{type(exc).__name__}: {exc}"
        if job.attempts >= self._settings.max_job_attempts:
            LOGGER.error(
                "Sync job %s failed after %s attempts: %s", job.id, job.attempts, reason
            )
            return self._finish(job, SyncJobStatus.FAILED, reason)
        LOGGER.warning(
            "Sync job %s deferred (attempt %s/%s): %s",
            job.id,
            job.attempts,
            self._settings.max_job_attempts,
            reason,
        )
        job.status = SyncJobStatus.PENDING
        job.error_message = reason
        self._repository.save_sync_job(job)
        return job

    def _finish(
        self, job: SyncJob, status: SyncJobStatus, error: str | None = None
    ) -> SyncJob:
        job.status = status
        job.error_message = error
        job.completed_at = self._clock()
        self._repository.save_sync_job(job)
        return job


__all__ = ["HistoricalSyncWorker"]
