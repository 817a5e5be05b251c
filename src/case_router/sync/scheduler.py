"""Creation and cancellation of historical sync jobs."""

from __future__ import annotations

import logging

from ..core.errors import NotFoundError
from ..core.interfaces import CaseRepository
from ..core.models import Contact, SyncJob
from ..directory import normalize_address

LOGGER = logging.getLogger(__name__)


class SyncJobScheduler:
    """Queue at most one open backfill per target and contact address."""

    def __init__(self, repository: CaseRepository) -> None:
        self._repository = repository

    def enqueue_for_contact(self, contact: Contact, principal_id: str) -> SyncJob | None:
        """Return the open job for ``contact``, creating one when none exists.

        Domain entries (``@example.com``) have no single mailbox to search and
        are not backfilled.
        """
        address = contact.address.strip()
        if address.startswith("@"):
            LOGGER.debug("Contact %s is a domain entry; no backfill", address)
            return None
        address = normalize_address(address)
        if not address:
            LOGGER.warning("Contact %s has no usable address; no backfill", contact.id)
            return None

        existing = self._repository.find_open_sync_job(
            contact.firm_id,
            address,
            case_id=contact.case_id,
            client_id=contact.client_id,
        )
        if existing is not None:
            LOGGER.info("Reusing open sync job %s for %s", existing.id, address)
            return existing

        job = self._repository.create_sync_job(
            SyncJob(
                id=None,
                firm_id=contact.firm_id,
                principal_id=principal_id,
                contact_address=address,
                case_id=contact.case_id,
                client_id=contact.client_id,
            )
        )
        LOGGER.info("Queued sync job %s for %s", job.id, address)
        return job

    def cancel(self, job_id: int) -> SyncJob:
        """Request cancellation; the running worker stops at its next page."""
        job = self._repository.get_sync_job(job_id)
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found")
        if not self._repository.request_sync_cancel(job_id):
            LOGGER.info("Sync job %s is already %s", job_id, job.status.value)
            return job
        return self._repository.get_sync_job(job_id) or job


__all__ = ["SyncJobScheduler"]
