"""Wiring of the routing services over one repository."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .core.config import AppSettings, LlmSettings
from .core.interfaces import (
    AttachmentStore,
    CaseRepository,
    CredentialProvider,
    MailProvider,
    SyncJobRepository,
)
from .core.models import Contact, SyncJob
from .ingestion import MessageIngestor
from .intelligence import AiCaseClassifier, OllamaClient
from .privacy import PrivacyGate
from .routing import ClassificationEngine, ReevaluationReport, ReevaluationService
from .sync import HistoricalSyncWorker, SyncJobScheduler, WorkerFactory

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ContactAddition:
    """Result of registering a new contact address."""

    contact: Contact
    report: ReevaluationReport
    sync_job: SyncJob | None


@dataclass(slots=True)
class RouterServices:
    """Services sharing one repository, as used by a request or a worker."""

    repository: CaseRepository
    engine: ClassificationEngine
    reevaluation: ReevaluationService
    privacy: PrivacyGate
    scheduler: SyncJobScheduler
    ingestor: MessageIngestor

    def add_contact(self, contact: Contact, principal_id: str) -> ContactAddition:
        """Store ``contact``, re-evaluate waiting mail and queue its backfill."""
        stored = self.repository.add_contact(contact)
        report = self.reevaluation.on_contact_added(stored)
        job = self.scheduler.enqueue_for_contact(stored, principal_id)
        LOGGER.info(
            "Contact %s added: %d re-evaluated, %d changed, sync job %s",
            stored.address,
            report.examined,
            report.changed,
            job.id if job else None,
        )
        return ContactAddition(contact=stored, report=report, sync_job=job)


def build_ai_classifier(
    settings: LlmSettings, timeout_seconds: float
) -> AiCaseClassifier | None:
    """Return the LLM fallback when enabled in configuration."""
    if not settings.enabled:
        return None
    return AiCaseClassifier(OllamaClient(settings), timeout_seconds=timeout_seconds)


def build_services(
    repository: CaseRepository,
    settings: AppSettings,
    *,
    ai_classifier: AiCaseClassifier | None = None,
) -> RouterServices:
    engine = ClassificationEngine(
        repository, settings.classification, ai_classifier=ai_classifier
    )
    privacy = PrivacyGate(repository, settings.privacy)
    return RouterServices(
        repository=repository,
        engine=engine,
        reevaluation=ReevaluationService(repository, engine),
        privacy=privacy,
        scheduler=SyncJobScheduler(repository),
        ingestor=MessageIngestor(repository, engine, privacy),
    )


def sync_worker_factory(
    settings: AppSettings,
    provider: MailProvider,
    credentials: CredentialProvider,
    *,
    attachment_store: AttachmentStore | None = None,
    ai_classifier: AiCaseClassifier | None = None,
) -> WorkerFactory:
    """Return a factory building a worker around borrowed repositories."""

    def factory(
        repository: CaseRepository, lease_repository: SyncJobRepository
    ) -> HistoricalSyncWorker:
        services = build_services(repository, settings, ai_classifier=ai_classifier)
        return HistoricalSyncWorker(
            repository,
            provider,
            credentials,
            services.ingestor,
            settings.sync,
            page_size=settings.provider.page_size,
            attachment_store=attachment_store,
            lease_repository=lease_repository,
        )

    return factory


__all__ = [
    "ContactAddition",
    "RouterServices",
    "build_ai_classifier",
    "build_services",
    "sync_worker_factory",
]
