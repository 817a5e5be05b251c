"""FastAPI application exposing classification queries and routing commands."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Query, status as http_status
from fastapi.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, Field

from case_router.core import AppSettings, load_app_settings
from case_router.core.datetime_utils import serialize_datetime
from case_router.core.errors import NotFoundError, PrivacyError
from case_router.core.models import (
    Attachment,
    Classified,
    ClientInbox,
    Contact,
    Message,
    SyncJob,
)
from case_router.intelligence import AiCaseClassifier
from case_router.privacy import PrivacyGate
from case_router.services import RouterServices, build_ai_classifier, build_services
from case_router.storage import ConnectionPool, SqliteCaseRepository

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ViewerQuery = Query(min_length=1, description="Principal reading the messages")


class ActorPayload(BaseModel):
    """Caller identity for owner-only commands."""

    actor_id: str = Field(min_length=1)


class PublishPayload(ActorPayload):
    exclude_attachments: list[int] = Field(default_factory=list)


class AssignPayload(ActorPayload):
    case_id: int


class ContactPayload(BaseModel):
    """New contact address for a case or a client."""

    firm_id: int
    address: str = Field(min_length=3)
    case_id: int | None = None
    client_id: int | None = None
    role: str | None = None
    principal_id: str = Field(
        min_length=1, description="Mailbox searched by the historical sync"
    )


def create_app(
    settings: AppSettings | None = None,
    *,
    ai_classifier: AiCaseClassifier | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = settings or load_app_settings()
    app = FastAPI(title="Case Router")
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    connection_pool = ConnectionPool(app_settings.storage)
    classifier = ai_classifier or build_ai_classifier(
        app_settings.llm, app_settings.classification.ai_timeout_seconds
    )

    def get_repository() -> Iterator[SqliteCaseRepository]:
        with connection_pool.acquire(timeout=10.0) as repository:
            yield repository

    def services_for(repository: SqliteCaseRepository) -> RouterServices:
        return build_services(repository, app_settings, ai_classifier=classifier)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        """Close connection pool on app shutdown."""
        connection_pool.close()
        if classifier is not None:
            classifier.close()
        LOGGER.info("Connection pool closed")

    @app.get("/api/messages/{message_id}/classification")
    async def message_classification(
        message_id: int,
        viewer_id: str = ViewerQuery,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        """Current state of a message and every case it is bound to."""
        message = _require_message(repository, message_id)
        if not PrivacyGate.can_view(message, viewer_id):
            raise HTTPException(
                status_code=http_status.HTTP_403_FORBIDDEN,
                detail="Message is private",
            )
        payload = _serialize_message(message)
        payload["bindings"] = [
            {
                "caseId": binding.case_id,
                "confidence": binding.confidence,
                "method": binding.method.value,
                "isPrimary": binding.is_primary,
                "createdBy": binding.created_by,
            }
            for binding in repository.list_bindings(message_id)
        ]
        return payload

    @app.get("/api/clients/{client_id}/inbox")
    async def client_inbox(
        client_id: int,
        viewer_id: str = ViewerQuery,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        """Messages tied to a client but ambiguous between its cases."""
        client = repository.get_client(client_id)
        if client is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Client {client_id} not found",
            )
        messages = [
            message
            for message in repository.list_client_inbox(client_id)
            if PrivacyGate.can_view(message, viewer_id)
        ]
        return {
            "clientId": client.id,
            "clientName": client.name,
            "messages": [_serialize_message(message) for message in messages],
        }

    @app.post("/api/messages/{message_id}/publish")
    async def publish_message(
        message_id: int,
        payload: PublishPayload,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        privacy = services_for(repository).privacy
        message = _guarded(
            lambda: privacy.publish(
                message_id,
                payload.actor_id,
                exclude_attachments=tuple(payload.exclude_attachments),
            )
        )
        return _serialize_message(message)

    @app.post("/api/messages/{message_id}/unpublish")
    async def unpublish_message(
        message_id: int,
        payload: ActorPayload,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        privacy = services_for(repository).privacy
        message = _guarded(lambda: privacy.unpublish(message_id, payload.actor_id))
        return _serialize_message(message)

    @app.post("/api/attachments/{attachment_id}/publish")
    async def publish_attachment(
        attachment_id: int,
        payload: ActorPayload,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        privacy = services_for(repository).privacy
        attachment = _guarded(
            lambda: privacy.publish_attachment(attachment_id, payload.actor_id)
        )
        return _serialize_attachment(attachment)

    @app.post("/api/contacts", status_code=http_status.HTTP_201_CREATED)
    async def add_contact(
        payload: ContactPayload,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        """Register a contact, re-evaluate waiting mail and queue its backfill."""
        try:
            contact = Contact(
                id=None,
                firm_id=payload.firm_id,
                address=payload.address,
                case_id=payload.case_id,
                client_id=payload.client_id,
                role=payload.role,
            )
        except ValueError as exc:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail=str(exc),
            ) from exc
        if payload.case_id is not None and repository.get_case(payload.case_id) is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Case {payload.case_id} not found",
            )
        if (
            payload.client_id is not None
            and repository.get_client(payload.client_id) is None
        ):
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Client {payload.client_id} not found",
            )

        addition = services_for(repository).add_contact(contact, payload.principal_id)
        return {
            "contactId": addition.contact.id,
            "address": addition.contact.address,
            "reevaluated": {
                "examined": addition.report.examined,
                "changed": addition.report.changed,
                "skipped": addition.report.skipped,
            },
            "syncJob": _serialize_sync_job(addition.sync_job)
            if addition.sync_job
            else None,
        }

    @app.post("/api/messages/{message_id}/assign")
    async def assign_message(
        message_id: int,
        payload: AssignPayload,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        reevaluation = services_for(repository).reevaluation
        _guarded(
            lambda: reevaluation.assign_manually(
                message_id, payload.case_id, payload.actor_id
            )
        )
        return _serialize_message(_require_message(repository, message_id))

    @app.get("/api/sync-jobs/{job_id}")
    async def sync_job(
        job_id: int,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        job = repository.get_sync_job(job_id)
        if job is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Sync job {job_id} not found",
            )
        return _serialize_sync_job(job)

    @app.post("/api/sync-jobs/{job_id}/cancel")
    async def cancel_sync_job(
        job_id: int,
        repository: SqliteCaseRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        scheduler = services_for(repository).scheduler
        job = _guarded(lambda: scheduler.cancel(job_id))
        return _serialize_sync_job(job)

    return app


def _guarded(operation: Callable[[], T]) -> T:
    """Run a service call, mapping domain errors onto HTTP responses."""
    try:
        return operation()
    except NotFoundError as exc:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)
        ) from exc
    except PrivacyError as exc:
        raise HTTPException(
            status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)
        ) from exc


def _require_message(repository: SqliteCaseRepository, message_id: int) -> Message:
    message = repository.get_message(message_id)
    if message is None:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail=f"Message {message_id} not found",
        )
    return message


def _serialize_message(message: Message) -> dict[str, Any]:
    state = message.state
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "subject": message.subject,
        "sender": message.sender,
        "receivedAt": serialize_datetime(message.received_at),
        "folder": message.folder,
        "status": state.status.value,
        "caseId": state.case_id if isinstance(state, Classified) else None,
        "clientId": state.client_id if isinstance(state, ClientInbox) else None,
        "confidence": state.confidence if isinstance(state, Classified) else None,
        "private": message.visibility.private,
        "attachments": [
            _serialize_attachment(attachment) for attachment in message.attachments
        ],
    }


def _serialize_attachment(attachment: Attachment) -> dict[str, Any]:
    return {
        "id": attachment.id,
        "messageId": attachment.message_id,
        "filename": attachment.filename,
        "contentType": attachment.content_type,
        "size": attachment.size,
        "private": attachment.visibility.private,
    }


def _serialize_sync_job(job: SyncJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status.value,
        "contactAddress": job.contact_address,
        "caseId": job.case_id,
        "clientId": job.client_id,
        "totalCount": job.total_count,
        "syncedCount": job.synced_count,
        "attempts": job.attempts,
        "cancelRequested": job.cancel_requested,
        "errorMessage": job.error_message,
        "startedAt": serialize_datetime(job.started_at),
        "completedAt": serialize_datetime(job.completed_at),
    }


__all__ = ["create_app"]
