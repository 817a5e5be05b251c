"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from .models import (
    Attachment,
    Case,
    CaseBinding,
    ClassificationState,
    ClassificationStatus,
    Client,
    Contact,
    CourtSource,
    MatchMethod,
    Message,
    MessagePage,
    Principal,
    SyncJob,
    SyncJobStatus,
)


class DirectoryRepository(Protocol):
    """Read access to the firm's clients, cases and known addresses."""

    def get_principal(self, principal_id: str) -> Principal | None:
        """Return the mailbox owner record."""
        raise NotImplementedError

    def get_client(self, client_id: int) -> Client | None:
        """Return a client by id."""
        raise NotImplementedError

    def list_clients(self, firm_id: int) -> list[Client]:
        """Return every client of a firm."""
        raise NotImplementedError

    def get_case(self, case_id: int) -> Case | None:
        """Return a case with its actors."""
        raise NotImplementedError

    def list_cases(self, firm_id: int, *, active_only: bool = False) -> list[Case]:
        """Return the firm's cases with their actors."""
        raise NotImplementedError

    def list_contacts(self, firm_id: int) -> list[Contact]:
        """Return all configured contact addresses of a firm."""
        raise NotImplementedError

    def list_court_sources(self, firm_id: int) -> list[CourtSource]:
        """Return registered court and authority senders."""
        raise NotImplementedError

    def add_contact(self, contact: Contact) -> Contact:
        """Store a new contact address."""
        raise NotImplementedError

    def add_case_reference(self, case_id: int, reference: str) -> bool:
        """Register a reference number on a case."""
        raise NotImplementedError


class MessageRepository(Protocol):
    """Persistence of messages, bindings and visibility."""

    def insert_message(self, message: Message) -> tuple[Message, bool]:
        """Store ``message`` unless already known; return it and whether it was new."""
        raise NotImplementedError

    def get_message(self, message_id: int) -> Message | None:
        """Return a stored message with its attachments."""
        raise NotImplementedError

    def list_messages_by_status(
        self, firm_id: int, statuses: Iterable[ClassificationStatus]
    ) -> list[Message]:
        """Return a firm's messages currently in one of ``statuses``."""
        raise NotImplementedError

    def list_conversation(self, firm_id: int, conversation_id: str) -> list[Message]:
        """Return every stored message of a conversation."""
        raise NotImplementedError

    def list_client_inbox(self, client_id: int) -> list[Message]:
        """Return messages waiting in a client's inbox."""
        raise NotImplementedError

    def conversation_case_ids(
        self, firm_id: int, conversation_id: str, *, exclude_message_id: int | None
    ) -> list[int]:
        """Return cases primarily bound to a conversation, most recent first."""
        raise NotImplementedError

    def commit_classification(
        self,
        message_id: int,
        state: ClassificationState,
        bindings: Sequence[CaseBinding],
        *,
        method: MatchMethod | None,
        reason: str | None,
        expected: Iterable[ClassificationStatus],
    ) -> bool:
        """Write state and bindings only while the message is in ``expected``."""
        raise NotImplementedError

    def touch_case_activity(self, case_id: int, at: datetime) -> None:
        """Advance a case's last activity timestamp."""
        raise NotImplementedError

    def list_bindings(self, message_id: int) -> list[CaseBinding]:
        """Return the bindings of a message, primary first."""
        raise NotImplementedError

    def add_binding(self, binding: CaseBinding) -> None:
        """Insert or update one binding."""
        raise NotImplementedError

    def set_message_visibility(
        self, message_id: int, private: bool, changed_by: str, changed_at: datetime
    ) -> None:
        """Record the message's private flag."""
        raise NotImplementedError

    def set_attachment_visibility(
        self, attachment_id: int, private: bool, changed_by: str, changed_at: datetime
    ) -> None:
        """Record an attachment's private flag."""
        raise NotImplementedError

    def get_attachment(self, attachment_id: int) -> Attachment | None:
        """Return a stored attachment."""
        raise NotImplementedError

    def set_attachment_storage_ref(self, attachment_id: int, storage_ref: str) -> None:
        """Remember where an attachment's content was stored."""
        raise NotImplementedError


class SyncJobRepository(Protocol):
    """Persistence and leasing of historical sync jobs."""

    def create_sync_job(self, job: SyncJob) -> SyncJob:
        """Insert a job and return it with its id."""
        raise NotImplementedError

    def find_open_sync_job(
        self,
        firm_id: int,
        contact_address: str,
        *,
        case_id: int | None,
        client_id: int | None,
    ) -> SyncJob | None:
        """Return a pending or running job for the same target and address."""
        raise NotImplementedError

    def request_sync_cancel(self, job_id: int, *, now: datetime | None = None) -> bool:
        """Set the cancellation flag of an open job."""
        raise NotImplementedError

    def get_sync_job(self, job_id: int) -> SyncJob | None:
        """Return a job by id."""
        raise NotImplementedError

    def acquire_sync_lease(
        self, job_id: int, owner: str, now: datetime, expires_at: datetime
    ) -> bool:
        """Take the job lease when free, expired or already held by ``owner``."""
        raise NotImplementedError

    def renew_sync_lease(self, job_id: int, owner: str, expires_at: datetime) -> bool:
        """Extend a held lease; return ``False`` when it was lost."""
        raise NotImplementedError

    def release_sync_lease(self, job_id: int, owner: str) -> None:
        """Drop the lease if ``owner`` still holds it."""
        raise NotImplementedError

    def save_sync_job(self, job: SyncJob) -> None:
        """Persist status, counters, cursor and error columns."""
        raise NotImplementedError

    def is_sync_cancel_requested(self, job_id: int) -> bool:
        """Return the operator cancellation flag."""
        raise NotImplementedError

    def list_sync_jobs(self, statuses: Iterable[SyncJobStatus]) -> list[SyncJob]:
        """Return jobs in any of ``statuses``, oldest first."""
        raise NotImplementedError


class CaseRepository(
    DirectoryRepository, MessageRepository, SyncJobRepository, Protocol
):
    """Complete persistence surface used by the router."""


class CredentialProvider(Protocol):
    """Issue a bearer credential valid right now for a principal."""

    def get_token(self, principal_id: str) -> str:
        """Return a fresh access token."""
        raise NotImplementedError

    def invalidate(self, principal_id: str) -> None:
        """Forget any token held for ``principal_id`` after a rejection."""
        raise NotImplementedError


class MailProvider(Protocol):
    """External mail provider API."""

    def list_messages(
        self,
        token: str,
        contact_address: str,
        *,
        cursor: str | None,
        page_size: int,
    ) -> MessagePage:
        """Return one page of messages exchanged with ``contact_address``."""
        raise NotImplementedError

    def download_attachment(
        self, token: str, message_id: str, attachment_id: str
    ) -> bytes:
        """Return the raw content of an attachment."""
        raise NotImplementedError


class AttachmentStore(Protocol):
    """Destination for downloaded attachment content."""

    def save(self, message: Message, attachment: Attachment, content: bytes) -> str:
        """Store content and return its storage reference."""
        raise NotImplementedError

    def exists(self, storage_ref: str) -> bool:
        """Return whether ``storage_ref`` is present."""
        raise NotImplementedError


__all__ = [
    "AttachmentStore",
    "CaseRepository",
    "CredentialProvider",
    "DirectoryRepository",
    "MailProvider",
    "MessageRepository",
    "SyncJobRepository",
]
