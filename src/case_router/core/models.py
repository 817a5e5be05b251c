"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum


class ClassificationStatus(str, Enum):
    """Storage tag for a message's classification state."""

    PENDING = "pending"
    CLASSIFIED = "classified"
    UNCERTAIN = "uncertain"
    CLIENT_INBOX = "client_inbox"
    COURT_UNASSIGNED = "court_unassigned"


@dataclass(frozen=True, slots=True)
class Pending:
    """Message not yet evaluated."""

    @property
    def status(self) -> ClassificationStatus:
        return ClassificationStatus.PENDING


@dataclass(frozen=True, slots=True)
class Classified:
    """Message bound to exactly one primary case."""

    case_id: int
    confidence: float

    def __post_init__(self) -> None:
        if self.case_id is None:
            raise ValueError("Classified state requires a case id")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence {self.confidence} outside [0, 1]")

    @property
    def status(self) -> ClassificationStatus:
        return ClassificationStatus.CLASSIFIED


@dataclass(frozen=True, slots=True)
class Uncertain:
    """No signal fired and nothing to route to."""

    @property
    def status(self) -> ClassificationStatus:
        return ClassificationStatus.UNCERTAIN


@dataclass(frozen=True, slots=True)
class ClientInbox:
    """Message bound to a client but ambiguous between its cases."""

    client_id: int

    def __post_init__(self) -> None:
        if self.client_id is None:
            raise ValueError("ClientInbox state requires a client id")

    @property
    def status(self) -> ClassificationStatus:
        return ClassificationStatus.CLIENT_INBOX


@dataclass(frozen=True, slots=True)
class CourtUnassigned:
    """Court or authority correspondence not yet tied to a case."""

    @property
    def status(self) -> ClassificationStatus:
        return ClassificationStatus.COURT_UNASSIGNED


ClassificationState = Pending | Classified | Uncertain | ClientInbox | CourtUnassigned


def build_state(
    status: ClassificationStatus | str,
    *,
    case_id: int | None = None,
    client_id: int | None = None,
    confidence: float | None = None,
) -> ClassificationState:
    """Rebuild a state variant from its stored columns."""
    tag = ClassificationStatus(status)
    if tag is ClassificationStatus.CLASSIFIED:
        if case_id is None:
            raise ValueError("Stored classified message has no primary binding")
        return Classified(case_id=case_id, confidence=confidence or 0.0)
    if tag is ClassificationStatus.CLIENT_INBOX:
        if client_id is None:
            raise ValueError("Stored client inbox message has no client id")
        return ClientInbox(client_id=client_id)
    if tag is ClassificationStatus.UNCERTAIN:
        return Uncertain()
    if tag is ClassificationStatus.COURT_UNASSIGNED:
        return CourtUnassigned()
    return Pending()


class MatchMethod(str, Enum):
    """How a case binding was produced."""

    THREAD = "thread"
    REFERENCE = "reference"
    COURT_REFERENCE = "court_reference"
    CONTACT = "contact"
    SCORING = "scoring"
    AI = "ai"
    MANUAL = "manual"


class MatchStrength(IntEnum):
    """Strength of a directory match; higher ranks first."""

    DOMAIN = 1
    EXACT = 2


class ContactRelation(str, Enum):
    """Which kind of contact produced a candidate."""

    ACTOR = "actor"
    CLIENT_CONTACT = "client_contact"


class EntityKind(str, Enum):
    """Entity addressed by a directory match."""

    CASE = "case"
    CLIENT = "client"


class CaseStatus(str, Enum):
    """Lifecycle status of a case."""

    ACTIVE = "Active"
    PENDING_APPROVAL = "PendingApproval"
    CLOSED = "Closed"


class SyncJobStatus(str, Enum):
    """Lifecycle status of a historical sync job."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SyncJobStatus.COMPLETED,
            SyncJobStatus.FAILED,
            SyncJobStatus.CANCELLED,
        )


@dataclass(slots=True)
class VisibilityFlag:
    """Private flag together with who last changed it."""

    private: bool = False
    changed_by: str | None = None
    changed_at: datetime | None = None


@dataclass(slots=True)
class Attachment:
    """Attachment metadata and its location in the attachment store."""

    id: int | None
    provider_attachment_id: str
    filename: str | None
    content_type: str | None
    size: int | None
    message_id: int | None = None
    storage_ref: str | None = None
    visibility: VisibilityFlag = field(default_factory=VisibilityFlag)


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Message:
    """One email owned by a firm, as stored by the router."""

    id: int | None
    firm_id: int
    owner_id: str
    provider_message_id: str
    conversation_id: str | None
    subject: str | None
    body: str | None
    sender: str | None
    to: tuple[str, ...]
    cc: tuple[str, ...]
    received_at: datetime | None
    folder: str = "Inbox"
    references: tuple[str, ...] = ()
    attachments: tuple[Attachment, ...] = ()
    state: ClassificationState = field(default_factory=Pending)
    visibility: VisibilityFlag = field(default_factory=VisibilityFlag)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


@dataclass(slots=True)
class CaseActor:
    """Named party on a case such as opposing counsel or a clerk."""

    name: str
    email: str | None = None
    role: str | None = None


@dataclass(slots=True)
class Case:
    """A legal matter belonging to a client."""

    id: int | None
    firm_id: int
    client_id: int
    case_number: str | None
    title: str
    status: CaseStatus = CaseStatus.ACTIVE
    keywords: tuple[str, ...] = ()
    reference_numbers: tuple[str, ...] = ()
    actors: tuple[CaseActor, ...] = ()
    last_activity_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in (CaseStatus.ACTIVE, CaseStatus.PENDING_APPROVAL)


@dataclass(slots=True)
class Client:
    """Represented party; may hold several concurrent cases."""

    id: int | None
    firm_id: int
    name: str


@dataclass(slots=True)
class Contact:
    """Known address tied to either a case or a client."""

    id: int | None
    firm_id: int
    address: str
    case_id: int | None = None
    client_id: int | None = None
    role: str | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if (self.case_id is None) == (self.client_id is None):
            raise ValueError("Contact must reference exactly one of case or client")


@dataclass(slots=True)
class CourtSource:
    """Registered court or authority sender."""

    id: int | None
    firm_id: int
    name: str
    emails: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()


@dataclass(slots=True)
class Principal:
    """Mailbox owner inside a firm."""

    id: str
    firm_id: int
    role: str
    email: str | None = None


@dataclass(slots=True)
class CaseBinding:
    """Relation between a message and a case."""

    message_id: int | None
    case_id: int
    confidence: float
    method: MatchMethod
    is_primary: bool = True
    created_by: str | None = None
    created_at: datetime | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class SyncJob:
    """Historical backfill for one contact address of a case or client."""

    id: int | None
    firm_id: int
    principal_id: str
    contact_address: str
    case_id: int | None = None
    client_id: int | None = None
    status: SyncJobStatus = SyncJobStatus.PENDING
    total_count: int | None = None
    synced_count: int = 0
    cursor: str | None = None
    cursor_offset: int = 0
    attempts: int = 0
    cancel_requested: bool = False
    error_message: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class ProviderAttachment:
    """Attachment descriptor returned by the mail provider."""

    id: str
    filename: str | None
    content_type: str | None
    size: int | None


@dataclass(slots=True)
class ProviderMessage:
    """Message as listed by the mail provider."""

    id: str
    conversation_id: str | None
    subject: str | None
    body: str | None
    sender: str | None
    to: tuple[str, ...]
    cc: tuple[str, ...]
    received_at: datetime | None
    folder: str = "Inbox"
    attachments: tuple[ProviderAttachment, ...] = ()


@dataclass(slots=True)
class MessagePage:
    """One page of provider results."""

    messages: tuple[ProviderMessage, ...]
    next_cursor: str | None
    total_estimate: int | None = None


__all__ = [
    "Attachment",
    "Case",
    "CaseActor",
    "CaseBinding",
    "CaseStatus",
    "ClassificationState",
    "ClassificationStatus",
    "Classified",
    "Client",
    "ClientInbox",
    "Contact",
    "ContactRelation",
    "CourtSource",
    "CourtUnassigned",
    "EntityKind",
    "MatchMethod",
    "MatchStrength",
    "Message",
    "MessagePage",
    "Pending",
    "Principal",
    "ProviderAttachment",
    "ProviderMessage",
    "SyncJob",
    "SyncJobStatus",
    "Uncertain",
    "VisibilityFlag",
    "build_state",
]
