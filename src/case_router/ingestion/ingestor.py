"""Store, classify and apply visibility to one inbound message."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..core.interfaces import CaseRepository
from ..core.models import Attachment, ClassificationStatus, Message, ProviderMessage
from ..privacy import PrivacyGate
from ..routing import LIVE_GATE, ClassificationEngine, ClassificationOutcome
from ..routing.references import extract_references

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IngestResult:
    """Stored message and what happened to it."""

    message: Message
    created: bool
    outcome: ClassificationOutcome | None


def message_from_provider(
    firm_id: int, owner_id: str, item: ProviderMessage
) -> Message:
    """Convert a provider listing entry into an unsaved message."""
    return Message(
        id=None,
        firm_id=firm_id,
        owner_id=owner_id,
        provider_message_id=item.id,
        conversation_id=item.conversation_id,
        subject=item.subject,
        body=item.body,
        sender=item.sender,
        to=item.to,
        cc=item.cc,
        received_at=item.received_at,
        folder=item.folder,
        attachments=tuple(
            Attachment(
                id=None,
                provider_attachment_id=attachment.id,
                filename=attachment.filename,
                content_type=attachment.content_type,
                size=attachment.size,
            )
            for attachment in item.attachments
        ),
    )


class MessageIngestor:
    """Single path used by live ingestion and historical backfill."""

    def __init__(
        self,
        repository: CaseRepository,
        engine: ClassificationEngine,
        privacy_gate: PrivacyGate,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._privacy_gate = privacy_gate

    def ingest(self, message: Message) -> IngestResult:
        """Persist ``message`` idempotently and classify it while still pending."""
        if not message.references:
            message.references = extract_references(message.subject, message.body)

        # The row is written with its default flag so it is never public by accident.
        owner_role = self._owner_role(message)
        self._privacy_gate.apply_default(message, owner_role)

        stored, created = self._repository.insert_message(message)
        if not created:
            LOGGER.debug(
                "Message %s already stored as %s",
                message.provider_message_id,
                stored.id,
            )
            if stored.visibility.changed_at is None:
                self._privacy_gate.set_default_visibility(stored, owner_role)

        outcome: ClassificationOutcome | None = None
        if stored.state.status is ClassificationStatus.PENDING:
            outcome = self._engine.classify(stored, expected=LIVE_GATE)

        return IngestResult(message=stored, created=created, outcome=outcome)

    def _owner_role(self, message: Message) -> str | None:
        principal = self._repository.get_principal(message.owner_id)
        if principal is None:
            LOGGER.warning(
                "Unknown mailbox owner %s; message %s defaults to public",
                message.owner_id,
                message.provider_message_id,
            )
            return None
        return principal.role


__all__ = ["IngestResult", "MessageIngestor", "message_from_provider"]
