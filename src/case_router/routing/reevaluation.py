"""Re-run classification when the firm's knowledge changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..core.errors import NotFoundError
from ..core.interfaces import CaseRepository
from ..core.models import (
    CaseBinding,
    ClassificationStatus,
    Classified,
    Contact,
    MatchMethod,
    Message,
    Uncertain,
)
from .engine import (
    REEVALUATION_GATE,
    ClassificationEngine,
    ClassificationOutcome,
    classified_outcome,
    message_references,
)
from .references import normalize_reference

LOGGER = logging.getLogger(__name__)

# Messages a manual decision on a conversation may still pull along.
_THREAD_FOLLOW_GATE: tuple[ClassificationStatus, ...] = (
    ClassificationStatus.PENDING,
    ClassificationStatus.UNCERTAIN,
    ClassificationStatus.CLIENT_INBOX,
)
_ANY_STATE: tuple[ClassificationStatus, ...] = tuple(ClassificationStatus)


@dataclass(slots=True)
class ReevaluationReport:
    """Counters describing one re-evaluation pass."""

    examined: int = 0
    changed: int = 0
    skipped: int = 0


class ReevaluationService:
    """Triggers that revisit earlier classification results."""

    def __init__(self, repository: CaseRepository, engine: ClassificationEngine) -> None:
        self._repository = repository
        self._engine = engine

    def on_contact_added(self, contact: Contact) -> ReevaluationReport:
        """Re-run the engine over the firm's ``Pending`` and ``Uncertain`` mail.

        Messages in any other state, in particular those already classified
        to a case, are never read back into the engine.
        """
        return self.reevaluate_firm(contact.firm_id)

    def reevaluate_firm(self, firm_id: int) -> ReevaluationReport:
        report = ReevaluationReport()
        for message in self._repository.list_messages_by_status(
            firm_id, REEVALUATION_GATE
        ):
            report.examined += 1
            outcome = self._engine.evaluate(message)
            if _is_noop(message, outcome):
                report.skipped += 1
                continue
            if self._engine.commit(message, outcome, expected=REEVALUATION_GATE):
                report.changed += 1
            else:
                report.skipped += 1
        LOGGER.info(
            "Re-evaluated firm %s: %d examined, %d changed",
            firm_id,
            report.examined,
            report.changed,
        )
        return report

    def on_case_reference_added(
        self, case_id: int, reference: str
    ) -> ReevaluationReport:
        """Register ``reference`` on a case and claim court mail citing it."""
        case = self._repository.get_case(case_id)
        if case is None:
            raise NotFoundError(f"Case {case_id} does not exist")
        self._repository.add_case_reference(case_id, reference)

        token = normalize_reference(reference)
        report = ReevaluationReport()
        for message in self._repository.list_messages_by_status(
            case.firm_id, (ClassificationStatus.COURT_UNASSIGNED,)
        ):
            report.examined += 1
            if token not in message_references(message):
                report.skipped += 1
                continue
            outcome = classified_outcome(
                case_id,
                1.0,
                MatchMethod.COURT_REFERENCE,
                f"reference {reference} added to case {case_id}",
                created_by="system:reference-match",
            )
            if self._engine.commit(
                message,
                outcome,
                expected=(ClassificationStatus.COURT_UNASSIGNED,),
            ):
                report.changed += 1
            else:
                report.skipped += 1
        LOGGER.info(
            "Reference %s on case %s claimed %d court messages",
            reference,
            case_id,
            report.changed,
        )
        return report

    def assign_manually(
        self, message_id: int, case_id: int, actor_id: str
    ) -> ClassificationOutcome:
        """Bind a message to a case by explicit user decision, from any state.

        Other messages of the same conversation that are still unresolved
        follow the decision through thread continuity.
        """
        message = self._load_message(message_id)
        case = self._repository.get_case(case_id)
        if case is None or case.firm_id != message.firm_id:
            raise NotFoundError(f"Case {case_id} does not exist")

        outcome = classified_outcome(
            case_id,
            1.0,
            MatchMethod.MANUAL,
            f"assigned to case {case_id} by {actor_id}",
            created_by=actor_id,
        )
        self._engine.commit(message, outcome, expected=_ANY_STATE)

        if message.conversation_id:
            for sibling in self._repository.list_conversation(
                message.firm_id, message.conversation_id
            ):
                if sibling.id == message.id:
                    continue
                if sibling.state.status not in _THREAD_FOLLOW_GATE:
                    continue
                self._engine.classify(sibling, expected=_THREAD_FOLLOW_GATE)
        return outcome

    def add_secondary_binding(
        self, message_id: int, case_id: int, actor_id: str
    ) -> CaseBinding:
        """Attach a classified message to an additional case (joint proceedings)."""
        message = self._load_message(message_id)
        if not isinstance(message.state, Classified):
            raise ValueError(
                f"Message {message_id} must be classified before adding a binding"
            )
        if message.state.case_id == case_id:
            raise ValueError(f"Case {case_id} is already the primary binding")
        case = self._repository.get_case(case_id)
        if case is None or case.firm_id != message.firm_id:
            raise NotFoundError(f"Case {case_id} does not exist")

        binding = CaseBinding(
            message_id=message_id,
            case_id=case_id,
            confidence=1.0,
            method=MatchMethod.MANUAL,
            is_primary=False,
            created_by=actor_id,
        )
        self._repository.add_binding(binding)
        return binding

    def _load_message(self, message_id: int) -> Message:
        message = self._repository.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} does not exist")
        return message


def _is_noop(message: Message, outcome: ClassificationOutcome) -> bool:
    return isinstance(message.state, Uncertain) and isinstance(outcome.state, Uncertain)


__all__ = ["ReevaluationReport", "ReevaluationService"]
