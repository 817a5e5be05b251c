"""Classification decision engine.

The engine turns the directory, candidate and scoring results for one
message into exactly one ``ClassificationState``:

* a conversation already bound to a single case keeps that case;
* mail from a registered court is matched by reference number against
  every active case and otherwise parked as ``CourtUnassigned``;
* a lone candidate is classified when it clears the score floor;
* several cases of one client need a ``min_gap`` lead, otherwise the
  message goes to that client's inbox for manual disambiguation;
* across clients the best case wins outright;
* only an ``Uncertain`` result is handed to the optional AI fallback.

Writes go through ``commit_classification`` which only succeeds while the
message is still in one of the expected states, so live ingestion,
backfill and re-evaluation cannot overwrite each other's results.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from ..core.config import ClassificationSettings
from ..core.interfaces import CaseRepository
from ..core.models import (
    Case,
    CaseBinding,
    ClassificationState,
    ClassificationStatus,
    Classified,
    ClientInbox,
    CourtUnassigned,
    MatchMethod,
    Message,
    Uncertain,
)
from ..directory import ContactDirectory
from ..intelligence import AiCaseClassifier, AiFallbackError
from .candidates import CandidatePool, CandidateResolver
from .references import case_reference_set, extract_references
from .scoring import CaseScore, ScoringContext, Signal, SignalScorer, rank_scores

LOGGER = logging.getLogger(__name__)

SENT_FOLDERS = frozenset({"sent", "sent items", "sent mail", "elemente trimise"})
SYSTEM_ACTOR = "system"

LIVE_GATE: tuple[ClassificationStatus, ...] = (ClassificationStatus.PENDING,)
REEVALUATION_GATE: tuple[ClassificationStatus, ...] = (
    ClassificationStatus.PENDING,
    ClassificationStatus.UNCERTAIN,
)


@dataclass(slots=True)
class ClassificationOutcome:
    """Decision for one message together with the evidence behind it."""

    state: ClassificationState
    method: MatchMethod | None
    reason: str
    bindings: tuple[CaseBinding, ...] = ()
    scores: tuple[CaseScore, ...] = ()


def is_sent_folder(folder: str | None) -> bool:
    return bool(folder) and folder.strip().casefold() in SENT_FOLDERS


def classification_addresses(message: Message) -> tuple[str, ...]:
    """Addresses identifying the counterparty: recipients for sent mail, else the sender."""
    if is_sent_folder(message.folder):
        return (*message.to, *message.cc)
    return (message.sender,) if message.sender else ()


def message_references(message: Message) -> frozenset[str]:
    if message.references:
        return frozenset(message.references)
    return frozenset(extract_references(message.subject, message.body))


def classified_outcome(
    case_id: int,
    confidence: float,
    method: MatchMethod,
    reason: str,
    *,
    created_by: str = SYSTEM_ACTOR,
    scores: Sequence[CaseScore] = (),
) -> ClassificationOutcome:
    confidence = round(min(max(confidence, 0.0), 1.0), 4)
    return ClassificationOutcome(
        state=Classified(case_id=case_id, confidence=confidence),
        method=method,
        reason=reason,
        bindings=(
            CaseBinding(
                message_id=None,
                case_id=case_id,
                confidence=confidence,
                method=method,
                is_primary=True,
                created_by=created_by,
            ),
        ),
        scores=tuple(scores),
    )


class ClassificationEngine:
    """Decide and commit the classification state of messages."""

    def __init__(
        self,
        repository: CaseRepository,
        settings: ClassificationSettings | None = None,
        *,
        directory: ContactDirectory | None = None,
        resolver: CandidateResolver | None = None,
        scorer: SignalScorer | None = None,
        ai_classifier: AiCaseClassifier | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or ClassificationSettings()
        self._directory = directory or ContactDirectory(repository)
        self._resolver = resolver or CandidateResolver(repository)
        self._scorer = scorer or SignalScorer()
        self._ai_classifier = ai_classifier

    # Public API --------------------------------------------------------------
    def evaluate(self, message: Message) -> ClassificationOutcome:
        """Decide a state for ``message`` without writing anything."""
        try:
            outcome = self._evaluate_deterministic(message)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Classification of message %s failed: %s",
                message.id,
                exc,
                exc_info=True,
            )
            return ClassificationOutcome(
                state=Uncertain(), method=None, reason=f"evaluation error: {exc}"
            )

        if isinstance(outcome.state, Uncertain) and self._ai_classifier is not None:
            return self._consult_ai(self._ai_classifier, message, outcome)
        return outcome

    def classify(
        self,
        message: Message,
        *,
        expected: Iterable[ClassificationStatus] = LIVE_GATE,
    ) -> ClassificationOutcome | None:
        """Evaluate and commit; ``None`` when another path already moved the message."""
        if message.id is None:
            raise ValueError("Message must be stored before it is classified")
        outcome = self.evaluate(message)
        if not self.commit(message, outcome, expected=expected):
            return None
        return outcome

    def commit(
        self,
        message: Message,
        outcome: ClassificationOutcome,
        *,
        expected: Iterable[ClassificationStatus],
    ) -> bool:
        """Write ``outcome`` if the message is still in one of ``expected``."""
        if message.id is None:
            raise ValueError("Message must be stored before it is classified")
        bindings = tuple(
            replace(binding, message_id=message.id) for binding in outcome.bindings
        )
        committed = self._repository.commit_classification(
            message.id,
            outcome.state,
            bindings,
            method=outcome.method,
            reason=outcome.reason,
            expected=tuple(expected),
        )
        if not committed:
            LOGGER.info(
                "Message %s left its expected state before commit; keeping stored result",
                message.id,
            )
            return False

        message.state = outcome.state
        if isinstance(outcome.state, Classified) and message.received_at is not None:
            self._repository.touch_case_activity(
                outcome.state.case_id, message.received_at
            )
        LOGGER.info(
            "Message %s classified as %s (%s)",
            message.id,
            outcome.state.status.value,
            outcome.reason,
        )
        return True

    # Deterministic decision --------------------------------------------------
    def _evaluate_deterministic(self, message: Message) -> ClassificationOutcome:
        references = message_references(message)

        thread_case_ids: list[int] = []
        if message.conversation_id:
            thread_case_ids = self._repository.conversation_case_ids(
                message.firm_id,
                message.conversation_id,
                exclude_message_id=message.id,
            )
            if len(thread_case_ids) == 1:
                return classified_outcome(
                    thread_case_ids[0],
                    1.0,
                    MatchMethod.THREAD,
                    f"conversation already bound to case {thread_case_ids[0]}",
                )

        addresses = classification_addresses(message)
        court = self._directory.court_source_for(addresses, message.firm_id)
        if court is not None:
            court_case = self._match_court_reference(message.firm_id, references)
            if court_case is not None:
                return classified_outcome(
                    int(court_case.id),  # type: ignore[arg-type]
                    1.0,
                    MatchMethod.COURT_REFERENCE,
                    f"{court.name} reference matches case {court_case.id}",
                )

        matches = self._directory.resolve_many(addresses, message.firm_id)
        pool = self._resolver.resolve(matches, message.firm_id)
        context = ScoringContext(
            references=references,
            thread_case_ids=frozenset(thread_case_ids),
            client_names={
                client_id: client.name for client_id, client in pool.clients.items()
            },
        )
        outcome = self._decide(message, pool, context)

        if court is not None and not isinstance(outcome.state, Classified):
            return ClassificationOutcome(
                state=CourtUnassigned(),
                method=None,
                reason=f"sent by {court.name}; no unique case reference",
                scores=outcome.scores,
            )
        return outcome

    def _decide(
        self, message: Message, pool: CandidatePool, context: ScoringContext
    ) -> ClassificationOutcome:
        floor = self._settings.score_floor

        if not pool.candidates:
            client_id = pool.best_client_target()
            if client_id is not None:
                return ClassificationOutcome(
                    state=ClientInbox(client_id=client_id),
                    method=MatchMethod.CONTACT,
                    reason=f"client {client_id} has no active case",
                )
            return ClassificationOutcome(
                state=Uncertain(), method=None, reason="no candidate case"
            )

        scores = rank_scores(
            [
                self._scorer.score(message, candidate, context)
                for candidate in pool.candidates
            ]
        )
        top = scores[0]

        if len(scores) == 1:
            if top.score > floor:
                confidence = max(self._settings.single_case_confidence, top.score / 100)
                return classified_outcome(
                    top.case_id,
                    confidence,
                    _method_for(top, MatchMethod.CONTACT),
                    f"only candidate, score {top.score}",
                    scores=scores,
                )
            return ClassificationOutcome(
                state=Uncertain(),
                method=None,
                reason=f"only candidate scored {top.score}, floor {floor}",
                scores=tuple(scores),
            )

        runner_up = scores[1]
        if len(pool.client_ids) == 1:
            gap = top.score - runner_up.score
            if gap >= self._settings.min_gap and top.score > floor:
                return classified_outcome(
                    top.case_id,
                    top.score / 100,
                    _method_for(top, MatchMethod.SCORING),
                    f"score {top.score} leads by {gap}",
                    scores=scores,
                )
            return ClassificationOutcome(
                state=ClientInbox(client_id=top.client_id),
                method=None,
                reason=(
                    f"{len(scores)} cases of client {top.client_id} within "
                    f"gap {gap} < {self._settings.min_gap}"
                ),
                scores=tuple(scores),
            )

        if top.score > floor:
            return classified_outcome(
                top.case_id,
                top.score / 100,
                _method_for(top, MatchMethod.SCORING),
                f"best match across clients, score {top.score}",
                scores=scores,
            )
        return ClassificationOutcome(
            state=Uncertain(),
            method=None,
            reason=f"best score {top.score} does not clear floor {floor}",
            scores=tuple(scores),
        )

    def _match_court_reference(
        self, firm_id: int, references: frozenset[str]
    ) -> Case | None:
        if not references:
            return None
        hits = [
            case
            for case in self._repository.list_cases(firm_id, active_only=True)
            if case_reference_set(case.case_number, case.reference_numbers) & references
        ]
        if len(hits) == 1:
            return hits[0]
        if len(hits) > 1:
            LOGGER.info(
                "Court reference matches %d cases; leaving message unassigned", len(hits)
            )
        return None

    # AI fallback -------------------------------------------------------------
    def _consult_ai(
        self,
        classifier: AiCaseClassifier,
        message: Message,
        outcome: ClassificationOutcome,
    ) -> ClassificationOutcome:
        cases = self._ai_cases(message, outcome)
        clients = {
            int(client.id): client  # type: ignore[arg-type]
            for client in self._repository.list_clients(message.firm_id)
        }
        try:
            suggestion = classifier.suggest(message, cases, clients)
        except AiFallbackError as exc:
            LOGGER.warning("AI fallback unusable for message %s: %s", message.id, exc)
            return replace(outcome, reason=f"{outcome.reason}; AI fallback failed: {exc}")

        offered = {case.id: case for case in cases}
        if suggestion.case_id is None:
            return replace(outcome, reason=f"{outcome.reason}; AI found no case")
        case = offered.get(suggestion.case_id)
        if case is None:
            LOGGER.warning(
                "AI fallback returned unknown case %s for message %s",
                suggestion.case_id,
                message.id,
            )
            return replace(
                outcome,
                reason=f"{outcome.reason}; AI returned invalid case {suggestion.case_id}",
            )

        if suggestion.confidence >= self._settings.ai_min_confidence:
            return classified_outcome(
                suggestion.case_id,
                suggestion.confidence,
                MatchMethod.AI,
                f"AI ({suggestion.provider}): {suggestion.reasoning}",
                created_by=f"{SYSTEM_ACTOR}:{suggestion.provider}",
                scores=outcome.scores,
            )
        if suggestion.confidence >= self._settings.ai_client_inbox_confidence:
            return ClassificationOutcome(
                state=ClientInbox(client_id=case.client_id),
                method=MatchMethod.AI,
                reason=(
                    f"AI suggested case {case.id} with low confidence "
                    f"{suggestion.confidence:.2f}"
                ),
                scores=outcome.scores,
            )
        return replace(
            outcome,
            reason=f"{outcome.reason}; AI confidence {suggestion.confidence:.2f} too low",
        )

    def _ai_cases(
        self, message: Message, outcome: ClassificationOutcome
    ) -> list[Case]:
        limit = self._settings.ai_max_cases
        if outcome.scores:
            cases = [self._repository.get_case(score.case_id) for score in outcome.scores]
            return [case for case in cases if case is not None][:limit]
        return self._repository.list_cases(message.firm_id, active_only=True)[:limit]


def _method_for(score: CaseScore, default: MatchMethod) -> MatchMethod:
    if score.has(Signal.THREAD_CONTINUITY):
        return MatchMethod.THREAD
    if score.has(Signal.REFERENCE_NUMBER):
        return MatchMethod.REFERENCE
    return default


__all__ = [
    "ClassificationEngine",
    "ClassificationOutcome",
    "LIVE_GATE",
    "REEVALUATION_GATE",
    "SENT_FOLDERS",
    "classification_addresses",
    "classified_outcome",
    "is_sent_folder",
    "message_references",
]
