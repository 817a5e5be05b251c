"""Weighted signal scoring of candidate cases."""

from __future__ import annotations

import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from ..core.datetime_utils import ensure_utc
from ..core.models import Message
from .candidates import Candidate
from .references import case_reference_set


class Signal(str, Enum):
    THREAD_CONTINUITY = "thread_continuity"
    REFERENCE_NUMBER = "reference_number"
    TITLE_KEYWORD = "title_keyword"
    CLIENT_NAME = "client_name"
    SUBJECT_KEYWORD = "subject_keyword"
    ACTOR = "actor"
    BODY_KEYWORD = "body_keyword"
    RECENT_ACTIVITY = "recent_activity"
    CONTACT_MATCH = "contact_match"


SIGNAL_WEIGHTS: Mapping[Signal, int] = {
    Signal.THREAD_CONTINUITY: 100,
    Signal.REFERENCE_NUMBER: 50,
    Signal.TITLE_KEYWORD: 40,
    Signal.CLIENT_NAME: 35,
    Signal.SUBJECT_KEYWORD: 30,
    Signal.ACTOR: 25,
    Signal.BODY_KEYWORD: 20,
    Signal.RECENT_ACTIVITY: 20,
    Signal.CONTACT_MATCH: 10,
}

RECENT_ACTIVITY_WINDOW = timedelta(days=7)
MIN_TERM_LENGTH = 3
MIN_TITLE_WORD_LENGTH = 4

_TITLE_STOPWORDS = frozenset(
    {
        "against",
        "case",
        "catre",
        "contra",
        "dosar",
        "from",
        "intre",
        "matter",
        "pentru",
        "privind",
        "that",
        "their",
        "this",
        "versus",
        "with",
    }
)
_WORD_SPLIT = re.compile(r"[^\w]+", re.UNICODE)


@dataclass(slots=True)
class ScoringContext:
    """Per-message facts shared by every candidate."""

    references: frozenset[str] = frozenset()
    thread_case_ids: frozenset[int] = frozenset()
    client_names: Mapping[int, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CaseScore:
    """Score of one candidate with the signals that fired."""

    case_id: int
    client_id: int
    score: int
    signals: tuple[Signal, ...]
    strength: int = 0
    case_number: str | None = None

    def has(self, signal: Signal) -> bool:
        return signal in self.signals


def contains_term(text: str, term: str) -> bool:
    """Case-insensitive whole-word search of ``term`` in ``text``."""
    term = term.strip().casefold()
    if len(term) < MIN_TERM_LENGTH:
        return False
    pattern = r"(?<!\w)" + re.escape(term) + r"(?!\w)"
    return re.search(pattern, text.casefold()) is not None


def significant_title_words(title: str) -> tuple[str, ...]:
    words: dict[str, None] = {}
    for word in _WORD_SPLIT.split(title.casefold()):
        if len(word) >= MIN_TITLE_WORD_LENGTH and word not in _TITLE_STOPWORDS:
            words.setdefault(word, None)
    return tuple(words)


class SignalScorer:
    """Compute the integer score of a candidate; each signal fires at most once."""

    def __init__(
        self,
        weights: Mapping[Signal, int] | None = None,
        *,
        recent_window: timedelta = RECENT_ACTIVITY_WINDOW,
    ) -> None:
        self._weights = dict(weights or SIGNAL_WEIGHTS)
        self._recent_window = recent_window

    def score(
        self, message: Message, candidate: Candidate, context: ScoringContext
    ) -> CaseScore:
        case = candidate.case
        subject = message.subject or ""
        body = message.body or ""
        text = f"{subject}\n{body}"
        fired: list[Signal] = []

        if candidate.case_id in context.thread_case_ids:
            fired.append(Signal.THREAD_CONTINUITY)

        if self._reference_matches(
            case.case_number, case.reference_numbers, context.references, text
        ):
            fired.append(Signal.REFERENCE_NUMBER)

        title_words = significant_title_words(case.title)
        if any(contains_term(subject, word) for word in title_words):
            fired.append(Signal.TITLE_KEYWORD)

        client_name = context.client_names.get(candidate.client_id)
        if client_name and contains_term(text, client_name):
            fired.append(Signal.CLIENT_NAME)

        subject_keyword = _first_match(subject, case.keywords)
        if subject_keyword is not None:
            fired.append(Signal.SUBJECT_KEYWORD)

        if any(contains_term(text, actor.name) for actor in case.actors if actor.name):
            fired.append(Signal.ACTOR)

        remaining = [
            kw for kw in case.keywords if kw.casefold().strip() != subject_keyword
        ]
        if _first_match(body, remaining) is not None:
            fired.append(Signal.BODY_KEYWORD)

        if self._is_recent(message, candidate):
            fired.append(Signal.RECENT_ACTIVITY)

        fired.append(Signal.CONTACT_MATCH)

        return CaseScore(
            case_id=candidate.case_id,
            client_id=candidate.client_id,
            score=sum(self._weights.get(signal, 0) for signal in fired),
            signals=tuple(fired),
            strength=int(candidate.strength),
            case_number=case.case_number,
        )

    def _reference_matches(
        self,
        case_number: str | None,
        reference_numbers: Collection[str],
        references: frozenset[str],
        text: str,
    ) -> bool:
        if case_reference_set(case_number, reference_numbers) & references:
            return True
        return bool(case_number) and contains_term(text, case_number or "")

    def _is_recent(self, message: Message, candidate: Candidate) -> bool:
        received = ensure_utc(message.received_at)
        last_activity = ensure_utc(candidate.case.last_activity_at)
        if received is None or last_activity is None:
            return False
        return abs(received - last_activity) <= self._recent_window


def rank_scores(scores: Collection[CaseScore]) -> list[CaseScore]:
    """Order scores best first; ties go to the stronger match, then case number."""
    return sorted(
        scores,
        key=lambda item: (
            -item.score,
            -item.strength,
            item.case_number or "",
            item.case_id,
        ),
    )


def _first_match(text: str, keywords: Collection[str]) -> str | None:
    if not text:
        return None
    for keyword in keywords:
        if contains_term(text, keyword):
            return keyword.casefold().strip()
    return None


__all__ = [
    "CaseScore",
    "RECENT_ACTIVITY_WINDOW",
    "SIGNAL_WEIGHTS",
    "ScoringContext",
    "Signal",
    "SignalScorer",
    "contains_term",
    "rank_scores",
    "significant_title_words",
]
