"""Tests for candidate scoring."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from case_router.core.models import (
    Case,
    CaseActor,
    ContactRelation,
    MatchStrength,
)
from case_router.routing.candidates import Candidate
from case_router.routing.scoring import (
    SIGNAL_WEIGHTS,
    CaseScore,
    ScoringContext,
    Signal,
    SignalScorer,
    contains_term,
    rank_scores,
    significant_title_words,
)

RECEIVED_AT = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


def _candidate(**overrides) -> Candidate:
    values = {
        "id": 7,
        "firm_id": 1,
        "client_id": 3,
        "case_number": "4440/2025",
        "title": "Acme lease dispute",
        "keywords": ("warehouse", "eviction"),
        "actors": (CaseActor(name="Ioana Popescu", email="ioana@court.test"),),
    }
    values.update(overrides)
    return Candidate(
        case=Case(**values),
        client_id=values["client_id"],
        relation=ContactRelation.CLIENT_CONTACT,
        strength=MatchStrength.EXACT,
    )


def test_contact_match_alone_scores_the_floor(build_message) -> None:
    message = build_message(subject="Hello", body="Just checking in.")
    result = SignalScorer().score(message, _candidate(), ScoringContext())
    assert result.signals == (Signal.CONTACT_MATCH,)
    assert result.score == SIGNAL_WEIGHTS[Signal.CONTACT_MATCH]


def test_each_signal_fires_once(build_message) -> None:
    message = build_message(
        subject="Warehouse lease question",
        body=(
            "Acme asked about the eviction notice. Ioana Popescu will call. "
            "Warehouse keys are with us."
        ),
    )
    context = ScoringContext(
        references=frozenset({"4440/2025"}),
        thread_case_ids=frozenset({7}),
        client_names={3: "Acme"},
    )
    result = SignalScorer().score(message, _candidate(), context)

    assert set(result.signals) == {
        Signal.THREAD_CONTINUITY,
        Signal.REFERENCE_NUMBER,
        Signal.TITLE_KEYWORD,
        Signal.CLIENT_NAME,
        Signal.SUBJECT_KEYWORD,
        Signal.ACTOR,
        Signal.BODY_KEYWORD,
        Signal.CONTACT_MATCH,
    }
    assert len(result.signals) == len(set(result.signals))
    assert result.score == 100 + 50 + 40 + 35 + 30 + 25 + 20 + 10


def test_body_keyword_requires_a_keyword_other_than_the_subject_one(
    build_message,
) -> None:
    message = build_message(subject="Warehouse", body="The warehouse again.")
    result = SignalScorer().score(message, _candidate(), ScoringContext())
    assert result.has(Signal.SUBJECT_KEYWORD)
    assert not result.has(Signal.BODY_KEYWORD)


def test_case_number_in_text_counts_as_reference(build_message) -> None:
    message = build_message(subject="Re: 4440/2025", body="")
    result = SignalScorer().score(message, _candidate(), ScoringContext())
    assert result.has(Signal.REFERENCE_NUMBER)


def test_recent_activity_window(build_message) -> None:
    message = build_message(received_at=RECEIVED_AT)
    recent = _candidate(last_activity_at=RECEIVED_AT - timedelta(days=6))
    stale = _candidate(last_activity_at=RECEIVED_AT - timedelta(days=8))
    scorer = SignalScorer()
    assert scorer.score(message, recent, ScoringContext()).has(Signal.RECENT_ACTIVITY)
    assert not scorer.score(message, stale, ScoringContext()).has(
        Signal.RECENT_ACTIVITY
    )


def test_whole_word_matching() -> None:
    assert contains_term("Meeting with ACME today", "acme")
    assert not contains_term("Acmeville meeting", "acme")
    assert not contains_term("an ox", "ox")
    assert significant_title_words("Acme versus the city of Cluj") == (
        "acme",
        "city",
        "cluj",
    )


def test_rank_breaks_ties_by_strength_then_case_number() -> None:
    scores = [
        _score(1, strength=1, case_number="B"),
        _score(2, strength=2, case_number="C"),
        _score(3, strength=2, case_number="A"),
        _score(4, strength=1, case_number="Z", score=60),
    ]
    assert [item.case_id for item in rank_scores(scores)] == [4, 3, 2, 1]


def _score(case_id: int, *, strength: int, case_number: str, score: int = 40) -> CaseScore:
    return CaseScore(
        case_id=case_id,
        client_id=case_id,
        score=score,
        signals=(),
        strength=strength,
        case_number=case_number,
    )
