"""Tests for the classification decision engine."""

from __future__ import annotations

import pytest

from case_router.core.config import ClassificationSettings
from case_router.core.models import (
    Case,
    CaseStatus,
    ClassificationStatus,
    Classified,
    Client,
    ClientInbox,
    Contact,
    CourtSource,
    CourtUnassigned,
    MatchMethod,
    Uncertain,
)
from case_router.routing import (
    ClassificationEngine,
    ReevaluationService,
    Signal,
    SignalScorer,
)

FIRM_ID = 1


class ExplodingScorer(SignalScorer):
    """Scorer failing on every candidate."""

    def score(self, message, candidate, context):
        raise RuntimeError("scorer exploded")


def _client(repository, name: str, contact: str | None = None) -> Client:
    client = repository.add_client(Client(id=None, firm_id=FIRM_ID, name=name))
    if contact:
        repository.add_contact(
            Contact(id=None, firm_id=FIRM_ID, address=contact, client_id=client.id)
        )
    return client


def _case(repository, client: Client, title: str, **overrides) -> Case:
    return repository.add_case(
        Case(
            id=None,
            firm_id=FIRM_ID,
            client_id=client.id,
            case_number=overrides.pop("case_number", None),
            title=title,
            **overrides,
        )
    )


def _store(repository, message):
    stored, _ = repository.insert_message(message)
    return stored


def test_single_case_is_assigned_through_the_scorer(repository, build_message) -> None:
    client = _client(repository, "Globex", "legal@globex.test")
    case = _case(repository, client, "Trademark opposition")
    message = _store(repository, build_message(sender="Legal <legal@globex.test>"))

    outcome = ClassificationEngine(repository).classify(message)

    assert outcome.state == Classified(case_id=case.id, confidence=0.9)
    assert outcome.method is MatchMethod.CONTACT
    assert [score.case_id for score in outcome.scores] == [case.id]
    assert outcome.scores[0].has(Signal.CONTACT_MATCH)
    assert repository.get_message(message.id).state == outcome.state


def test_acme_reference_selects_the_matching_case(repository, build_message) -> None:
    acme = _client(repository, "Acme", "ops@acme.test")
    case_a = _case(
        repository,
        acme,
        "Supply agreement claim",
        reference_numbers=("4440/2025",),
    )
    case_b = _case(repository, acme, "Employment litigation")
    message = _store(
        repository,
        build_message(sender="ops@acme.test", subject="Update on file 4440/2025"),
    )

    outcome = ClassificationEngine(repository).classify(message)

    scores = {score.case_id: score for score in outcome.scores}
    assert scores[case_a.id].has(Signal.REFERENCE_NUMBER)
    assert scores[case_b.id].signals == (Signal.CONTACT_MATCH,)
    assert scores[case_a.id].score - scores[case_b.id].score >= 20
    assert isinstance(outcome.state, Classified)
    assert outcome.state.case_id == case_a.id
    assert outcome.method is MatchMethod.REFERENCE


def test_close_scores_within_one_client_go_to_client_inbox(
    repository, build_message
) -> None:
    client = _client(repository, "Initech", "boss@initech.test")
    _case(repository, client, "Lease renewal")
    _case(repository, client, "Debt recovery")
    message = _store(
        repository, build_message(sender="boss@initech.test", subject="Quick question")
    )

    outcome = ClassificationEngine(repository).classify(message)

    assert outcome.state == ClientInbox(client_id=client.id)
    assert outcome.bindings == ()
    assert [m.id for m in repository.list_client_inbox(client.id)] == [message.id]


def test_min_gap_is_configurable(repository, build_message) -> None:
    client = _client(repository, "Initech", "boss@initech.test")
    lease = _case(repository, client, "Lease renewal")
    _case(repository, client, "Debt recovery")
    message = _store(
        repository,
        build_message(sender="boss@initech.test", subject="About the lease"),
    )

    strict = ClassificationEngine(repository, ClassificationSettings(min_gap=50))
    assert isinstance(strict.evaluate(message).state, ClientInbox)

    relaxed = ClassificationEngine(repository, ClassificationSettings(min_gap=20))
    outcome = relaxed.evaluate(message)
    assert outcome.state == Classified(case_id=lease.id, confidence=0.5)


def test_client_without_active_case_goes_to_its_inbox(
    repository, build_message
) -> None:
    client = _client(repository, "Dormant", "info@dormant.test")
    _case(repository, client, "Finished matter", status=CaseStatus.CLOSED)
    message = _store(repository, build_message(sender="info@dormant.test"))

    outcome = ClassificationEngine(repository).classify(message)

    assert outcome.state == ClientInbox(client_id=client.id)


def test_unknown_sender_is_uncertain(repository, build_message) -> None:
    _case(repository, _client(repository, "Acme", "ops@acme.test"), "Claim")
    message = _store(repository, build_message(sender="random@nowhere.test"))

    outcome = ClassificationEngine(repository).classify(message)

    assert outcome.state == Uncertain()
    assert repository.get_message(message.id).state.status is ClassificationStatus.UNCERTAIN


def test_candidates_across_clients_pick_the_top_score(repository, build_message) -> None:
    first = _client(repository, "First", "a@first.test")
    second = _client(repository, "Second", "b@second.test")
    _case(repository, first, "Insolvency filing")
    wanted = _case(repository, second, "Patent licence", keywords=("royalties",))
    message = _store(
        repository,
        build_message(
            sender="a@first.test",
            cc=("b@second.test",),
            folder="Sent Items",
            to=("a@first.test",),
            subject="Royalties statement",
        ),
    )

    outcome = ClassificationEngine(repository).classify(message)

    assert isinstance(outcome.state, Classified)
    assert outcome.state.case_id == wanted.id
    assert outcome.method is MatchMethod.SCORING


def test_sent_mail_is_classified_by_its_recipients(repository, build_message) -> None:
    client = _client(repository, "Globex", "legal@globex.test")
    case = _case(repository, client, "Trademark opposition")
    engine = ClassificationEngine(repository)

    sent = _store(
        repository,
        build_message(
            sender="partner@firm.test",
            to=("legal@globex.test",),
            folder="Sent Items",
        ),
    )
    received = _store(
        repository,
        build_message(sender="partner@firm.test", to=("legal@globex.test",)),
    )

    assert engine.classify(sent).state.case_id == case.id
    assert engine.classify(received).state == Uncertain()


def test_thread_continuity_short_circuits(repository, build_message) -> None:
    client = _client(repository, "Globex", "legal@globex.test")
    case = _case(repository, client, "Trademark opposition")
    engine = ClassificationEngine(repository)
    first = _store(
        repository,
        build_message(sender="legal@globex.test", conversation_id="thread-1"),
    )
    engine.classify(first)

    reply = _store(
        repository,
        build_message(sender="new.person@elsewhere.test", conversation_id="thread-1"),
    )
    outcome = engine.classify(reply)

    assert outcome.state == Classified(case_id=case.id, confidence=1.0)
    assert outcome.method is MatchMethod.THREAD


def test_manual_resolution_carries_to_the_thread(repository, build_message) -> None:
    client = _client(repository, "Initech", "boss@initech.test")
    _case(repository, client, "Lease renewal")
    chosen = _case(repository, client, "Debt recovery")
    engine = ClassificationEngine(repository)
    reevaluation = ReevaluationService(repository, engine)

    m1 = _store(
        repository, build_message(sender="boss@initech.test", conversation_id="T1")
    )
    assert engine.classify(m1).state == ClientInbox(client_id=client.id)
    early_reply = _store(
        repository, build_message(sender="boss@initech.test", conversation_id="T1")
    )
    assert engine.classify(early_reply).state == ClientInbox(client_id=client.id)

    reevaluation.assign_manually(m1.id, chosen.id, "associate-1")

    late_reply = _store(
        repository, build_message(sender="boss@initech.test", conversation_id="T1")
    )
    late_outcome = engine.classify(late_reply)

    resolved = Classified(case_id=chosen.id, confidence=1.0)
    assert repository.get_message(m1.id).state == resolved
    assert repository.list_bindings(m1.id)[0].method is MatchMethod.MANUAL
    assert repository.get_message(early_reply.id).state == resolved
    assert late_outcome.state == resolved
    assert late_outcome.method is MatchMethod.THREAD


def test_court_sender_with_unique_reference(repository, build_message) -> None:
    repository.add_court_source(
        CourtSource(id=None, firm_id=FIRM_ID, name="Tribunal", domains=("just.test",))
    )
    client = _client(repository, "Acme")
    case = _case(repository, client, "Appeal", case_number="1234/3/2025")
    _case(repository, client, "Other appeal", case_number="999/3/2025")
    message = _store(
        repository,
        build_message(
            sender="grefa@just.test",
            subject="Citatie",
            body="Dosar nr. 1234/3/2025, termen 12 mai.",
        ),
    )

    outcome = ClassificationEngine(repository).classify(message)

    assert outcome.state == Classified(case_id=case.id, confidence=1.0)
    assert outcome.method is MatchMethod.COURT_REFERENCE


def test_court_sender_without_reference_is_unassigned(
    repository, build_message
) -> None:
    repository.add_court_source(
        CourtSource(
            id=None, firm_id=FIRM_ID, name="Tribunal", emails=("grefa@just.test",)
        )
    )
    _case(repository, _client(repository, "Acme"), "Appeal", case_number="1234/3/2025")
    message = _store(
        repository,
        build_message(sender="grefa@just.test", body="Dosar nr. 777/3/2025"),
    )

    outcome = ClassificationEngine(repository).classify(message)

    assert outcome.state == CourtUnassigned()


def test_live_gate_never_overwrites_a_decision(repository, build_message) -> None:
    client = _client(repository, "Globex", "legal@globex.test")
    case = _case(repository, client, "Trademark opposition")
    message = _store(repository, build_message(sender="legal@globex.test"))
    engine = ClassificationEngine(repository)
    engine.classify(message)

    stale_copy = repository.get_message(message.id)
    stale_copy.sender = "random@nowhere.test"
    assert engine.classify(stale_copy) is None
    assert repository.get_message(message.id).state.case_id == case.id


def test_scorer_failure_degrades_to_uncertain(repository, build_message) -> None:
    client = _client(repository, "Globex", "legal@globex.test")
    _case(repository, client, "Trademark opposition")
    message = _store(repository, build_message(sender="legal@globex.test"))

    engine = ClassificationEngine(repository, scorer=ExplodingScorer())
    outcome = engine.classify(message)

    assert outcome.state == Uncertain()
    assert "scorer exploded" in outcome.reason


def test_classify_requires_a_stored_message(repository, build_message) -> None:
    with pytest.raises(ValueError):
        ClassificationEngine(repository).classify(build_message())
