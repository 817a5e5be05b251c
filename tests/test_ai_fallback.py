"""Tests for the AI fallback classifier."""

from __future__ import annotations

import json
import threading

import httpx
import pytest

from case_router.core.config import LlmSettings
from case_router.core.models import (
    Case,
    Classified,
    Client,
    ClientInbox,
    Contact,
    MatchMethod,
    Uncertain,
)
from case_router.intelligence import (
    AiCaseClassifier,
    AiFallbackError,
    LLMError,
    OllamaClient,
)
from case_router.intelligence.prompts import build_case_prompt
from case_router.routing import ClassificationEngine

FIRM_ID = 1


class StubLLM:
    """LLM stub returning a canned answer and remembering prompts."""

    provider_id = "stub-model"

    def __init__(self, answer: str | Exception) -> None:
        self.answer = answer
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


class BlockingLLM:
    """LLM stub that never answers before the test releases it."""

    provider_id = "slow-model"

    def __init__(self) -> None:
        self.release = threading.Event()

    def generate(self, prompt: str) -> str:
        self.release.wait(5)
        return "{}"


def _answer(case_id, confidence: float, reasoning: str = "mentions the lease") -> str:
    return json.dumps(
        {"caseId": case_id, "confidence": confidence, "reasoning": reasoning}
    )


@pytest.fixture
def seeded(repository) -> tuple[Client, Case, Case]:
    client = repository.add_client(Client(id=None, firm_id=FIRM_ID, name="Initech"))
    lease = repository.add_case(
        Case(
            id=None,
            firm_id=FIRM_ID,
            client_id=client.id,
            case_number="100/2025",
            title="Lease renewal",
            keywords=("lease",),
        )
    )
    debt = repository.add_case(
        Case(
            id=None,
            firm_id=FIRM_ID,
            client_id=client.id,
            case_number="200/2025",
            title="Debt recovery",
        )
    )
    return client, lease, debt


@pytest.fixture
def classifier_factory():
    created: list[AiCaseClassifier] = []

    def factory(llm, timeout_seconds: float = 2.0) -> AiCaseClassifier:
        classifier = AiCaseClassifier(llm, timeout_seconds=timeout_seconds)
        created.append(classifier)
        return classifier

    yield factory
    for classifier in created:
        classifier.close()


def test_prompt_lists_offered_cases(seeded, build_message) -> None:
    client, lease, debt = seeded
    message = build_message(subject="Lease", body="Line one\nLine two")

    prompt = build_case_prompt(message, [lease, debt], {client.id: client})

    assert f"id={lease.id} number=100/2025" in prompt
    assert "client='Initech'" in prompt
    assert "Line one\n    Line two" not in prompt
    assert "Line one\nLine two" in prompt
    assert prompt.startswith("You route law-firm email")


def test_suggestion_is_parsed(seeded, build_message, classifier_factory) -> None:
    client, lease, debt = seeded
    classifier = classifier_factory(StubLLM(_answer(str(lease.id), 1.7)))

    suggestion = classifier.suggest(build_message(), [lease, debt], {client.id: client})

    assert suggestion.case_id == lease.id
    assert suggestion.confidence == 1.0
    assert suggestion.provider == "stub-model"
    assert suggestion.reasoning == "mentions the lease"


@pytest.mark.parametrize(
    "raw",
    [
        "I think it is the lease case",
        '{"caseId": "lease", "confidence": 0.9}',
        '{"caseId": 1}',
        '{"caseId": true, "confidence": 0.9}',
    ],
)
def test_garbage_output_is_rejected(seeded, build_message, classifier_factory, raw) -> None:
    client, lease, _ = seeded
    classifier = classifier_factory(StubLLM(raw))

    with pytest.raises(AiFallbackError):
        classifier.suggest(build_message(), [lease], {client.id: client})


def test_llm_failure_is_wrapped(seeded, build_message, classifier_factory) -> None:
    client, lease, _ = seeded
    classifier = classifier_factory(StubLLM(LLMError("connection refused")))

    with pytest.raises(AiFallbackError, match="connection refused"):
        classifier.suggest(build_message(), [lease], {client.id: client})


def test_deadline_is_enforced(seeded, build_message, classifier_factory) -> None:
    client, lease, _ = seeded
    llm = BlockingLLM()
    classifier = classifier_factory(llm, timeout_seconds=0.05)

    try:
        with pytest.raises(AiFallbackError, match="timed out"):
            classifier.suggest(build_message(), [lease], {client.id: client})
    finally:
        llm.release.set()


def test_no_cases_means_no_call(build_message, classifier_factory) -> None:
    llm = StubLLM(_answer(1, 0.9))
    classifier = classifier_factory(llm)

    with pytest.raises(AiFallbackError):
        classifier.suggest(build_message(), [], {})
    assert llm.prompts == []


def _uncertain_message(repository, build_message):
    stored, _ = repository.insert_message(
        build_message(sender="unknown@nowhere.test", subject="About the lease")
    )
    return stored


def test_engine_classifies_uncertain_mail_with_confident_ai(
    repository, build_message, seeded, classifier_factory
) -> None:
    _, lease, _ = seeded
    message = _uncertain_message(repository, build_message)
    engine = ClassificationEngine(
        repository, ai_classifier=classifier_factory(StubLLM(_answer(lease.id, 0.85)))
    )

    outcome = engine.classify(message)

    assert outcome.state == Classified(case_id=lease.id, confidence=0.85)
    assert outcome.method is MatchMethod.AI
    binding = repository.list_bindings(message.id)[0]
    assert binding.created_by == "system:stub-model"


def test_engine_routes_medium_confidence_to_client_inbox(
    repository, build_message, seeded, classifier_factory
) -> None:
    client, _, debt = seeded
    message = _uncertain_message(repository, build_message)
    engine = ClassificationEngine(
        repository, ai_classifier=classifier_factory(StubLLM(_answer(debt.id, 0.6)))
    )

    outcome = engine.classify(message)

    assert outcome.state == ClientInbox(client_id=client.id)
    assert repository.list_bindings(message.id) == []


@pytest.mark.parametrize(
    "answer",
    [_answer(9999, 0.95), _answer(None, 0.2), "not json at all"],
)
def test_engine_stays_uncertain_when_ai_is_unusable(
    repository, build_message, seeded, classifier_factory, answer
) -> None:
    message = _uncertain_message(repository, build_message)
    engine = ClassificationEngine(
        repository, ai_classifier=classifier_factory(StubLLM(answer))
    )

    outcome = engine.classify(message)

    assert outcome.state == Uncertain()
    assert "AI" in outcome.reason


def test_ai_is_not_consulted_for_deterministic_results(
    repository, build_message, seeded, classifier_factory
) -> None:
    client, lease, _ = seeded
    repository.add_contact(
        Contact(id=None, firm_id=FIRM_ID, address="boss@initech.test", client_id=client.id)
    )
    llm = StubLLM(_answer(lease.id, 0.99))
    engine = ClassificationEngine(repository, ai_classifier=classifier_factory(llm))
    stored, _ = repository.insert_message(build_message(sender="boss@initech.test"))

    outcome = engine.classify(stored)

    assert outcome.state == ClientInbox(client_id=client.id)
    assert llm.prompts == []


def test_ollama_client_posts_a_json_request() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/generate"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"response": '{"caseId": null, "confidence": 0}'})

    settings = LlmSettings(model="tiny", max_output_tokens=64)
    client = httpx.Client(
        base_url="http://llm.test", transport=httpx.MockTransport(handler)
    )
    llm = OllamaClient(settings, client=client)

    assert llm.generate("route this") == '{"caseId": null, "confidence": 0}'
    assert llm.provider_id == "ollama:tiny"
    assert seen[0]["format"] == "json"
    assert seen[0]["options"]["num_predict"] == 64
    llm.close()


@pytest.mark.parametrize(
    "response",
    [httpx.Response(500), httpx.Response(200, json={"done": True})],
)
def test_ollama_client_errors(response) -> None:
    client = httpx.Client(
        base_url="http://llm.test",
        transport=httpx.MockTransport(lambda request: response),
    )

    with pytest.raises(LLMError):
        OllamaClient(LlmSettings(), client=client).generate("route this")
