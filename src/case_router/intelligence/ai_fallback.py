"""Last-resort LLM classifier with a hard deadline."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass

from case_router.core.models import Case, Client, Message

from .llm import LLMClient, LLMError
from .prompts import build_case_prompt

LOGGER = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class AiFallbackError(RuntimeError):
    """Raised when the AI classifier fails, times out or answers nonsense."""


@dataclass(frozen=True, slots=True)
class AiSuggestion:
    """Case suggested by the model; ``case_id`` is unvalidated."""

    case_id: int | None
    confidence: float
    reasoning: str
    provider: str


class AiCaseClassifier:
    """Ask an LLM which of the offered cases a message belongs to."""

    def __init__(
        self,
        llm_client: LLMClient,
        *,
        timeout_seconds: float,
        max_workers: int = 2,
    ) -> None:
        self._llm_client = llm_client
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ai-fallback"
        )

    @property
    def provider_id(self) -> str:
        return self._llm_client.provider_id

    def suggest(
        self,
        message: Message,
        cases: Sequence[Case],
        clients: Mapping[int, Client],
    ) -> AiSuggestion:
        """Return the model's suggestion or raise ``AiFallbackError``."""
        if not cases:
            raise AiFallbackError("No cases available to offer the AI classifier")
        prompt = build_case_prompt(message, cases, clients)
        future: Future[str] = self._executor.submit(self._llm_client.generate, prompt)
        try:
            raw_output = future.result(timeout=self._timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            raise AiFallbackError(
                f"AI classifier timed out after {self._timeout_seconds}s"
            ) from exc
        except LLMError as exc:
            raise AiFallbackError(f"AI classifier failed: {exc}") from exc
        except Exception as exc:  # pylint: disable=broad-except
            raise AiFallbackError(f"AI classifier crashed: {exc}") from exc

        try:
            case_id, confidence, reasoning = _parse_llm_output(raw_output)
        except ValueError as exc:
            raise AiFallbackError(str(exc)) from exc

        LOGGER.debug(
            "AI suggested case %s (confidence %.2f) for message %s",
            case_id,
            confidence,
            message.id,
        )
        return AiSuggestion(
            case_id=case_id,
            confidence=confidence,
            reasoning=reasoning,
            provider=self._llm_client.provider_id,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        close_client = getattr(self._llm_client, "close", None)
        if callable(close_client):
            close_client()


def _parse_llm_output(raw: str) -> tuple[int | None, float, str]:
    match = _JSON_OBJECT.search(raw or "")
    if match is None:
        raise ValueError("LLM output contained no JSON object")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ValueError("LLM output was not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValueError("LLM output must be a JSON object")

    raw_case_id = payload.get("caseId")
    case_id: int | None
    if raw_case_id is None:
        case_id = None
    elif isinstance(raw_case_id, bool):
        raise ValueError("LLM output 'caseId' must be a number or null")
    elif isinstance(raw_case_id, int):
        case_id = raw_case_id
    elif isinstance(raw_case_id, str) and raw_case_id.strip().isdigit():
        case_id = int(raw_case_id.strip())
    else:
        raise ValueError("LLM output 'caseId' must be a number or null")

    raw_confidence = payload.get("confidence")
    if isinstance(raw_confidence, bool) or not isinstance(raw_confidence, (int, float)):
        raise ValueError("LLM output missing numeric 'confidence'")
    confidence = min(max(float(raw_confidence), 0.0), 1.0)

    reasoning = payload.get("reasoning")
    if not isinstance(reasoning, str):
        reasoning = ""
    return case_id, confidence, reasoning.strip()


__all__ = ["AiCaseClassifier", "AiFallbackError", "AiSuggestion"]
