"""LLM client abstractions used by the AI fallback classifier."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from case_router.core.config import LlmSettings

LOGGER = logging.getLogger(__name__)

_GENERATE_PATH = "/api/generate"


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMClient(Protocol):
    """Protocol describing the minimal LLM client behaviour."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    def generate(self, prompt: str) -> str:
        """Return the raw text completion for ``prompt``."""
        raise NotImplementedError


class OllamaClient:
    """Synchronous client for the Ollama ``/api/generate`` endpoint.

    One request per prompt: the classifier calling it enforces its own
    deadline, and a message left ``Uncertain`` is retried on the next
    re-evaluation anyway.
    """

    def __init__(
        self, settings: LlmSettings, *, client: httpx.Client | None = None
    ) -> None:
        self._settings = settings
        self._client = client or httpx.Client(
            base_url=settings.base_url.rstrip("/"),
            timeout=settings.timeout_seconds,
        )

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self._settings.model}"

    def generate(self, prompt: str) -> str:
        options: dict[str, Any] = {"temperature": self._settings.temperature}
        if self._settings.max_output_tokens is not None:
            options["num_predict"] = self._settings.max_output_tokens
        payload = {
            "model": self._settings.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": options,
        }

        try:
            response = self._client.post(_GENERATE_PATH, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LLMError(
                f"LLM server answered {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            LOGGER.debug("LLM request to %s failed: %s", self._settings.base_url, exc)
            raise LLMError(f"LLM request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMError("LLM returned invalid JSON") from exc
        result = data.get("response") if isinstance(data, dict) else None
        if not isinstance(result, str):
            raise LLMError("LLM response missing 'response' field")
        return result

    def close(self) -> None:
        self._client.close()


__all__ = ["LLMClient", "LLMError", "OllamaClient"]
