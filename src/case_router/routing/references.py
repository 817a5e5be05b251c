"""Court file and contract reference extraction."""

from __future__ import annotations

import re
from collections.abc import Iterable

# Order matters only for the order of the returned tokens.
_REFERENCE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"dosar(?:\s+nr\.?)?\s*[:\s]*(\d{1,6}/\d{1,4}/\d{4})", re.IGNORECASE),
    re.compile(r"\bnr\.?\s*(\d{1,6}/\d{1,4}/\d{4})", re.IGNORECASE),
    re.compile(r"(?<![\d/])(\d{1,6}/\d{1,4}/\d{4})(?![\d/])"),
    re.compile(r"(?<![\d/])(\d{1,6}/\d{4})(?![\d/])"),
    re.compile(r"\b(CTR-\d{4}-\d{3,6})\b", re.IGNORECASE),
    re.compile(r"\b(REF-\d{4,10})\b", re.IGNORECASE),
)

_DISALLOWED = re.compile(r"[^\d/a-z-]")


def normalize_reference(value: str) -> str:
    """Lower-case a reference and drop everything except digits, letters, ``/`` and ``-``."""
    return _DISALLOWED.sub("", value.lower())


def extract_references(*texts: str | None) -> tuple[str, ...]:
    """Return normalised reference tokens found in ``texts`` in first-seen order."""
    found: dict[str, None] = {}
    for text in texts:
        if not text:
            continue
        for pattern in _REFERENCE_PATTERNS:
            for match in pattern.finditer(text):
                token = normalize_reference(match.group(1))
                if token:
                    found.setdefault(token, None)
    return tuple(found)


def case_reference_set(
    case_number: str | None, reference_numbers: Iterable[str]
) -> set[str]:
    """Return every normalised token that identifies a case."""
    tokens = {normalize_reference(ref) for ref in reference_numbers}
    if case_number:
        tokens.add(normalize_reference(case_number))
    tokens.discard("")
    return tokens


__all__ = ["case_reference_set", "extract_references", "normalize_reference"]
