"""Shared fixtures for the case router test-suite."""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

import pytest

from case_router.core.config import StorageSettings
from case_router.core.models import Message
from case_router.storage import SqliteCaseRepository

FIRM_ID = 1
RECEIVED_AT = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


@pytest.fixture
def storage_settings(tmp_path) -> StorageSettings:
    return StorageSettings(db_path=tmp_path / "router.db")


@pytest.fixture
def repository(storage_settings: StorageSettings) -> Iterator[SqliteCaseRepository]:
    repo = SqliteCaseRepository(storage_settings)
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture
def build_message() -> Callable[..., Message]:
    """Return a factory creating unsaved inbound messages with unique ids."""
    counter = itertools.count(1)

    def factory(**overrides: Any) -> Message:
        number = next(counter)
        values: dict[str, Any] = {
            "id": None,
            "firm_id": FIRM_ID,
            "owner_id": "associate-1",
            "provider_message_id": f"provider-{number}",
            "conversation_id": f"conversation-{number}",
            "subject": "Hello",
            "body": "",
            "sender": "stranger@unknown.test",
            "to": ("office@firm.test",),
            "cc": (),
            "received_at": RECEIVED_AT,
        }
        values.update(overrides)
        return Message(**values)

    return factory
