"""Tests for the mail provider HTTP client."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest

from case_router.core.config import ProviderSettings
from case_router.core.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderUnavailableError,
    TransientProviderError,
)
from case_router.transport import HttpMailProvider

BASE_URL = "https://mail.example.test/v1"


def _provider(handler) -> HttpMailProvider:
    client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpMailProvider(ProviderSettings(base_url=BASE_URL), client=client)


def test_list_messages_parses_a_page() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "messages": [
                    {
                        "id": "m-1",
                        "conversationId": "c-1",
                        "subject": "Termen",
                        "body": "Dosar nr. 1/2/2025",
                        "from": "grefa@just.test",
                        "to": ["partner@firm.test"],
                        "cc": "a@firm.test, b@firm.test",
                        "receivedAt": "2025-03-10T09:00:00Z",
                        "attachments": [
                            {"id": "a-1", "name": "citatie.pdf", "size": 10},
                            {"name": "no-id.pdf"},
                        ],
                    }
                ],
                "nextPageToken": "next-1",
                "totalEstimate": 12,
            },
        )

    with _provider(handler) as provider:
        page = provider.list_messages(
            "token-1", "grefa@just.test", cursor="prev", page_size=25
        )

    request = requests[0]
    assert request.headers["Authorization"] == "Bearer token-1"
    assert request.url.path == "/v1/messages"
    assert request.url.params["contact"] == "grefa@just.test"
    assert request.url.params["pageSize"] == "25"
    assert request.url.params["pageToken"] == "prev"

    assert page.next_cursor == "next-1"
    assert page.total_estimate == 12
    message = page.messages[0]
    assert message.sender == "grefa@just.test"
    assert message.cc == ("a@firm.test", "b@firm.test")
    assert message.received_at == datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    assert message.folder == "Inbox"
    assert [a.id for a in message.attachments] == ["a-1"]


def test_last_page_has_no_cursor() -> None:
    provider = _provider(lambda request: httpx.Response(200, json={"messages": []}))

    page = provider.list_messages("t", "x@y.test", cursor=None, page_size=10)

    assert page.messages == ()
    assert page.next_cursor is None
    assert page.total_estimate is None


def test_download_attachment_returns_bytes() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/messages/m-1/attachments/a-1/content"
        return httpx.Response(200, content=b"%PDF")

    assert _provider(handler).download_attachment("t", "m-1", "a-1") == b"%PDF"


@pytest.mark.parametrize(
    ("status", "error"),
    [
        (401, ProviderAuthError),
        (403, ProviderAuthError),
        (500, ProviderUnavailableError),
        (503, ProviderUnavailableError),
        (404, ProviderError),
    ],
)
def test_status_codes_map_to_errors(status, error) -> None:
    provider = _provider(lambda request: httpx.Response(status))

    with pytest.raises(error) as info:
        provider.list_messages("t", "x@y.test", cursor=None, page_size=10)

    if status == 404:
        assert not isinstance(info.value, TransientProviderError)


def test_rate_limit_carries_retry_after() -> None:
    provider = _provider(
        lambda request: httpx.Response(429, headers={"Retry-After": "12"})
    )

    with pytest.raises(ProviderRateLimitError) as info:
        provider.list_messages("t", "x@y.test", cursor=None, page_size=10)

    assert info.value.retry_after == 12.0


def test_network_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderUnavailableError):
        _provider(handler).list_messages("t", "x@y.test", cursor=None, page_size=10)
