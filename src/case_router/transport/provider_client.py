"""HTTP client for the external mail provider API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from types import TracebackType
from typing import Any

import httpx

from ..core.config import ProviderSettings
from ..core.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderUnavailableError,
)
from ..core.models import MessagePage, ProviderAttachment, ProviderMessage

LOGGER = logging.getLogger(__name__)


class HttpMailProvider:
    """Paginated message search and attachment download over REST.

    The bearer token is a per-call argument; the client never keeps one.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.Client(
            base_url=settings.base_url.rstrip("/"),
            timeout=settings.timeout_seconds,
        )

    def __enter__(self) -> HttpMailProvider:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def list_messages(
        self,
        token: str,
        contact_address: str,
        *,
        cursor: str | None,
        page_size: int,
    ) -> MessagePage:
        params: dict[str, Any] = {"contact": contact_address, "pageSize": page_size}
        if cursor:
            params["pageToken"] = cursor
        response = self._request("GET", "/messages", token, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError("Provider returned invalid JSON") from exc
        if not isinstance(payload, Mapping):
            raise ProviderError("Provider returned an unexpected payload")

        messages = tuple(
            _parse_message(item) for item in payload.get("messages") or ()
        )
        total = payload.get("totalEstimate")
        return MessagePage(
            messages=messages,
            next_cursor=payload.get("nextPageToken") or None,
            total_estimate=int(total) if total is not None else None,
        )

    def download_attachment(
        self, token: str, message_id: str, attachment_id: str
    ) -> bytes:
        response = self._request(
            "GET", f"/messages/{message_id}/attachments/{attachment_id}/content", token
        )
        return response.content

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(
                method,
                path,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Provider unreachable: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise ProviderAuthError(f"Provider rejected credential ({status})")
        if status == 429:
            raise ProviderRateLimitError(
                "Provider rate limit reached",
                retry_after=_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise ProviderUnavailableError(f"Provider error {status}")
        if status >= 400:
            raise ProviderError(f"Provider refused {method} {path}: {status}")
        return response


def _retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        LOGGER.warning("Ignoring unparseable provider timestamp %r", value)
        return None


def _addresses(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(item).strip() for item in value if str(item).strip())


def _parse_message(item: Mapping[str, Any]) -> ProviderMessage:
    message_id = item.get("id")
    if not message_id:
        raise ProviderError("Provider message without id")
    attachments = tuple(
        ProviderAttachment(
            id=str(attachment["id"]),
            filename=attachment.get("name"),
            content_type=attachment.get("contentType"),
            size=attachment.get("size"),
        )
        for attachment in item.get("attachments") or ()
        if attachment.get("id")
    )
    return ProviderMessage(
        id=str(message_id),
        conversation_id=item.get("conversationId"),
        subject=item.get("subject"),
        body=item.get("body"),
        sender=item.get("from"),
        to=_addresses(item.get("to")),
        cc=_addresses(item.get("cc")),
        received_at=_parse_datetime(item.get("receivedAt")),
        folder=item.get("folder") or "Inbox",
        attachments=attachments,
    )


__all__ = ["HttpMailProvider"]
