"""Per-call credential acquisition for provider requests."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from ..core.config import ProviderSettings
from ..core.datetime_utils import utc_now
from ..core.errors import CredentialError, ProviderUnavailableError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AccessToken:
    """Bearer token and the moment it stops being accepted."""

    value: str
    expires_at: datetime


TokenSource = Callable[[str], AccessToken]


class RefreshingCredentialProvider:
    """Return a token that is valid at the time of the call.

    Tokens are cached per principal only until ``refresh_skew`` before their
    expiry; callers ask again before every provider request.
    """

    def __init__(
        self,
        source: TokenSource,
        *,
        clock: Callable[[], datetime] = utc_now,
        refresh_skew: timedelta = timedelta(seconds=120),
    ) -> None:
        self._source = source
        self._clock = clock
        self._refresh_skew = refresh_skew
        self._tokens: dict[str, AccessToken] = {}
        self._lock = threading.Lock()

    def get_token(self, principal_id: str) -> str:
        with self._lock:
            token = self._tokens.get(principal_id)
            if token is None or token.expires_at - self._refresh_skew <= self._clock():
                LOGGER.debug("Acquiring access token for principal %s", principal_id)
                token = self._source(principal_id)
                self._tokens[principal_id] = token
            return token.value

    def invalidate(self, principal_id: str) -> None:
        with self._lock:
            self._tokens.pop(principal_id, None)


class HttpTokenSource:
    """Obtain delegated access tokens from an OAuth token endpoint."""

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not settings.token_url:
            raise CredentialError("No token endpoint configured")
        self._settings = settings
        self._client = client or httpx.Client(timeout=settings.timeout_seconds)
        self._clock = clock

    def __call__(self, principal_id: str) -> AccessToken:
        try:
            response = self._client.post(
                str(self._settings.token_url),
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._settings.client_id or "",
                    "client_secret": self._settings.client_secret or "",
                    "subject": principal_id,
                },
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Token endpoint error {response.status_code}"
            )
        if response.status_code >= 400:
            raise CredentialError(
                f"Token endpoint refused principal {principal_id}: {response.status_code}"
            )
        try:
            payload = response.json()
            value = str(payload["access_token"])
            expires_in = int(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialError("Token endpoint returned an invalid payload") from exc
        return AccessToken(
            value=value, expires_at=self._clock() + timedelta(seconds=expires_in)
        )

    def close(self) -> None:
        self._client.close()


__all__ = [
    "AccessToken",
    "HttpTokenSource",
    "RefreshingCredentialProvider",
    "TokenSource",
]
