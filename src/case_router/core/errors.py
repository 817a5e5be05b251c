"""Exception hierarchy shared by the routing engine and the sync worker."""

from __future__ import annotations


class CaseRouterError(RuntimeError):
    """Base class for errors raised by the application."""


class NotFoundError(CaseRouterError):
    """Raised when a referenced record does not exist."""


class PrivacyError(CaseRouterError):
    """Raised when a principal may not change a visibility flag."""


class ProviderError(CaseRouterError):
    """Permanent failure reported by the external mail provider."""


class TransientProviderError(ProviderError):
    """Retryable provider failure such as a network error or throttling."""


class ProviderAuthError(TransientProviderError):
    """Provider rejected the bearer credential (usually an expired token)."""


class ProviderRateLimitError(TransientProviderError):
    """Provider throttled the request."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailableError(TransientProviderError):
    """Network failure or server-side error at the provider."""


class CredentialError(CaseRouterError):
    """A principal's credential is permanently invalid or cannot be issued."""


class SyncJobError(CaseRouterError):
    """Raised when a sync job cannot be processed."""


__all__ = [
    "CaseRouterError",
    "CredentialError",
    "NotFoundError",
    "PrivacyError",
    "ProviderAuthError",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderUnavailableError",
    "SyncJobError",
    "TransientProviderError",
]
