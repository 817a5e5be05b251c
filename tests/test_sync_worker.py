"""Tests for the historical sync worker and its credential handling."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from case_router.core.config import ProviderSettings, SyncSettings
from case_router.core.errors import (
    CredentialError,
    NotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderUnavailableError,
)
from case_router.core.models import (
    MessagePage,
    Principal,
    ProviderAttachment,
    ProviderMessage,
    SyncJob,
    SyncJobStatus,
)
from case_router.ingestion import MessageIngestor
from case_router.privacy import PrivacyGate
from case_router.routing import ClassificationEngine
from case_router.storage import LocalAttachmentStore
from case_router.sync import (
    AccessToken,
    HistoricalSyncWorker,
    HttpTokenSource,
    RefreshingCredentialProvider,
)

FIRM_ID = 1
START = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class TokenIssuer:
    """Token source issuing short-lived tokens on a fake clock."""

    def __init__(self, clock: FakeClock, lifetime: int = 60) -> None:
        self.clock = clock
        self.lifetime = lifetime
        self.issued: dict[str, datetime] = {}

    def __call__(self, principal_id: str) -> AccessToken:
        value = f"{principal_id}-token-{len(self.issued) + 1}"
        expires_at = self.clock() + timedelta(seconds=self.lifetime)
        self.issued[value] = expires_at
        return AccessToken(value=value, expires_at=expires_at)


class StaticCredentials:
    """Credential provider that fetches one token and reuses it forever."""

    def __init__(self, source: TokenIssuer) -> None:
        self._source = source
        self._token: str | None = None

    def get_token(self, principal_id: str) -> str:
        if self._token is None:
            self._token = self._source(principal_id).value
        return self._token

    def invalidate(self, principal_id: str) -> None:
        return None


def _item(number: int, *, attachments: tuple[ProviderAttachment, ...] = ()) -> ProviderMessage:
    return ProviderMessage(
        id=f"msg-{number}",
        conversation_id=f"conv-{number}",
        subject=f"Message {number}",
        body="",
        sender="opponent@rival.test",
        to=("partner@firm.test",),
        cc=(),
        received_at=START - timedelta(days=number),
        attachments=attachments,
    )


def _pages() -> dict[str | None, MessagePage]:
    return {
        None: MessagePage(messages=(_item(1), _item(2)), next_cursor="p2", total_estimate=4),
        "p2": MessagePage(messages=(_item(3),), next_cursor="p3"),
        "p3": MessagePage(messages=(_item(4),), next_cursor=None),
    }


class FakeMailProvider:
    """Provider stub checking token expiry against the fake clock."""

    def __init__(
        self,
        clock: FakeClock,
        issuer: TokenIssuer,
        pages: dict[str | None, MessagePage] | None = None,
        *,
        seconds_per_call: float = 0,
    ) -> None:
        self.clock = clock
        self.issuer = issuer
        self.pages = pages or _pages()
        self.seconds_per_call = seconds_per_call
        self.failures: list[Exception] = []
        self.listed: list[str | None] = []
        self.downloads: list[tuple[str, str]] = []
        self.after_list: Callable[[], None] | None = None

    def _check(self, token: str) -> None:
        expires_at = self.issuer.issued.get(token)
        if expires_at is None or expires_at <= self.clock():
            raise ProviderAuthError("token expired")
        if self.failures:
            raise self.failures.pop(0)

    def list_messages(self, token, contact_address, *, cursor, page_size) -> MessagePage:
        self._check(token)
        self.listed.append(cursor)
        self.clock.advance(self.seconds_per_call)
        if self.after_list is not None:
            self.after_list()
        return self.pages[cursor]

    def download_attachment(self, token, message_id, attachment_id) -> bytes:
        self._check(token)
        self.downloads.append((message_id, attachment_id))
        return f"{message_id}/{attachment_id}".encode()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def issuer(clock) -> TokenIssuer:
    return TokenIssuer(clock)


@pytest.fixture
def ingestor(repository) -> MessageIngestor:
    repository.upsert_principal(
        Principal(id="associate-1", firm_id=FIRM_ID, role="Associate")
    )
    return MessageIngestor(
        repository, ClassificationEngine(repository), PrivacyGate(repository)
    )


@pytest.fixture
def job(repository) -> SyncJob:
    return repository.create_sync_job(
        SyncJob(
            id=None,
            firm_id=FIRM_ID,
            principal_id="associate-1",
            contact_address="opponent@rival.test",
            client_id=1,
        )
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_worker(repository, ingestor, clock, sleeps):
    def factory(provider, credentials, **kwargs) -> HistoricalSyncWorker:
        kwargs.setdefault("settings", SyncSettings())
        return HistoricalSyncWorker(
            repository,
            provider,
            credentials,
            ingestor,
            page_size=2,
            clock=clock,
            sleep=sleeps.append,
            **kwargs,
        )

    return factory


def test_credentials_refresh_before_expiry(clock, issuer) -> None:
    credentials = RefreshingCredentialProvider(
        issuer, clock=clock, refresh_skew=timedelta(seconds=10)
    )

    first = credentials.get_token("associate-1")
    clock.advance(45)
    assert credentials.get_token("associate-1") == first
    clock.advance(10)
    second = credentials.get_token("associate-1")
    assert second != first
    credentials.invalidate("associate-1")
    assert credentials.get_token("associate-1") not in (first, second)


def test_sync_completes_across_token_expiry(
    repository, job, clock, issuer, make_worker
) -> None:
    provider = FakeMailProvider(clock, issuer, seconds_per_call=45)
    credentials = RefreshingCredentialProvider(
        issuer, clock=clock, refresh_skew=timedelta(seconds=10)
    )

    result = make_worker(provider, credentials).run(job.id)

    assert result.status is SyncJobStatus.COMPLETED
    assert result.synced_count == 4
    assert result.total_count == 4
    assert provider.listed == [None, "p2", "p3"]
    assert len(issuer.issued) == 2
    stored = repository.get_sync_job(job.id)
    assert stored.status is SyncJobStatus.COMPLETED
    assert stored.lease_owner is None
    assert repository.find_message(FIRM_ID, "msg-4") is not None


def test_token_captured_once_fails_the_job(
    repository, job, clock, issuer, make_worker
) -> None:
    provider = FakeMailProvider(clock, issuer, seconds_per_call=45)

    result = make_worker(provider, StaticCredentials(issuer)).run(job.id)

    assert result.status is SyncJobStatus.FAILED
    assert "rejected" in result.error_message
    assert result.synced_count == 3
    assert repository.get_sync_job(job.id).status is SyncJobStatus.FAILED


def test_cancellation_is_honoured_between_pages(
    repository, job, clock, issuer, make_worker
) -> None:
    provider = FakeMailProvider(clock, issuer)
    provider.after_list = lambda: repository.request_sync_cancel(job.id)
    credentials = RefreshingCredentialProvider(issuer, clock=clock)

    result = make_worker(provider, credentials).run(job.id)

    assert result.status is SyncJobStatus.CANCELLED
    assert result.synced_count == 2
    assert provider.listed == [None]


def test_resume_skips_already_synced_items(
    repository, job, clock, issuer, ingestor, make_worker
) -> None:
    job.status = SyncJobStatus.IN_PROGRESS
    job.synced_count = 1
    job.cursor_offset = 1
    repository.save_sync_job(job)
    provider = FakeMailProvider(clock, issuer)
    credentials = RefreshingCredentialProvider(issuer, clock=clock)

    result = make_worker(provider, credentials).run(job.id)

    assert result.status is SyncJobStatus.COMPLETED
    assert result.synced_count == 4
    assert result.cursor is None
    assert result.cursor_offset == 0
    assert repository.find_message(FIRM_ID, "msg-1") is None
    assert repository.find_message(FIRM_ID, "msg-2") is not None


def test_transient_errors_are_retried_with_backoff(
    job, clock, issuer, make_worker, sleeps
) -> None:
    provider = FakeMailProvider(clock, issuer)
    provider.failures = [
        ProviderRateLimitError("slow down", retry_after=7),
        ProviderUnavailableError("502"),
    ]
    credentials = RefreshingCredentialProvider(issuer, clock=clock)
    settings = SyncSettings(backoff_seconds=2, max_backoff_seconds=60)

    result = make_worker(provider, credentials, settings=settings).run(job.id)

    assert result.status is SyncJobStatus.COMPLETED
    assert sleeps == [7, 4]


def test_exhausted_retries_defer_the_job(
    repository, job, clock, issuer, make_worker, sleeps
) -> None:
    provider = FakeMailProvider(clock, issuer)
    provider.failures = [ProviderUnavailableError("down")] * 3
    credentials = RefreshingCredentialProvider(issuer, clock=clock)
    settings = SyncSettings(max_call_retries=3, backoff_seconds=1, max_backoff_seconds=1.5)

    result = make_worker(provider, credentials, settings=settings).run(job.id)

    assert result.status is SyncJobStatus.PENDING
    assert result.attempts == 1
    assert "down" in result.error_message
    assert sleeps == [1, 1.5]
    stored = repository.get_sync_job(job.id)
    assert stored.status is SyncJobStatus.PENDING
    assert stored.lease_owner is None


def test_job_fails_after_max_attempts(job, clock, issuer, make_worker) -> None:
    provider = FakeMailProvider(clock, issuer)
    credentials = RefreshingCredentialProvider(issuer, clock=clock)
    settings = SyncSettings(max_call_retries=1, max_job_attempts=2)
    worker = make_worker(provider, credentials, settings=settings)

    provider.failures = [ProviderUnavailableError("down")]
    assert worker.run(job.id).status is SyncJobStatus.PENDING
    provider.failures = [ProviderUnavailableError("down")]
    final = worker.run(job.id)

    assert final.status is SyncJobStatus.FAILED
    assert final.attempts == 2


def test_permanent_provider_error_fails_the_job(job, clock, issuer, make_worker) -> None:
    provider = FakeMailProvider(clock, issuer)
    provider.failures = [ProviderError("mailbox not found")]
    credentials = RefreshingCredentialProvider(issuer, clock=clock)

    result = make_worker(provider, credentials).run(job.id)

    assert result.status is SyncJobStatus.FAILED
    assert result.error_message == "mailbox not found"


def test_leased_job_is_left_alone(repository, job, clock, issuer, make_worker) -> None:
    repository.acquire_sync_lease(
        job.id, "other-worker", clock(), clock() + timedelta(minutes=5)
    )
    provider = FakeMailProvider(clock, issuer)
    credentials = RefreshingCredentialProvider(issuer, clock=clock)

    result = make_worker(provider, credentials).run(job.id)

    assert result.status is SyncJobStatus.PENDING
    assert provider.listed == []
    assert repository.get_sync_job(job.id).lease_owner == "other-worker"


def test_terminal_and_missing_jobs(repository, job, clock, issuer, make_worker) -> None:
    worker = make_worker(
        FakeMailProvider(clock, issuer), RefreshingCredentialProvider(issuer, clock=clock)
    )
    repository.request_sync_cancel(job.id)

    assert worker.run(job.id).status is SyncJobStatus.CANCELLED
    with pytest.raises(NotFoundError):
        worker.run(9999)


def test_attachments_are_stored_once(
    repository, job, clock, issuer, make_worker, tmp_path
) -> None:
    pages = {
        None: MessagePage(
            messages=(
                _item(
                    1,
                    attachments=(
                        ProviderAttachment(
                            id="att-1",
                            filename="brief.pdf",
                            content_type="application/pdf",
                            size=12,
                        ),
                    ),
                ),
            ),
            next_cursor=None,
        )
    }
    provider = FakeMailProvider(clock, issuer, pages)
    credentials = RefreshingCredentialProvider(issuer, clock=clock)
    store = LocalAttachmentStore(tmp_path / "files")
    worker = make_worker(provider, credentials, attachment_store=store)

    worker.run(job.id)
    second = repository.create_sync_job(
        SyncJob(
            id=None,
            firm_id=FIRM_ID,
            principal_id="associate-1",
            contact_address="opponent@rival.test",
            case_id=None,
            client_id=2,
        )
    )
    worker.run(second.id)

    message = repository.find_message(FIRM_ID, "msg-1")
    attachment = message.attachments[0]
    assert provider.downloads == [("msg-1", "att-1")]
    assert store.exists(attachment.storage_ref)
    assert (tmp_path / "files" / attachment.storage_ref).read_bytes() == b"msg-1/att-1"


def _token_source(handler, clock) -> HttpTokenSource:
    settings = ProviderSettings(
        token_url="https://login.example.test/token",
        client_id="router",
        client_secret="secret",
    )
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpTokenSource(settings, client=client, clock=clock)


def test_http_token_source_issues_tokens(clock) -> None:
    seen: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content)
        return httpx.Response(200, json={"access_token": "abc", "expires_in": 600})

    source = _token_source(handler, clock)
    token = source("partner-1")
    source.close()

    assert token == AccessToken(value="abc", expires_at=START + timedelta(seconds=600))
    assert b"subject=partner-1" in seen[0]
    assert b"grant_type=client_credentials" in seen[0]


@pytest.mark.parametrize(
    ("status", "error"),
    [(400, CredentialError), (503, ProviderUnavailableError)],
)
def test_http_token_source_errors(clock, status, error) -> None:
    source = _token_source(lambda request: httpx.Response(status), clock)

    with pytest.raises(error):
        source("partner-1")


def test_http_token_source_requires_an_endpoint() -> None:
    with pytest.raises(CredentialError):
        HttpTokenSource(ProviderSettings())
