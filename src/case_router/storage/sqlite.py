"""SQLite-backed repository for cases, messages, bindings and sync jobs."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utc_now
from ..core.interfaces import CaseRepository
from ..core.models import (
    Attachment,
    Case,
    CaseActor,
    CaseBinding,
    CaseStatus,
    ClassificationState,
    ClassificationStatus,
    Classified,
    Client,
    ClientInbox,
    Contact,
    CourtSource,
    MatchMethod,
    Message,
    Principal,
    SyncJob,
    SyncJobStatus,
    VisibilityFlag,
    build_state,
)

LOGGER = logging.getLogger(__name__)

_MESSAGE_SELECT = """
    SELECT
        m.*,
        (
            SELECT b.case_id FROM case_bindings b
            WHERE b.message_id = m.id AND b.is_primary = 1
            LIMIT 1
        ) AS primary_case_id
    FROM messages m
"""

_OPEN_SYNC_STATUSES = (SyncJobStatus.PENDING.value, SyncJobStatus.IN_PROGRESS.value)


class SqliteCaseRepository(CaseRepository):
    """Persist the routing domain using SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the repository and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._enable_foreign_keys()
        self._apply_migrations()
        self._ensure_indexes()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteCaseRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Directory ---------------------------------------------------------------
    def upsert_principal(self, principal: Principal) -> None:
        """Insert or update a mailbox owner."""
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO principals (id, firm_id, role, email)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    firm_id=excluded.firm_id,
                    role=excluded.role,
                    email=excluded.email
                """,
                (principal.id, principal.firm_id, principal.role, principal.email),
            )

    def get_principal(self, principal_id: str) -> Principal | None:
        row = self._connection.execute(
            "SELECT id, firm_id, role, email FROM principals WHERE id = ?",
            (principal_id,),
        ).fetchone()
        if row is None:
            return None
        return Principal(
            id=row["id"], firm_id=row["firm_id"], role=row["role"], email=row["email"]
        )

    def add_client(self, client: Client) -> Client:
        """Insert a client and return it with its id."""
        with self._connection:
            row = self._connection.execute(
                "INSERT INTO clients (firm_id, name) VALUES (?, ?) RETURNING id",
                (client.firm_id, client.name),
            ).fetchone()
        return Client(id=int(row["id"]), firm_id=client.firm_id, name=client.name)

    def get_client(self, client_id: int) -> Client | None:
        row = self._connection.execute(
            "SELECT id, firm_id, name FROM clients WHERE id = ?", (client_id,)
        ).fetchone()
        if row is None:
            return None
        return Client(id=row["id"], firm_id=row["firm_id"], name=row["name"])

    def list_clients(self, firm_id: int) -> list[Client]:
        rows = self._connection.execute(
            "SELECT id, firm_id, name FROM clients WHERE firm_id = ? ORDER BY id",
            (firm_id,),
        ).fetchall()
        return [
            Client(id=row["id"], firm_id=row["firm_id"], name=row["name"])
            for row in rows
        ]

    def add_case(self, case: Case) -> Case:
        """Insert a case together with its actors."""
        if not case.title:
            raise ValueError("Case title is required")
        with self._connection:
            row = self._connection.execute(
                """
                INSERT INTO cases (
                    firm_id,
                    client_id,
                    case_number,
                    title,
                    status,
                    keywords,
                    reference_numbers,
                    last_activity_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    case.firm_id,
                    case.client_id,
                    case.case_number,
                    case.title,
                    CaseStatus(case.status).value,
                    json.dumps(list(case.keywords)),
                    json.dumps(list(case.reference_numbers)),
                    serialize_datetime(case.last_activity_at),
                ),
            ).fetchone()
            case_id = int(row["id"])
            for actor in case.actors:
                self._connection.execute(
                    "INSERT INTO case_actors (case_id, name, email, role) VALUES (?, ?, ?, ?)",
                    (case_id, actor.name, actor.email, actor.role),
                )
        stored = self.get_case(case_id)
        if stored is None:  # pragma: no cover - inserted above
            raise RuntimeError(f"Case {case_id} vanished after insert")
        return stored

    def get_case(self, case_id: int) -> Case | None:
        row = self._connection.execute(
            "SELECT * FROM cases WHERE id = ?", (case_id,)
        ).fetchone()
        if row is None:
            return None
        actors = self._load_actors([case_id]).get(case_id, ())
        return _row_to_case(row, actors)

    def list_cases(self, firm_id: int, *, active_only: bool = False) -> list[Case]:
        query = "SELECT * FROM cases WHERE firm_id = ?"
        params: list[object] = [firm_id]
        if active_only:
            query += " AND status IN (?, ?)"
            params.extend(
                [CaseStatus.ACTIVE.value, CaseStatus.PENDING_APPROVAL.value]
            )
        rows = self._connection.execute(query + " ORDER BY id", params).fetchall()
        actors = self._load_actors([int(row["id"]) for row in rows])
        return [_row_to_case(row, actors.get(int(row["id"]), ())) for row in rows]

    def update_case_status(self, case_id: int, status: CaseStatus) -> None:
        with self._connection:
            self._connection.execute(
                "UPDATE cases SET status = ? WHERE id = ?",
                (CaseStatus(status).value, case_id),
            )

    def touch_case_activity(self, case_id: int, at: datetime) -> None:
        """Advance a case's last activity timestamp, never moving it backwards."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE cases SET last_activity_at = ?
                WHERE id = ? AND (last_activity_at IS NULL OR last_activity_at < ?)
                """,
                (serialize_datetime(at), case_id, serialize_datetime(at)),
            )

    def add_case_reference(self, case_id: int, reference: str) -> bool:
        """Register a reference number on a case; ``False`` when already present."""
        case = self.get_case(case_id)
        if case is None:
            raise ValueError(f"Case {case_id} does not exist")
        if reference in case.reference_numbers:
            return False
        references = [*case.reference_numbers, reference]
        with self._connection:
            self._connection.execute(
                "UPDATE cases SET reference_numbers = ? WHERE id = ?",
                (json.dumps(references), case_id),
            )
        return True

    def add_contact(self, contact: Contact) -> Contact:
        """Insert a contact address."""
        created_at = contact.created_at or utc_now()
        with self._connection:
            row = self._connection.execute(
                """
                INSERT INTO contacts (firm_id, address, case_id, client_id, role, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    contact.firm_id,
                    contact.address,
                    contact.case_id,
                    contact.client_id,
                    contact.role,
                    serialize_datetime(created_at),
                ),
            ).fetchone()
        return Contact(
            id=int(row["id"]),
            firm_id=contact.firm_id,
            address=contact.address,
            case_id=contact.case_id,
            client_id=contact.client_id,
            role=contact.role,
            created_at=created_at,
        )

    def list_contacts(self, firm_id: int) -> list[Contact]:
        rows = self._connection.execute(
            "SELECT * FROM contacts WHERE firm_id = ? ORDER BY id", (firm_id,)
        ).fetchall()
        return [
            Contact(
                id=row["id"],
                firm_id=row["firm_id"],
                address=row["address"],
                case_id=row["case_id"],
                client_id=row["client_id"],
                role=row["role"],
                created_at=parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def add_court_source(self, source: CourtSource) -> CourtSource:
        with self._connection:
            row = self._connection.execute(
                """
                INSERT INTO court_sources (firm_id, name, emails, domains)
                VALUES (?, ?, ?, ?)
                RETURNING id
                """,
                (
                    source.firm_id,
                    source.name,
                    json.dumps(list(source.emails)),
                    json.dumps(list(source.domains)),
                ),
            ).fetchone()
        return CourtSource(
            id=int(row["id"]),
            firm_id=source.firm_id,
            name=source.name,
            emails=source.emails,
            domains=source.domains,
        )

    def list_court_sources(self, firm_id: int) -> list[CourtSource]:
        rows = self._connection.execute(
            "SELECT * FROM court_sources WHERE firm_id = ? ORDER BY id", (firm_id,)
        ).fetchall()
        return [
            CourtSource(
                id=row["id"],
                firm_id=row["firm_id"],
                name=row["name"],
                emails=_load_json_tuple(row["emails"]),
                domains=_load_json_tuple(row["domains"]),
            )
            for row in rows
        ]

    # Messages ----------------------------------------------------------------
    def insert_message(self, message: Message) -> tuple[Message, bool]:
        """Store ``message`` unless its provider id is already known for the firm."""
        if not message.provider_message_id:
            raise ValueError("Provider message id is required")
        if not message.owner_id:
            raise ValueError("Message owner is required")

        try:
            with self._connection:
                cursor = self._connection.execute(
                    """
                    INSERT INTO messages (
                        firm_id,
                        owner_id,
                        provider_message_id,
                        conversation_id,
                        subject,
                        body,
                        sender,
                        to_recipients,
                        cc_recipients,
                        received_at,
                        folder,
                        reference_tokens,
                        is_private,
                        visibility_changed_by,
                        visibility_changed_at,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(firm_id, provider_message_id) DO NOTHING
                    """,
                    (
                        message.firm_id,
                        message.owner_id,
                        message.provider_message_id,
                        message.conversation_id,
                        message.subject,
                        message.body,
                        message.sender,
                        ",".join(message.to),
                        ",".join(message.cc),
                        serialize_datetime(message.received_at),
                        message.folder,
                        json.dumps(list(message.references)),
                        int(message.visibility.private),
                        message.visibility.changed_by,
                        serialize_datetime(message.visibility.changed_at),
                        serialize_datetime(utc_now()),
                    ),
                )
                created = cursor.rowcount == 1
                row = self._connection.execute(
                    "SELECT id FROM messages WHERE firm_id = ? AND provider_message_id = ?",
                    (message.firm_id, message.provider_message_id),
                ).fetchone()
                message_id = int(row["id"])
                for attachment in message.attachments:
                    self._insert_attachment(message_id, attachment)
        except sqlite3.Error as exc:
            LOGGER.error(
                "Database error persisting message %s: %s",
                message.provider_message_id,
                exc,
                exc_info=True,
            )
            raise ValueError(
                f"Failed to persist message {message.provider_message_id}: {exc}"
            ) from exc

        stored = self.get_message(message_id)
        if stored is None:  # pragma: no cover - inserted above
            raise RuntimeError(f"Message {message_id} vanished after insert")
        LOGGER.debug(
            "Stored message %s as id %s (new=%s)",
            message.provider_message_id,
            message_id,
            created,
        )
        return stored, created

    def get_message(self, message_id: int) -> Message | None:
        row = self._connection.execute(
            _MESSAGE_SELECT + " WHERE m.id = ?", (message_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def find_message(self, firm_id: int, provider_message_id: str) -> Message | None:
        row = self._connection.execute(
            _MESSAGE_SELECT + " WHERE m.firm_id = ? AND m.provider_message_id = ?",
            (firm_id, provider_message_id),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def list_messages_by_status(
        self, firm_id: int, statuses: Iterable[ClassificationStatus]
    ) -> list[Message]:
        values = _status_values(statuses)
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        rows = self._connection.execute(
            _MESSAGE_SELECT
            + f" WHERE m.firm_id = ? AND m.status IN ({placeholders})"
            + " ORDER BY m.received_at, m.id",
            (firm_id, *values),
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def list_client_inbox(self, client_id: int) -> list[Message]:
        """Return messages awaiting manual disambiguation for a client."""
        rows = self._connection.execute(
            _MESSAGE_SELECT
            + " WHERE m.status = ? AND m.client_id = ?"
            + " ORDER BY m.received_at DESC, m.id DESC",
            (ClassificationStatus.CLIENT_INBOX.value, client_id),
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def list_case_messages(self, case_id: int) -> list[Message]:
        """Return messages bound to a case through any binding."""
        rows = self._connection.execute(
            _MESSAGE_SELECT
            + " WHERE m.id IN (SELECT message_id FROM case_bindings WHERE case_id = ?)"
            + " ORDER BY m.received_at DESC, m.id DESC",
            (case_id,),
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def list_conversation(self, firm_id: int, conversation_id: str) -> list[Message]:
        rows = self._connection.execute(
            _MESSAGE_SELECT
            + " WHERE m.firm_id = ? AND m.conversation_id = ?"
            + " ORDER BY m.received_at, m.id",
            (firm_id, conversation_id),
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def conversation_case_ids(
        self, firm_id: int, conversation_id: str, *, exclude_message_id: int | None
    ) -> list[int]:
        rows = self._connection.execute(
            """
            SELECT b.case_id, MAX(COALESCE(m.received_at, m.created_at)) AS last_seen
            FROM messages m
            JOIN case_bindings b ON b.message_id = m.id AND b.is_primary = 1
            WHERE m.firm_id = ?
              AND m.conversation_id = ?
              AND m.status = ?
              AND (? IS NULL OR m.id != ?)
            GROUP BY b.case_id
            ORDER BY last_seen DESC
            """,
            (
                firm_id,
                conversation_id,
                ClassificationStatus.CLASSIFIED.value,
                exclude_message_id,
                exclude_message_id,
            ),
        ).fetchall()
        return [int(row["case_id"]) for row in rows]

    def count_messages(self, firm_id: int) -> dict[str, int]:
        """Return message counts per classification status."""
        rows = self._connection.execute(
            "SELECT status, COUNT(*) AS total FROM messages WHERE firm_id = ? GROUP BY status",
            (firm_id,),
        ).fetchall()
        return {row["status"]: int(row["total"]) for row in rows}

    # Classification ----------------------------------------------------------
    def commit_classification(
        self,
        message_id: int,
        state: ClassificationState,
        bindings: Sequence[CaseBinding],
        *,
        method: MatchMethod | None,
        reason: str | None,
        expected: Iterable[ClassificationStatus],
    ) -> bool:
        """Atomically move a message to ``state`` if it is still in ``expected``."""
        values = _status_values(expected)
        if not values:
            return False
        if isinstance(state, Classified) and not any(
            binding.is_primary and binding.case_id == state.case_id
            for binding in bindings
        ):
            raise ValueError("Classified state requires a matching primary binding")

        client_id = state.client_id if isinstance(state, ClientInbox) else None
        confidence = state.confidence if isinstance(state, Classified) else None
        now = serialize_datetime(utc_now())
        placeholders = ", ".join("?" for _ in values)

        with self._connection:
            cursor = self._connection.execute(
                f"""
                UPDATE messages SET
                    status = ?,
                    client_id = ?,
                    confidence = ?,
                    classification_method = ?,
                    classification_reason = ?,
                    classified_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (
                    state.status.value,
                    client_id,
                    confidence,
                    method.value if method else None,
                    reason,
                    now,
                    message_id,
                    *values,
                ),
            )
            if cursor.rowcount == 0:
                return False
            self._connection.execute(
                "DELETE FROM case_bindings WHERE message_id = ?", (message_id,)
            )
            for binding in bindings:
                self._write_binding(message_id, binding, now)
        return True

    def list_bindings(self, message_id: int) -> list[CaseBinding]:
        rows = self._connection.execute(
            """
            SELECT * FROM case_bindings WHERE message_id = ?
            ORDER BY is_primary DESC, confidence DESC, case_id
            """,
            (message_id,),
        ).fetchall()
        return [
            CaseBinding(
                message_id=row["message_id"],
                case_id=row["case_id"],
                confidence=float(row["confidence"]),
                method=MatchMethod(row["method"]),
                is_primary=bool(row["is_primary"]),
                created_by=row["created_by"],
                created_at=parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def add_binding(self, binding: CaseBinding) -> None:
        if binding.message_id is None:
            raise ValueError("Binding requires a stored message")
        with self._connection:
            self._write_binding(
                binding.message_id, binding, serialize_datetime(utc_now())
            )

    # Visibility --------------------------------------------------------------
    def set_message_visibility(
        self, message_id: int, private: bool, changed_by: str, changed_at: datetime
    ) -> None:
        with self._connection:
            self._connection.execute(
                """
                UPDATE messages SET
                    is_private = ?,
                    visibility_changed_by = ?,
                    visibility_changed_at = ?
                WHERE id = ?
                """,
                (int(private), changed_by, serialize_datetime(changed_at), message_id),
            )

    def set_attachment_visibility(
        self, attachment_id: int, private: bool, changed_by: str, changed_at: datetime
    ) -> None:
        with self._connection:
            self._connection.execute(
                """
                UPDATE attachments SET
                    is_private = ?,
                    visibility_changed_by = ?,
                    visibility_changed_at = ?
                WHERE id = ?
                """,
                (
                    int(private),
                    changed_by,
                    serialize_datetime(changed_at),
                    attachment_id,
                ),
            )

    def get_attachment(self, attachment_id: int) -> Attachment | None:
        row = self._connection.execute(
            "SELECT * FROM attachments WHERE id = ?", (attachment_id,)
        ).fetchone()
        if row is None:
            return None
        return _row_to_attachment(row)

    def list_attachments(self, message_id: int) -> tuple[Attachment, ...]:
        rows = self._connection.execute(
            "SELECT * FROM attachments WHERE message_id = ? ORDER BY id",
            (message_id,),
        ).fetchall()
        return tuple(_row_to_attachment(row) for row in rows)

    def set_attachment_storage_ref(self, attachment_id: int, storage_ref: str) -> None:
        with self._connection:
            self._connection.execute(
                "UPDATE attachments SET storage_ref = ? WHERE id = ?",
                (storage_ref, attachment_id),
            )

    # Sync jobs ---------------------------------------------------------------
    def create_sync_job(self, job: SyncJob) -> SyncJob:
        created_at = job.created_at or utc_now()
        with self._connection:
            row = self._connection.execute(
                """
                INSERT INTO sync_jobs (
                    firm_id,
                    principal_id,
                    contact_address,
                    case_id,
                    client_id,
                    status,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    job.firm_id,
                    job.principal_id,
                    job.contact_address,
                    job.case_id,
                    job.client_id,
                    SyncJobStatus(job.status).value,
                    serialize_datetime(created_at),
                ),
            ).fetchone()
        stored = self.get_sync_job(int(row["id"]))
        if stored is None:  # pragma: no cover - inserted above
            raise RuntimeError("Sync job vanished after insert")
        return stored

    def find_open_sync_job(
        self,
        firm_id: int,
        contact_address: str,
        *,
        case_id: int | None,
        client_id: int | None,
    ) -> SyncJob | None:
        """Return a pending or running job for the same target and address."""
        row = self._connection.execute(
            """
            SELECT * FROM sync_jobs
            WHERE firm_id = ?
              AND lower(contact_address) = lower(?)
              AND case_id IS ?
              AND client_id IS ?
              AND status IN (?, ?)
            ORDER BY id
            LIMIT 1
            """,
            (firm_id, contact_address, case_id, client_id, *_OPEN_SYNC_STATUSES),
        ).fetchone()
        if row is None:
            return None
        return _row_to_sync_job(row)

    def get_sync_job(self, job_id: int) -> SyncJob | None:
        row = self._connection.execute(
            "SELECT * FROM sync_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        if row is None:
            return None
        return _row_to_sync_job(row)

    def list_sync_jobs(self, statuses: Iterable[SyncJobStatus]) -> list[SyncJob]:
        values = [SyncJobStatus(status).value for status in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        rows = self._connection.execute(
            f"SELECT * FROM sync_jobs WHERE status IN ({placeholders}) ORDER BY id",
            values,
        ).fetchall()
        return [_row_to_sync_job(row) for row in rows]

    def save_sync_job(self, job: SyncJob) -> None:
        if job.id is None:
            raise ValueError("Sync job must be created before it is saved")
        with self._connection:
            self._connection.execute(
                """
                UPDATE sync_jobs SET
                    status = ?,
                    total_count = ?,
                    synced_count = ?,
                    cursor = ?,
                    cursor_offset = ?,
                    attempts = ?,
                    error_message = ?,
                    started_at = ?,
                    completed_at = ?
                WHERE id = ?
                """,
                (
                    SyncJobStatus(job.status).value,
                    job.total_count,
                    job.synced_count,
                    job.cursor,
                    job.cursor_offset,
                    job.attempts,
                    job.error_message,
                    serialize_datetime(job.started_at),
                    serialize_datetime(job.completed_at),
                    job.id,
                ),
            )

    def request_sync_cancel(self, job_id: int, *, now: datetime | None = None) -> bool:
        """Flag a job for cancellation; idle pending jobs are cancelled at once."""
        now = now or utc_now()
        placeholders = ", ".join("?" for _ in _OPEN_SYNC_STATUSES)
        with self._connection:
            cursor = self._connection.execute(
                f"""
                UPDATE sync_jobs SET cancel_requested = 1
                WHERE id = ? AND status IN ({placeholders})
                """,
                (job_id, *_OPEN_SYNC_STATUSES),
            )
            if cursor.rowcount == 0:
                return False
            self._connection.execute(
                """
                UPDATE sync_jobs SET status = ?, completed_at = ?
                WHERE id = ?
                  AND status = ?
                  AND (lease_owner IS NULL OR lease_expires_at <= ?)
                """,
                (
                    SyncJobStatus.CANCELLED.value,
                    serialize_datetime(now),
                    job_id,
                    SyncJobStatus.PENDING.value,
                    now.timestamp(),
                ),
            )
        return True

    def is_sync_cancel_requested(self, job_id: int) -> bool:
        row = self._connection.execute(
            "SELECT cancel_requested FROM sync_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return bool(row and row["cancel_requested"])

    def acquire_sync_lease(
        self, job_id: int, owner: str, now: datetime, expires_at: datetime
    ) -> bool:
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE sync_jobs SET lease_owner = ?, lease_expires_at = ?
                WHERE id = ?
                  AND (
                    lease_owner IS NULL
                    OR lease_owner = ?
                    OR lease_expires_at IS NULL
                    OR lease_expires_at <= ?
                  )
                """,
                (owner, expires_at.timestamp(), job_id, owner, now.timestamp()),
            )
        return cursor.rowcount == 1

    def renew_sync_lease(self, job_id: int, owner: str, expires_at: datetime) -> bool:
        with self._connection:
            cursor = self._connection.execute(
                "UPDATE sync_jobs SET lease_expires_at = ? WHERE id = ? AND lease_owner = ?",
                (expires_at.timestamp(), job_id, owner),
            )
        return cursor.rowcount == 1

    def release_sync_lease(self, job_id: int, owner: str) -> None:
        with self._connection:
            self._connection.execute(
                """
                UPDATE sync_jobs SET lease_owner = NULL, lease_expires_at = NULL
                WHERE id = ? AND lease_owner = ?
                """,
                (job_id, owner),
            )

    def ping(self) -> None:
        """Execute a trivial query; raises when the connection is unusable."""
        self._connection.execute("SELECT 1")

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _enable_foreign_keys(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        migrations = sorted(schema_dir.glob("*.sql"))
        for migration in migrations:
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            try:
                with self._connection:
                    self._connection.executescript(script)
            except sqlite3.Error as exc:  # pragma: no cover - logged for visibility
                LOGGER.warning(
                    "Migration %s failed (possibly already applied): %s",
                    migration.name,
                    exc,
                )

    def _ensure_indexes(self) -> None:
        """Create supporting indexes for the routing queries."""
        index_statements = (
            "CREATE INDEX IF NOT EXISTS idx_messages_firm_status ON messages(firm_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(firm_id, conversation_id)",
            "CREATE INDEX IF NOT EXISTS idx_messages_client_inbox ON messages(client_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_case_bindings_case ON case_bindings(case_id)",
            "CREATE INDEX IF NOT EXISTS idx_contacts_firm ON contacts(firm_id)",
            "CREATE INDEX IF NOT EXISTS idx_sync_jobs_status ON sync_jobs(status)",
        )
        with self._connection:
            for statement in index_statements:
                self._connection.execute(statement)

    def _insert_attachment(self, message_id: int, attachment: Attachment) -> None:
        self._connection.execute(
            """
            INSERT INTO attachments (
                message_id,
                provider_attachment_id,
                filename,
                content_type,
                size,
                storage_ref,
                is_private,
                visibility_changed_by,
                visibility_changed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(message_id, provider_attachment_id) DO NOTHING
            """,
            (
                message_id,
                attachment.provider_attachment_id,
                attachment.filename,
                attachment.content_type,
                attachment.size,
                attachment.storage_ref,
                int(attachment.visibility.private),
                attachment.visibility.changed_by,
                serialize_datetime(attachment.visibility.changed_at),
            ),
        )

    def _write_binding(
        self, message_id: int, binding: CaseBinding, created_at: str | None
    ) -> None:
        self._connection.execute(
            """
            INSERT INTO case_bindings (
                message_id, case_id, confidence, method, is_primary, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(message_id, case_id) DO UPDATE SET
                confidence=excluded.confidence,
                method=excluded.method,
                is_primary=excluded.is_primary,
                created_by=excluded.created_by
            """,
            (
                message_id,
                binding.case_id,
                binding.confidence,
                MatchMethod(binding.method).value,
                int(binding.is_primary),
                binding.created_by,
                serialize_datetime(binding.created_at) or created_at,
            ),
        )

    def _load_actors(self, case_ids: Sequence[int]) -> dict[int, tuple[CaseActor, ...]]:
        if not case_ids:
            return {}
        placeholders = ", ".join("?" for _ in case_ids)
        rows = self._connection.execute(
            f"SELECT * FROM case_actors WHERE case_id IN ({placeholders}) ORDER BY id",
            list(case_ids),
        ).fetchall()
        grouped: dict[int, list[CaseActor]] = {}
        for row in rows:
            grouped.setdefault(int(row["case_id"]), []).append(
                CaseActor(name=row["name"], email=row["email"], role=row["role"])
            )
        return {case_id: tuple(actors) for case_id, actors in grouped.items()}

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        state = build_state(
            row["status"],
            case_id=row["primary_case_id"],
            client_id=row["client_id"],
            confidence=row["confidence"],
        )
        return Message(
            id=row["id"],
            firm_id=row["firm_id"],
            owner_id=row["owner_id"],
            provider_message_id=row["provider_message_id"],
            conversation_id=row["conversation_id"],
            subject=row["subject"],
            body=row["body"],
            sender=row["sender"],
            to=_split_recipients(row["to_recipients"]),
            cc=_split_recipients(row["cc_recipients"]),
            received_at=parse_datetime(row["received_at"]),
            folder=row["folder"],
            references=_load_json_tuple(row["reference_tokens"]),
            attachments=self.list_attachments(int(row["id"])),
            state=state,
            visibility=VisibilityFlag(
                private=bool(row["is_private"]),
                changed_by=row["visibility_changed_by"],
                changed_at=parse_datetime(row["visibility_changed_at"]),
            ),
        )


def _row_to_case(row: sqlite3.Row, actors: tuple[CaseActor, ...]) -> Case:
    return Case(
        id=row["id"],
        firm_id=row["firm_id"],
        client_id=row["client_id"],
        case_number=row["case_number"],
        title=row["title"],
        status=CaseStatus(row["status"]),
        keywords=_load_json_tuple(row["keywords"]),
        reference_numbers=_load_json_tuple(row["reference_numbers"]),
        actors=actors,
        last_activity_at=parse_datetime(row["last_activity_at"]),
    )


def _row_to_attachment(row: sqlite3.Row) -> Attachment:
    return Attachment(
        id=row["id"],
        provider_attachment_id=row["provider_attachment_id"],
        filename=row["filename"],
        content_type=row["content_type"],
        size=row["size"],
        message_id=row["message_id"],
        storage_ref=row["storage_ref"],
        visibility=VisibilityFlag(
            private=bool(row["is_private"]),
            changed_by=row["visibility_changed_by"],
            changed_at=parse_datetime(row["visibility_changed_at"]),
        ),
    )


def _row_to_sync_job(row: sqlite3.Row) -> SyncJob:
    lease_expires = row["lease_expires_at"]
    return SyncJob(
        id=row["id"],
        firm_id=row["firm_id"],
        principal_id=row["principal_id"],
        contact_address=row["contact_address"],
        case_id=row["case_id"],
        client_id=row["client_id"],
        status=SyncJobStatus(row["status"]),
        total_count=row["total_count"],
        synced_count=int(row["synced_count"]),
        cursor=row["cursor"],
        cursor_offset=int(row["cursor_offset"]),
        attempts=int(row["attempts"]),
        cancel_requested=bool(row["cancel_requested"]),
        error_message=row["error_message"],
        lease_owner=row["lease_owner"],
        lease_expires_at=(
            datetime.fromtimestamp(lease_expires, tz=UTC)
            if lease_expires is not None
            else None
        ),
        started_at=parse_datetime(row["started_at"]),
        completed_at=parse_datetime(row["completed_at"]),
        created_at=parse_datetime(row["created_at"]),
    )


def _status_values(statuses: Iterable[ClassificationStatus]) -> list[str]:
    return sorted({ClassificationStatus(status).value for status in statuses})


def _load_json_tuple(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        LOGGER.warning("Ignoring malformed JSON list column: %r", value)
        return ()
    if not isinstance(loaded, list):
        return ()
    return tuple(str(item) for item in loaded)


def _split_recipients(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(
        part for part in (segment.strip() for segment in value.split(",")) if part
    )


__all__ = ["SqliteCaseRepository"]
