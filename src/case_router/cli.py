"""Command-line entry point for Case Router."""

from __future__ import annotations

import argparse
from pathlib import Path

from case_router.core import AppSettings, configure_logging, load_app_settings
from case_router.core.errors import CaseRouterError
from case_router.services import (
    build_ai_classifier,
    build_services,
    sync_worker_factory,
)
from case_router.storage import (
    ConnectionPool,
    LocalAttachmentStore,
    SqliteCaseRepository,
)
from case_router.sync import HttpTokenSource, RefreshingCredentialProvider, SyncWorkerPool
from case_router.transport import HttpMailProvider


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Law-firm email case router")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "reevaluate", "sync", "inbox"],
        help="Operation to execute.",
    )
    parser.add_argument(
        "--firm-id",
        dest="firm_id",
        type=int,
        default=None,
        help="Firm whose pending and uncertain mail is re-evaluated.",
    )
    parser.add_argument(
        "--client-id",
        dest="client_id",
        type=int,
        default=None,
        help="Client whose inbox is listed by the inbox command.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    command = args.command
    if command == "info":
        _print_info(settings)
        return 0
    if command == "reevaluate":
        if args.firm_id is None:
            print("The reevaluate command requires --firm-id.")
            return 2
        return _run_reevaluate(settings, args.firm_id)
    if command == "sync":
        return _run_sync(settings)
    if command == "inbox":
        if args.client_id is None:
            print("The inbox command requires --client-id.")
            return 2
        return _run_inbox(settings, args.client_id)
    return 2


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _print_info(settings: AppSettings) -> None:
    print("Case Router is ready.")
    print(f"Database path: {settings.storage.db_path}")
    print(f"Mail provider: {settings.provider.base_url}")
    print(f"AI fallback: {'enabled' if settings.llm.enabled else 'disabled'}")
    print(
        f"Minimum score gap: {settings.classification.min_gap} "
        f"(floor {settings.classification.score_floor})"
    )
    print(f"Sync workers: {settings.sync.max_workers}")


def _run_reevaluate(settings: AppSettings, firm_id: int) -> int:
    """Re-run classification over the firm's pending and uncertain mail."""
    classifier = build_ai_classifier(
        settings.llm, settings.classification.ai_timeout_seconds
    )
    try:
        with SqliteCaseRepository(settings.storage) as repository:
            services = build_services(repository, settings, ai_classifier=classifier)
            report = services.reevaluation.reevaluate_firm(firm_id)
            counts = repository.count_messages(firm_id)
    finally:
        if classifier is not None:
            classifier.close()

    print(
        f"Examined {report.examined} message(s): {report.changed} changed, "
        f"{report.skipped} unchanged."
    )
    for status_name, total in sorted(counts.items()):
        print(f"  {status_name:<18} {total:>6}")
    return 0


def _run_sync(settings: AppSettings) -> int:
    """Run every queued historical sync job once."""
    try:
        token_source = HttpTokenSource(settings.provider)
    except CaseRouterError as exc:
        print(f"Sync unavailable: {exc}")
        return 1

    classifier = build_ai_classifier(
        settings.llm, settings.classification.ai_timeout_seconds
    )
    credentials = RefreshingCredentialProvider(token_source)
    try:
        with (
            HttpMailProvider(settings.provider) as provider,
            ConnectionPool(settings.storage) as connection_pool,
        ):
            factory = sync_worker_factory(
                settings,
                provider,
                credentials,
                attachment_store=LocalAttachmentStore(settings.sync.attachment_dir),
                ai_classifier=classifier,
            )
            pool = SyncWorkerPool(
                connection_pool, factory, max_workers=settings.sync.max_workers
            )
            jobs = pool.run_pending()
    finally:
        token_source.close()
        if classifier is not None:
            classifier.close()

    if not jobs:
        print("No sync jobs to run.")
        return 0
    print(f"Ran {len(jobs)} sync job(s):")
    for job in jobs:
        total = job.total_count if job.total_count is not None else "?"
        line = (
            f"  #{job.id:<5} {job.status.value:<11} {job.synced_count}/{total}"
            f"  {job.contact_address}"
        )
        if job.error_message:
            line += f"  ({job.error_message})"
        print(line)
    return 0


def _run_inbox(settings: AppSettings, client_id: int) -> int:
    """List messages waiting for manual case selection."""
    with SqliteCaseRepository(settings.storage) as repository:
        client = repository.get_client(client_id)
        if client is None:
            print(f"Client {client_id} not found.")
            return 1
        messages = repository.list_client_inbox(client_id)

    if not messages:
        print(f"No messages waiting in the inbox of {client.name}.")
        return 0

    print(f"{len(messages)} message(s) waiting for {client.name}:")
    header = f"{'ID':>6}  {'Received':<20}  {'From':<30}  Subject"
    print(header)
    print("-" * len(header))
    for message in messages:
        received = (
            message.received_at.isoformat(timespec="minutes")
            if message.received_at
            else "-"
        )
        subject = message.subject or "(no subject)"
        print(f"{message.id:>6}  {received:<20}  {message.sender or '-':<30}  {subject}")
    return 0


if __name__ == "__main__":
    main()
