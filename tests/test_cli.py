"""Tests for the command-line interface."""

from __future__ import annotations

from case_router.cli import build_parser, execute
from case_router.core.config import AppSettings, StorageSettings
from case_router.core.models import Case, Client, Contact, Message

FIRM_ID = 1


def _settings(tmp_path) -> AppSettings:
    return AppSettings(storage=StorageSettings(db_path=tmp_path / "cli.db"))


def _run(settings: AppSettings, *argv: str) -> int:
    return execute(build_parser().parse_args(list(argv)), settings)


def test_info_is_the_default_command(tmp_path, capsys) -> None:
    assert _run(_settings(tmp_path)) == 0

    output = capsys.readouterr().out
    assert "Case Router is ready." in output
    assert "Minimum score gap: 20 (floor 0)" in output


def test_commands_require_their_target(tmp_path, capsys) -> None:
    settings = _settings(tmp_path)

    assert _run(settings, "reevaluate") == 2
    assert _run(settings, "inbox") == 2
    assert "--firm-id" in capsys.readouterr().out


def test_sync_without_token_endpoint(tmp_path, capsys) -> None:
    assert _run(_settings(tmp_path), "sync") == 1
    assert "Sync unavailable" in capsys.readouterr().out


def test_reevaluate_and_inbox(storage_settings, repository, capsys) -> None:
    settings = AppSettings(storage=storage_settings)
    client = repository.add_client(Client(id=None, firm_id=FIRM_ID, name="Initech"))
    for title in ("Lease renewal", "Debt recovery"):
        repository.add_case(
            Case(id=None, firm_id=FIRM_ID, client_id=client.id, case_number=None, title=title)
        )
    repository.insert_message(
        Message(
            id=None,
            firm_id=FIRM_ID,
            owner_id="associate-1",
            provider_message_id="m-1",
            conversation_id=None,
            subject="Quick question",
            body="",
            sender="boss@initech.test",
            to=("office@firm.test",),
            cc=(),
            received_at=None,
        )
    )
    repository.add_contact(
        Contact(id=None, firm_id=FIRM_ID, address="boss@initech.test", client_id=client.id)
    )

    assert _run(settings, "reevaluate", "--firm-id", "1") == 0
    output = capsys.readouterr().out
    assert "Examined 1 message(s): 1 changed" in output
    assert "client_inbox" in output

    assert _run(settings, "inbox", "--client-id", str(client.id)) == 0
    output = capsys.readouterr().out
    assert "1 message(s) waiting for Initech" in output
    assert "Quick question" in output

    assert _run(settings, "inbox", "--client-id", "9999") == 1
