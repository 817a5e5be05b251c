"""Prompt templates for the AI case classifier."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from textwrap import dedent, indent

from case_router.core.models import Case, Client, Message

MAX_BODY_CHARS = 2000


def build_case_prompt(
    message: Message,
    cases: Sequence[Case],
    clients: Mapping[int, Client],
) -> str:
    """Compose a JSON-only prompt asking which case a message belongs to."""
    subject = message.subject or "(no subject)"
    sender = message.sender or "(unknown sender)"
    recipients = ", ".join((*message.to, *message.cc)) or "(none)"
    body = (message.body or "").strip()[:MAX_BODY_CHARS] or "(empty body)"

    case_lines = []
    for case in cases:
        client = clients.get(case.client_id)
        client_name = client.name if client else "unknown client"
        keywords = ", ".join(case.keywords) or "-"
        references = ", ".join(case.reference_numbers) or "-"
        case_lines.append(
            f"- id={case.id} number={case.case_number or '-'} "
            f"client={client_name!r} title={case.title!r} "
            f"keywords=[{keywords}] references=[{references}]"
        )
    case_block = indent("\n".join(case_lines) or "- (no cases)", "    ")
    body_block = indent(body, "    ")

    prompt = f"""
    You route law-firm email to the legal case it belongs to.
    Respond strictly with JSON using this schema:
    {{
      "caseId": number|null,   # one of the ids listed below, or null
      "confidence": number,    # between 0 and 1
      "reasoning": string      # one short sentence
    }}

    Use null for caseId when your confidence is below 0.5.
    Never invent an id that is not in the list.

    Cases:
{case_block}

    Subject: {subject}
    From: {sender}
    To: {recipients}

    Email body:
{body_block}
    """

    return dedent(prompt).strip()


__all__ = ["build_case_prompt"]
