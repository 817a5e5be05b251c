"""Resolve e-mail addresses to the cases and clients that know them."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from email.utils import parseaddr

from ..core.interfaces import DirectoryRepository
from ..core.models import (
    Case,
    ContactRelation,
    CourtSource,
    EntityKind,
    MatchStrength,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DirectoryMatch:
    """A case or client reachable through an address."""

    kind: EntityKind
    entity_id: int
    client_id: int | None
    relation: ContactRelation
    strength: MatchStrength
    address: str


def normalize_address(raw: str | None) -> str | None:
    """Return the bare lower-cased address of ``raw`` or ``None`` if unusable."""
    if not raw:
        return None
    _, address = parseaddr(raw)
    address = address.strip().lower()
    local, sep, domain = address.rpartition("@")
    if not sep or not local or not domain or "." not in domain:
        return None
    return address


def address_domain(address: str) -> str:
    return address.rpartition("@")[2]


def _parse_stored_entry(raw: str) -> tuple[MatchStrength, str]:
    """Interpret a stored contact entry as an exact address or ``@domain``."""
    value = raw.strip().lower()
    if value.startswith("@"):
        domain = value[1:]
        if not domain or "." not in domain or "@" in domain or " " in domain:
            raise ValueError(f"malformed domain entry {raw!r}")
        return MatchStrength.DOMAIN, domain
    address = normalize_address(value)
    if address is None or " " in address:
        raise ValueError(f"malformed address {raw!r}")
    return MatchStrength.EXACT, address


class ContactDirectory:
    """Read-only lookup of a firm's known correspondents."""

    def __init__(self, repository: DirectoryRepository) -> None:
        self._repository = repository

    def resolve(self, address: str, firm_id: int) -> list[DirectoryMatch]:
        """Return matches for one address, exact matches first."""
        return self.resolve_many((address,), firm_id)

    def resolve_many(
        self, addresses: Iterable[str | None], firm_id: int
    ) -> list[DirectoryMatch]:
        """Return matches for every party of a message, exact matches first."""
        wanted = {
            normalized
            for normalized in (normalize_address(raw) for raw in addresses)
            if normalized
        }
        if not wanted:
            return []
        domains = {address_domain(address): address for address in wanted}

        cases = {case.id: case for case in self._repository.list_cases(firm_id)}
        best: dict[tuple[EntityKind, int], DirectoryMatch] = {}

        for contact in self._repository.list_contacts(firm_id):
            try:
                strength, value = _parse_stored_entry(contact.address)
            except ValueError as exc:
                LOGGER.warning("Skipping contact %s: %s", contact.id, exc)
                continue

            if strength is MatchStrength.EXACT:
                if value not in wanted:
                    continue
                matched_address = value
            else:
                if value not in domains:
                    continue
                matched_address = domains[value]

            if contact.case_id is not None:
                case = cases.get(contact.case_id)
                if case is None:
                    LOGGER.warning(
                        "Contact %s references missing case %s",
                        contact.id,
                        contact.case_id,
                    )
                    continue
                match = DirectoryMatch(
                    kind=EntityKind.CASE,
                    entity_id=contact.case_id,
                    client_id=case.client_id,
                    relation=ContactRelation.ACTOR,
                    strength=strength,
                    address=matched_address,
                )
            else:
                match = DirectoryMatch(
                    kind=EntityKind.CLIENT,
                    entity_id=int(contact.client_id),  # type: ignore[arg-type]
                    client_id=contact.client_id,
                    relation=ContactRelation.CLIENT_CONTACT,
                    strength=strength,
                    address=matched_address,
                )
            _keep_strongest(best, match)

        for case in cases.values():
            for match in self._actor_matches(case, wanted):
                _keep_strongest(best, match)

        return sorted(
            best.values(),
            key=lambda item: (-item.strength, item.kind.value, item.entity_id),
        )

    def court_source_for(
        self, addresses: Iterable[str | None], firm_id: int
    ) -> CourtSource | None:
        """Return the registered court whose address or domain sent the mail."""
        wanted = [
            normalized
            for normalized in (normalize_address(raw) for raw in addresses)
            if normalized
        ]
        if not wanted:
            return None
        for source in self._repository.list_court_sources(firm_id):
            emails = {email.strip().lower() for email in source.emails}
            domains = {domain.strip().lower().lstrip("@") for domain in source.domains}
            for address in wanted:
                if address in emails or address_domain(address) in domains:
                    return source
        return None

    def _actor_matches(self, case: Case, wanted: set[str]) -> list[DirectoryMatch]:
        matches = []
        for actor in case.actors:
            if not actor.email:
                continue
            try:
                strength, value = _parse_stored_entry(actor.email)
            except ValueError as exc:
                LOGGER.warning("Skipping actor %r on case %s: %s", actor.name, case.id, exc)
                continue
            if strength is MatchStrength.EXACT and value in wanted:
                matches.append(
                    DirectoryMatch(
                        kind=EntityKind.CASE,
                        entity_id=int(case.id),  # type: ignore[arg-type]
                        client_id=case.client_id,
                        relation=ContactRelation.ACTOR,
                        strength=MatchStrength.EXACT,
                        address=value,
                    )
                )
        return matches


def _keep_strongest(
    best: dict[tuple[EntityKind, int], DirectoryMatch], match: DirectoryMatch
) -> None:
    key = (match.kind, match.entity_id)
    current = best.get(key)
    if current is None or match.strength > current.strength:
        best[key] = match


__all__ = [
    "ContactDirectory",
    "DirectoryMatch",
    "address_domain",
    "normalize_address",
]
