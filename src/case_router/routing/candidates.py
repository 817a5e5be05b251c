"""Turn directory matches into the set of cases a message may belong to."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..core.interfaces import DirectoryRepository
from ..core.models import Case, Client, ContactRelation, EntityKind, MatchStrength
from ..directory import DirectoryMatch

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Candidate:
    """A case eligible to receive a message."""

    case: Case
    client_id: int
    relation: ContactRelation
    strength: MatchStrength

    @property
    def case_id(self) -> int:
        return int(self.case.id)  # type: ignore[arg-type]


@dataclass(slots=True)
class ClientTarget:
    """A client matched by contact but without any active case."""

    client_id: int
    strength: MatchStrength


@dataclass(slots=True)
class CandidatePool:
    """Deduplicated candidates plus clients kept as inbox targets."""

    candidates: list[Candidate] = field(default_factory=list)
    client_targets: list[ClientTarget] = field(default_factory=list)
    clients: dict[int, Client] = field(default_factory=dict)

    @property
    def client_ids(self) -> set[int]:
        return {candidate.client_id for candidate in self.candidates}

    def best_client_target(self) -> int | None:
        """Return the single strongest client target, or ``None`` on a tie."""
        if not self.client_targets:
            return None
        top = max(target.strength for target in self.client_targets)
        strongest = {
            target.client_id
            for target in self.client_targets
            if target.strength == top
        }
        if len(strongest) != 1:
            return None
        return next(iter(strongest))


class CandidateResolver:
    """Expand directory matches to cases, applying the client cardinality rules.

    A client contact reaching a client with one active case yields that case;
    with several active cases every one of them is a candidate and is left to
    the scorer; with none the client is kept as a ``ClientInbox`` target.
    """

    def __init__(self, repository: DirectoryRepository) -> None:
        self._repository = repository

    def resolve(self, matches: Iterable[DirectoryMatch], firm_id: int) -> CandidatePool:
        matches = list(matches)
        pool = CandidatePool()
        if not matches:
            return pool

        cases = self._repository.list_cases(firm_id)
        cases_by_id = {case.id: case for case in cases}
        pool.clients = {
            int(client.id): client  # type: ignore[arg-type]
            for client in self._repository.list_clients(firm_id)
        }
        selected: dict[int, Candidate] = {}
        targets: dict[int, ClientTarget] = {}

        for match in matches:
            if match.kind is EntityKind.CASE:
                case = cases_by_id.get(match.entity_id)
                if case is None:
                    LOGGER.warning(
                        "Directory match %s references missing case %s",
                        match.address,
                        match.entity_id,
                    )
                    continue
                if not case.is_active:
                    LOGGER.debug("Skipping inactive case %s", case.id)
                    continue
                _merge(
                    selected,
                    Candidate(
                        case=case,
                        client_id=case.client_id,
                        relation=match.relation,
                        strength=match.strength,
                    ),
                )
                continue

            if match.entity_id not in pool.clients:
                LOGGER.warning(
                    "Directory match %s references missing client %s",
                    match.address,
                    match.entity_id,
                )
                continue
            active = [
                case
                for case in cases
                if case.client_id == match.entity_id and case.is_active
            ]
            if not active:
                current = targets.get(match.entity_id)
                if current is None or match.strength > current.strength:
                    targets[match.entity_id] = ClientTarget(
                        client_id=match.entity_id, strength=match.strength
                    )
                continue
            for case in active:
                _merge(
                    selected,
                    Candidate(
                        case=case,
                        client_id=case.client_id,
                        relation=match.relation,
                        strength=match.strength,
                    ),
                )

        pool.candidates = sorted(selected.values(), key=lambda item: item.case_id)
        pool.client_targets = sorted(targets.values(), key=lambda item: item.client_id)
        return pool


def _merge(selected: dict[int, Candidate], candidate: Candidate) -> None:
    current = selected.get(candidate.case_id)
    if current is None:
        selected[candidate.case_id] = candidate
        return
    # An actor relation is more specific than a client-wide contact.
    if candidate.relation is ContactRelation.ACTOR:
        current.relation = ContactRelation.ACTOR
    if candidate.strength > current.strength:
        current.strength = candidate.strength


__all__ = ["Candidate", "CandidatePool", "CandidateResolver", "ClientTarget"]
