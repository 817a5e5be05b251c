"""Candidate resolution, scoring and the classification state machine."""

from .candidates import Candidate, CandidatePool, CandidateResolver, ClientTarget
from .engine import (
    LIVE_GATE,
    REEVALUATION_GATE,
    ClassificationEngine,
    ClassificationOutcome,
    classification_addresses,
)
from .reevaluation import ReevaluationReport, ReevaluationService
from .references import extract_references, normalize_reference
from .scoring import SIGNAL_WEIGHTS, CaseScore, ScoringContext, Signal, SignalScorer

__all__ = [
    "Candidate",
    "CandidatePool",
    "CandidateResolver",
    "CaseScore",
    "ClassificationEngine",
    "ClassificationOutcome",
    "ClientTarget",
    "LIVE_GATE",
    "REEVALUATION_GATE",
    "ReevaluationReport",
    "ReevaluationService",
    "SIGNAL_WEIGHTS",
    "ScoringContext",
    "Signal",
    "SignalScorer",
    "classification_addresses",
    "extract_references",
    "normalize_reference",
]
