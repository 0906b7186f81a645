"""Core archery scoring domain reused by the API."""

from .bale import Archer, ArcherNotFound, ArcherTotals, Bale, overall_totals, running_total
from .controller import FocusState, InputSlot, ScoringController, StaleInputError
from .end import End, end_average, end_total, tens_and_xs
from .scoring import (
    ScoreTier,
    format_score,
    is_valid_score_input,
    normalize_token,
    parse_score_value,
    score_tier,
)
from .store import LocalStore, RemoteDocumentStore, SessionPersistence

__all__ = [
    "Archer",
    "ArcherNotFound",
    "ArcherTotals",
    "Bale",
    "End",
    "FocusState",
    "InputSlot",
    "LocalStore",
    "RemoteDocumentStore",
    "ScoreTier",
    "ScoringController",
    "SessionPersistence",
    "StaleInputError",
    "end_average",
    "end_total",
    "format_score",
    "is_valid_score_input",
    "normalize_token",
    "overall_totals",
    "parse_score_value",
    "running_total",
    "score_tier",
    "tens_and_xs",
]
