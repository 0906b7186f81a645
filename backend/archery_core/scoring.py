"""Score token parsing, validation and display tiers.

A token is what the scorer taps on the keypad: ``X``, ``M`` or ``0``-``10``.
The empty string means the arrow has not been shot yet.
"""

from __future__ import annotations

import enum
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

ARROWS_PER_END = 3
TOTAL_ENDS = 12
MAX_SCORE = 10

# Keypad order, highest first.
VALID_TOKENS = ("X", "10", "9", "8", "7", "6", "5", "4", "3", "2", "1", "0", "M")


class ScoreTier(str, enum.Enum):
    GOLD = "gold"
    RED = "red"
    BLUE = "blue"
    BLACK = "black"
    WHITE = "white"
    MISS = "miss"
    EMPTY = "empty"


_TIER_BY_POINTS = {
    10: ScoreTier.GOLD,
    9: ScoreTier.GOLD,
    8: ScoreTier.RED,
    7: ScoreTier.RED,
    6: ScoreTier.BLUE,
    5: ScoreTier.BLUE,
    4: ScoreTier.BLACK,
    3: ScoreTier.BLACK,
    2: ScoreTier.WHITE,
    1: ScoreTier.WHITE,
    0: ScoreTier.MISS,
}


def _parse_int(text: str) -> int | None:
    # Plain ASCII digits only; int() would also take "+5", "1_0" and "-1".
    if not (text.isascii() and text.isdigit()):
        return None
    return int(text)


def parse_score_value(token: Any) -> int:
    """Return the point value of a token.

    Unparseable or out-of-range input counts as 0 rather than raising, so a
    bad cell never breaks a running total.
    """

    if isinstance(token, bool):
        return 0
    if isinstance(token, int):
        return token if 0 <= token <= MAX_SCORE else 0
    if not isinstance(token, str):
        return 0

    text = token.strip().upper()
    if text == "X":
        return MAX_SCORE
    if text == "M":
        return 0
    value = _parse_int(text)
    if value is None or not 0 <= value <= MAX_SCORE:
        return 0
    return value


def is_valid_score_input(token: Any) -> bool:
    if token is None:
        return True
    if not isinstance(token, str):
        return False

    text = token.strip().upper()
    if text in ("", "X", "M"):
        return True
    value = _parse_int(text)
    return value is not None and 0 <= value <= MAX_SCORE


def normalize_token(token: Any) -> str:
    """Return the stored form of a keypad token or raise ``ValueError``."""

    if not is_valid_score_input(token):
        raise ValueError(f"Invalid score '{token}'")
    if token is None:
        return ""

    text = token.strip().upper()
    if text in ("", "X", "M"):
        return text
    return str(int(text))


def format_score(value: Any, collapse_tens: bool = False) -> str:
    """Display form of a token or a point value.

    Tokens are kept as entered. ``collapse_tens`` reproduces the older
    keypad behaviour where every 10 was rewritten as ``X`` on blur, which
    loses the distinction between the two.
    """

    if value is None:
        return ""
    if isinstance(value, int) and not isinstance(value, bool):
        if collapse_tens and value == MAX_SCORE:
            return "X"
        return str(value)

    text = str(value).strip().upper()
    if text == "":
        return ""
    if not is_valid_score_input(text):
        return text
    if collapse_tens and parse_score_value(text) == MAX_SCORE:
        return "X"
    return normalize_token(text)


def score_tier(token: Any) -> ScoreTier:
    if token is None:
        return ScoreTier.EMPTY
    text = str(token).strip().upper()
    if text == "" or not is_valid_score_input(text):
        return ScoreTier.EMPTY
    if text == "M":
        return ScoreTier.MISS
    return _TIER_BY_POINTS[parse_score_value(text)]


def average_tier(average: float) -> ScoreTier:
    if average >= 9:
        return ScoreTier.GOLD
    if average >= 7:
        return ScoreTier.RED
    if average >= 5:
        return ScoreTier.BLUE
    if average >= 3:
        return ScoreTier.BLACK
    return ScoreTier.WHITE


def round_half_away(value: float, digits: int = 1) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
