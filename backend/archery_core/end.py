from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Tuple

from .scoring import (
    ARROWS_PER_END,
    MAX_SCORE,
    is_valid_score_input,
    normalize_token,
    parse_score_value,
    round_half_away,
)

EMPTY_ARROWS: Tuple[str, str, str] = ("", "", "")


@dataclass(frozen=True)
class End:
    """The three arrow tokens an archer shot in one end.

    Slots are ordered ``arrow1``..``arrow3``; an empty string is an unshot
    arrow. Instances are immutable, scoring replaces the whole end.
    """

    arrows: Tuple[str, str, str] = field(default=EMPTY_ARROWS)

    @classmethod
    def from_raw(cls, raw: Any) -> "End":
        """Build an End from any stored shape.

        Older documents hold either a list of three tokens or a mapping with
        ``arrow1``..``arrow3`` keys. Both are accepted here and nowhere else.
        """

        if raw is None:
            return cls()
        if isinstance(raw, End):
            return raw

        if isinstance(raw, Mapping):
            values = [raw.get(f"arrow{index}") for index in range(1, ARROWS_PER_END + 1)]
        elif isinstance(raw, (list, tuple)):
            values = list(raw[:ARROWS_PER_END])
        else:
            raise ValueError(f"Unsupported end payload: {type(raw).__name__}")

        values += [""] * (ARROWS_PER_END - len(values))
        return cls(tuple(_coerce_legacy(value) for value in values))  # type: ignore[arg-type]

    def with_arrow(self, index: int, token: str) -> "End":
        if not 0 <= index < ARROWS_PER_END:
            raise ValueError(f"Arrow index must be between 1 and {ARROWS_PER_END}")
        arrows = list(self.arrows)
        arrows[index] = normalize_token(token)
        return End(tuple(arrows))  # type: ignore[arg-type]

    @property
    def shot(self) -> List[str]:
        return [token for token in self.arrows if token]

    @property
    def shot_count(self) -> int:
        return len(self.shot)

    @property
    def is_complete(self) -> bool:
        return all(self.arrows)

    def to_list(self) -> List[str]:
        return list(self.arrows)


def _coerce_legacy(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not is_valid_score_input(value):
        return ""
    return normalize_token(value)


def end_total(end: End) -> int:
    return sum(parse_score_value(token) for token in end.arrows)


def end_average(end: End) -> float:
    shot = end.shot
    if not shot:
        return 0.0
    return round_half_away(sum(parse_score_value(token) for token in shot) / len(shot))


def tens_and_xs(end: End) -> Tuple[int, int]:
    """Count tens and Xs; an X is counted in both."""

    tens = 0
    xs = 0
    for token in end.arrows:
        if token == "X":
            xs += 1
            tens += 1
        elif token and parse_score_value(token) == MAX_SCORE:
            tens += 1
    return tens, xs
