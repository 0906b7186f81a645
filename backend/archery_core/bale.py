from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .end import End, end_average, end_total, tens_and_xs
from .scoring import (
    ARROWS_PER_END,
    TOTAL_ENDS,
    ScoreTier,
    average_tier,
    round_half_away,
    score_tier,
)

TARGET_LETTERS = ("A", "B", "C", "D", "E", "F", "G", "H")


class ArcherNotFound(LookupError):
    def __init__(self, archer_id: str) -> None:
        super().__init__("Archer not found")
        self.archer_id = archer_id


def _blank_ends() -> Dict[int, End]:
    return {number: End() for number in range(1, TOTAL_ENDS + 1)}


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _end_number_from_key(key: Any) -> int | None:
    text = str(key).strip().lower()
    if text.startswith("end"):
        text = text[3:]
    try:
        number = int(text)
    except ValueError:
        return None
    return number if 1 <= number <= TOTAL_ENDS else None


@dataclass
class Archer:
    """An archer on a bale together with their twelve ends."""

    archer_id: str
    first_name: str
    last_name: str = ""
    school: str = ""
    level: str = ""  # Classification, e.g. Varsity / JV or bow style
    gender: str = ""
    target: str = ""
    ends: Dict[int, End] = field(default_factory=_blank_ends)
    verified_at: Optional[str] = None
    verified_by: Optional[str] = None

    @classmethod
    def blank(cls, archer_id: str, first_name: str, **details: Any) -> "Archer":
        return cls(archer_id=archer_id, first_name=first_name, ends=_blank_ends(), **details)

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def end(self, number: int) -> End:
        if not 1 <= number <= TOTAL_ENDS:
            raise ValueError(f"End must be between 1 and {TOTAL_ENDS}")
        return self.ends.get(number, End())

    @property
    def is_complete(self) -> bool:
        return all(self.end(number).is_complete for number in range(1, TOTAL_ENDS + 1))

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Archer":
        archer_id = str(payload.get("id") or "").strip()
        if not archer_id:
            raise ValueError("Archer id is required")

        ends = _blank_ends()
        scores = payload.get("scores")
        if isinstance(scores, (list, tuple)):
            for index, raw in enumerate(scores[:TOTAL_ENDS]):
                ends[index + 1] = End.from_raw(raw)
        elif isinstance(scores, Mapping):
            for key, raw in scores.items():
                number = _end_number_from_key(key)
                if number is not None:
                    ends[number] = End.from_raw(raw)

        return cls(
            archer_id=archer_id,
            first_name=str(payload.get("firstName") or "").strip(),
            last_name=str(payload.get("lastName") or "").strip(),
            school=str(payload.get("school") or "").strip(),
            level=str(payload.get("level") or payload.get("division") or "").strip(),
            gender=str(payload.get("gender") or "").strip(),
            target=str(payload.get("targetAssignment") or payload.get("target") or "").strip().upper(),
            ends=ends,
            verified_at=payload.get("verifiedAt") or None,
            verified_by=payload.get("verifiedBy") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.archer_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "school": self.school,
            "level": self.level,
            "gender": self.gender,
            "targetAssignment": self.target,
            "scores": [self.end(number).to_list() for number in range(1, TOTAL_ENDS + 1)],
            "verifiedAt": self.verified_at,
            "verifiedBy": self.verified_by,
        }


@dataclass
class ArcherTotals:
    total_score: int = 0
    total_arrows: int = 0
    tens: int = 0
    xs: int = 0
    average: float = 0.0
    x_percentage: float = 0.0
    ten_percentage: float = 0.0


def running_total(archer: Archer, through_end: int) -> int:
    last = max(0, min(through_end, TOTAL_ENDS))
    return sum(end_total(archer.end(number)) for number in range(1, last + 1))


def overall_totals(archer: Archer) -> ArcherTotals:
    """Fold all twelve ends into scorecard totals.

    ``tens`` already includes Xs, so ``ten_percentage`` is the share of
    arrows worth ten points.
    """

    totals = ArcherTotals()
    for number in range(1, TOTAL_ENDS + 1):
        end = archer.end(number)
        tens, xs = tens_and_xs(end)
        totals.tens += tens
        totals.xs += xs
        totals.total_score += end_total(end)
        totals.total_arrows += end.shot_count

    if totals.total_arrows:
        totals.average = round_half_away(totals.total_score / totals.total_arrows)
        totals.x_percentage = round_half_away(totals.xs / totals.total_arrows * 100)
        totals.ten_percentage = round_half_away(totals.tens / totals.total_arrows * 100)
    return totals


@dataclass
class ArcherEndRow:
    archer_id: str
    name: str
    target: str
    arrows: List[str]
    tens: int
    xs: int
    end_total: int
    running_total: int
    end_average: float
    average_tier: ScoreTier


@dataclass
class BaleSummary:
    bale_number: int
    end_number: int
    total_ends: int
    rows: List[ArcherEndRow] = field(default_factory=list)
    summary_text: str = ""


@dataclass
class ScorecardRow:
    end_number: int
    arrows: List[str]
    tiers: List[ScoreTier]
    end_total: int
    running_total: int
    end_average: float
    average_tier: ScoreTier


@dataclass
class Scorecard:
    archer: Archer
    rows: List[ScorecardRow]
    totals: ArcherTotals
    complete: bool


class Bale:
    def __init__(
        self,
        bale_number: int,
        archers: Iterable[Archer] | None = None,
        *,
        bale_id: str | None = None,
        current_end: int = 1,
        created_by: str | None = None,
        created_at: str | None = None,
        last_updated: str | None = None,
    ) -> None:
        self.bale_id = bale_id or f"bale_{uuid.uuid4().hex[:12]}"
        self.bale_number = bale_number
        self.archers: List[Archer] = list(archers or [])
        self.total_ends = TOTAL_ENDS
        self.current_end = max(1, min(current_end, TOTAL_ENDS))
        self.created_by = created_by
        self.created_at = created_at or _utc_now_iso()
        self.last_updated = last_updated or self.created_at

    @classmethod
    def start(
        cls,
        bale_number: int,
        archers: Iterable[Mapping[str, Any]],
        created_by: str | None = None,
    ) -> "Bale":
        """Set up a fresh bale from an archer selection.

        Scores in the selection are ignored; a new bale always starts blank.
        """

        selection = list(archers)
        if not selection:
            raise ValueError("Please add at least one archer to the bale.")
        if bale_number < 1:
            raise ValueError("Bale number must be positive")

        roster: List[Archer] = []
        seen: set[str] = set()
        for item in selection:
            profile = Archer.from_dict({**item, "scores": None})
            if profile.archer_id in seen:
                raise ValueError(f"Archer '{profile.archer_id}' is already on the bale")
            seen.add(profile.archer_id)
            roster.append(
                Archer.blank(
                    profile.archer_id,
                    profile.first_name,
                    last_name=profile.last_name,
                    school=profile.school,
                    level=profile.level,
                    gender=profile.gender,
                    target=profile.target,
                )
            )

        used = {archer.target for archer in roster if archer.target}
        for archer in roster:
            if archer.target:
                continue
            free = [letter for letter in TARGET_LETTERS if letter not in used]
            archer.target = free[0] if free else TARGET_LETTERS[0]
            used.add(archer.target)

        return cls(bale_number, roster, created_by=created_by)

    @property
    def status(self) -> str:
        return "complete" if self.is_complete else "active"

    @property
    def is_complete(self) -> bool:
        return bool(self.archers) and all(archer.is_complete for archer in self.archers)

    def archer(self, archer_id: str) -> Archer:
        for archer in self.archers:
            if archer.archer_id == archer_id:
                return archer
        raise ArcherNotFound(archer_id)

    def set_arrow(self, archer_id: str, end_number: int, arrow_index: int, token: str) -> End:
        archer = self.archer(archer_id)
        current = archer.end(end_number)
        updated = current.with_arrow(arrow_index, token)
        archer.ends[end_number] = updated
        if updated != current:
            # A changed scorecard has to be verified again.
            archer.verified_at = None
            archer.verified_by = None
        self.last_updated = _utc_now_iso()
        return updated

    def verify(self, archer_id: str, verified_by: Optional[str] = None) -> Dict[str, Any]:
        """Confirm a complete scorecard and return its completed-round record."""

        archer = self.archer(archer_id)
        if not archer.is_complete:
            raise ValueError(
                f"Complete all {self.total_ends} ends ({self.total_ends * ARROWS_PER_END} arrows) to verify this scorecard."
            )
        archer.verified_at = _utc_now_iso()
        archer.verified_by = verified_by
        return self.round_record(archer_id)

    def unverified_complete(self) -> List[Archer]:
        return [archer for archer in self.archers if archer.is_complete and not archer.is_verified]

    def round_record(self, archer_id: str) -> Dict[str, Any]:
        """Archive form of one archer's scorecard, keyed ``<bale id>-<archer id>``."""

        card = self.scorecard(archer_id)
        archer = card.archer
        ends = []
        for row in card.rows:
            tens, xs = tens_and_xs(archer.end(row.end_number))
            ends.append(
                {
                    "endNumber": row.end_number,
                    "arrows": row.arrows,
                    "tens": tens,
                    "xs": xs,
                    "endTotal": row.end_total,
                    "runningTotal": row.running_total,
                    "endAverage": row.end_average,
                }
            )
        totals = card.totals
        return {
            "id": f"{self.bale_id}-{archer.archer_id}",
            "baleId": self.bale_id,
            "baleNumber": self.bale_number,
            "archerId": archer.archer_id,
            "archerName": archer.name,
            "school": archer.school,
            "level": archer.level,
            "gender": archer.gender,
            "targetAssignment": archer.target,
            "totalEnds": self.total_ends,
            "arrowsPerEnd": ARROWS_PER_END,
            "ends": ends,
            "totals": {
                "totalScore": totals.total_score,
                "totalArrows": totals.total_arrows,
                "tens": totals.tens,
                "xs": totals.xs,
                "average": totals.average,
                "xPercentage": totals.x_percentage,
                "tenPercentage": totals.ten_percentage,
            },
            "completedAt": self.last_updated,
            "verifiedAt": archer.verified_at,
            "verifiedBy": archer.verified_by,
        }

    def go_to_end(self, end_number: int) -> bool:
        target = max(1, min(end_number, self.total_ends))
        moved = target != self.current_end
        self.current_end = target
        return moved

    def change_end(self, direction: int) -> bool:
        new_end = self.current_end + direction
        if not 1 <= new_end <= self.total_ends:
            return False
        return self.go_to_end(new_end)

    def summary(self, end_number: Optional[int] = None) -> BaleSummary:
        number = self.current_end if end_number is None else end_number
        if not 1 <= number <= self.total_ends:
            raise ValueError(f"End must be between 1 and {self.total_ends}")

        rows: List[ArcherEndRow] = []
        lines = [f"Bale {self.bale_number} - End {number} of {self.total_ends}"]
        lines.append("Tgt Archer              A1  A2  A3  10s X   End Run  Avg")
        for archer in self.archers:
            end = archer.end(number)
            tens, xs = tens_and_xs(end)
            average = end_average(end)
            row = ArcherEndRow(
                archer_id=archer.archer_id,
                name=archer.name,
                target=archer.target,
                arrows=end.to_list(),
                tens=tens,
                xs=xs,
                end_total=end_total(end),
                running_total=running_total(archer, number),
                end_average=average,
                average_tier=average_tier(average),
            )
            rows.append(row)
            arrows = "".join((token or "-").ljust(4) for token in row.arrows)
            lines.append(
                f"{row.target.ljust(4)}{row.name[:19].ljust(20)}{arrows}"
                f"{str(row.tens).ljust(4)}{str(row.xs).ljust(4)}"
                f"{str(row.end_total).ljust(4)}{str(row.running_total).ljust(5)}{row.end_average:.1f}"
            )

        return BaleSummary(
            bale_number=self.bale_number,
            end_number=number,
            total_ends=self.total_ends,
            rows=rows,
            summary_text="\n".join(lines),
        )

    def scorecard(self, archer_id: str) -> Scorecard:
        archer = self.archer(archer_id)
        rows: List[ScorecardRow] = []
        running = 0
        for number in range(1, self.total_ends + 1):
            end = archer.end(number)
            running += end_total(end)
            average = end_average(end)
            rows.append(
                ScorecardRow(
                    end_number=number,
                    arrows=end.to_list(),
                    tiers=[score_tier(token) for token in end.arrows],
                    end_total=end_total(end),
                    running_total=running,
                    end_average=average,
                    average_tier=average_tier(average),
                )
            )
        return Scorecard(archer=archer, rows=rows, totals=overall_totals(archer), complete=archer.is_complete)

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.bale_id,
            "baleNumber": self.bale_number,
            "archers": [archer.to_dict() for archer in self.archers],
            "currentEnd": self.current_end,
            "totalEnds": self.total_ends,
            "arrowsPerEnd": ARROWS_PER_END,
            "status": self.status,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "Bale":
        try:
            bale_number = int(snapshot.get("baleNumber") or 1)
            current_end = int(snapshot.get("currentEnd") or 1)
        except (TypeError, ValueError) as exc:
            raise ValueError("Malformed bale snapshot") from exc

        archers_raw = snapshot.get("archers") or []
        if not isinstance(archers_raw, list):
            raise ValueError("Malformed bale snapshot")
        archers = [Archer.from_dict(item) for item in archers_raw if isinstance(item, Mapping)]

        return cls(
            bale_number,
            archers,
            bale_id=str(snapshot.get("id") or "") or None,
            current_end=current_end,
            created_by=snapshot.get("createdBy"),
            created_at=snapshot.get("createdAt"),
            last_updated=snapshot.get("lastUpdated"),
        )
