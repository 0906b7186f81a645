from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from archery_core import (
    ArcherNotFound,
    Bale,
    ScoringController,
    SessionPersistence,
    StaleInputError,
    end_total,
    score_tier,
)
from archery_core.bale import BaleSummary, Scorecard
from archery_core.scoring import ARROWS_PER_END, TOTAL_ENDS, VALID_TOKENS

app = FastAPI(title="Bale Scoring API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

KEYPAD_ACTIONS = ["next", "back", "clear", "close"]
LOCAL_SESSION = "local"

logger = logging.getLogger(__name__)


class ArcherPayload(BaseModel):
    id: str
    first_name: str = Field(alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    school: str = ""
    level: str = ""
    gender: str = ""
    target_assignment: Optional[str] = Field(default=None, alias="targetAssignment")

    model_config = ConfigDict(populate_by_name=True)


class BaleSetupRequest(BaseModel):
    bale_number: int = Field(default=1, alias="baleNumber", ge=1, le=99)
    archers: List[ArcherPayload] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ArcherModel(BaseModel):
    id: str
    first_name: str = Field(alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    school: str = ""
    level: str = ""
    gender: str = ""
    target_assignment: str = Field(default="", alias="targetAssignment")
    scores: List[List[str]]

    model_config = ConfigDict(populate_by_name=True)


class EndRowModel(BaseModel):
    archer_id: str = Field(alias="archerId")
    name: str
    target: str
    arrows: List[str]
    tens: int
    xs: int
    end_total: int = Field(alias="endTotal")
    running_total: int = Field(alias="runningTotal")
    end_average: float = Field(alias="endAverage")
    average_tier: str = Field(alias="averageTier")

    model_config = ConfigDict(populate_by_name=True)


class BaleSummaryModel(BaseModel):
    end_number: int = Field(alias="endNumber")
    rows: List[EndRowModel]
    summary: str

    model_config = ConfigDict(populate_by_name=True)


class FocusModel(BaseModel):
    state: str
    archer_id: Optional[str] = Field(default=None, alias="archerId")
    arrow: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class BaleResponse(BaseModel):
    id: str
    bale_number: int = Field(alias="baleNumber")
    current_end: int = Field(alias="currentEnd")
    total_ends: int = Field(alias="totalEnds")
    status: str
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    archers: List[ArcherModel]
    summary: BaleSummaryModel
    focus: FocusModel

    model_config = ConfigDict(populate_by_name=True)


class SessionResponse(BaseModel):
    view: str
    source: str
    bale: Optional[BaleResponse] = None


class ViewRequest(BaseModel):
    view: Literal["setup", "scoring", "scorecard"]


class ArrowWriteRequest(BaseModel):
    token: str = ""


class ArrowWriteResponse(BaseModel):
    archer_id: str = Field(alias="archerId")
    end_number: int = Field(alias="endNumber")
    arrows: List[str]
    end_total: int = Field(alias="endTotal")

    model_config = ConfigDict(populate_by_name=True)


class FocusRequest(BaseModel):
    archer_id: str = Field(alias="archerId")
    arrow: int = Field(ge=1, le=ARROWS_PER_END)

    model_config = ConfigDict(populate_by_name=True)


class KeypadRequest(BaseModel):
    value: Optional[str] = None
    action: Optional[Literal["next", "back", "clear", "close"]] = None


class EndChangeRequest(BaseModel):
    direction: Optional[int] = Field(default=None, ge=-1, le=1)
    end: Optional[int] = Field(default=None, ge=1, le=TOTAL_ENDS)


class ScorecardRowModel(BaseModel):
    end_number: int = Field(alias="endNumber")
    arrows: List[str]
    tiers: List[str]
    end_total: int = Field(alias="endTotal")
    running_total: int = Field(alias="runningTotal")
    end_average: float = Field(alias="endAverage")
    average_tier: str = Field(alias="averageTier")

    model_config = ConfigDict(populate_by_name=True)


class ScorecardTotalsModel(BaseModel):
    total_score: int = Field(alias="totalScore")
    total_arrows: int = Field(alias="totalArrows")
    tens: int
    xs: int
    average: float
    x_percentage: float = Field(alias="xPercentage")
    ten_percentage: float = Field(alias="tenPercentage")

    model_config = ConfigDict(populate_by_name=True)


class ScorecardResponse(BaseModel):
    archer: ArcherModel
    rows: List[ScorecardRowModel]
    totals: ScorecardTotalsModel
    complete: bool
    verified_at: Optional[str] = Field(default=None, alias="verifiedAt")
    verified_by: Optional[str] = Field(default=None, alias="verifiedBy")

    model_config = ConfigDict(populate_by_name=True)


class RoundEndModel(BaseModel):
    end_number: int = Field(alias="endNumber")
    arrows: List[str]
    tens: int
    xs: int
    end_total: int = Field(alias="endTotal")
    running_total: int = Field(alias="runningTotal")
    end_average: float = Field(alias="endAverage")

    model_config = ConfigDict(populate_by_name=True)


class CompletedRoundModel(BaseModel):
    id: str
    bale_id: str = Field(alias="baleId")
    bale_number: int = Field(alias="baleNumber")
    archer_id: str = Field(alias="archerId")
    archer_name: str = Field(alias="archerName")
    school: str = ""
    level: str = ""
    gender: str = ""
    target_assignment: str = Field(default="", alias="targetAssignment")
    total_ends: int = Field(alias="totalEnds")
    arrows_per_end: int = Field(alias="arrowsPerEnd")
    ends: List[RoundEndModel]
    totals: ScorecardTotalsModel
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    verified_at: Optional[str] = Field(default=None, alias="verifiedAt")
    verified_by: Optional[str] = Field(default=None, alias="verifiedBy")

    model_config = ConfigDict(populate_by_name=True)


@lru_cache(maxsize=1)
def persistence() -> SessionPersistence:
    return SessionPersistence()


def collapse_tens_enabled() -> bool:
    return os.getenv("ARCHERY_COLLAPSE_TENS", "").strip().lower() in ("1", "true", "yes")


def max_sessions() -> int:
    try:
        return max(1, int(os.getenv("ARCHERY_MAX_SESSIONS", "128")))
    except ValueError:
        return 128


# Least recently used first; evicted profiles are restored from storage on their next request.
_sessions: "OrderedDict[str, ScoringController]" = OrderedDict()
_sessions_lock = threading.Lock()


def current_user(x_profile_id: str = Header(default="", alias="X-Profile-Id")) -> Optional[str]:
    profile_id = x_profile_id.strip()
    return profile_id or None


def _persist_bale(user_id: Optional[str], snapshot: Dict[str, Any]) -> None:
    try:
        target = persistence().save_bale(user_id, snapshot)
    except Exception:
        logger.exception("Failed to persist bale snapshot")
        return
    logger.debug("Bale %s saved to %s store", snapshot.get("id"), target)


def _persist_view(user_id: Optional[str], view: str, bale_id: Optional[str]) -> None:
    try:
        persistence().save_app_state(user_id, view, bale_id)
    except Exception:
        logger.exception("Failed to persist app state")


def _persist_round(user_id: Optional[str], record: Dict[str, Any]) -> None:
    try:
        persistence().save_completed_round(user_id, record)
    except Exception:
        logger.exception("Failed to archive completed round %s", record.get("id"))


def _remember(user_id: Optional[str], controller: ScoringController) -> None:
    key = user_id or LOCAL_SESSION
    with _sessions_lock:
        _sessions.pop(key, None)
        _sessions[key] = controller
        while len(_sessions) > max_sessions():
            evicted, _ = _sessions.popitem(last=False)
            logger.debug("Evicted in-memory session for %s", evicted)


def _load_controller(user_id: Optional[str]) -> Optional[ScoringController]:
    key = user_id or LOCAL_SESSION
    with _sessions_lock:
        controller = _sessions.get(key)
        if controller is not None:
            _sessions.move_to_end(key)
            return controller

    restored = persistence().restore(user_id)
    if restored.bale is None:
        return None
    with _sessions_lock:
        # Another request may have restored the same profile meanwhile.
        controller = _sessions.get(key)
    if controller is None:
        controller = ScoringController(restored.bale, collapse_tens=collapse_tens_enabled())
        _remember(user_id, controller)
    return controller


@dataclass
class ScoringSession:
    controller: ScoringController
    user_id: Optional[str]
    background_tasks: BackgroundTasks

    @contextmanager
    def locked(self) -> Iterator[ScoringController]:
        """Exclusive use of the bale for one request.

        Snapshots produced inside the block are persisted after this
        request's response is sent.
        """

        def schedule(snapshot: Dict[str, Any]) -> None:
            self.background_tasks.add_task(_persist_bale, self.user_id, snapshot)

        with self.controller.listening(schedule) as controller:
            yield controller


def scoring_session(
    background_tasks: BackgroundTasks,
    user_id: Optional[str] = Depends(current_user),
) -> ScoringSession:
    controller = _load_controller(user_id)
    if controller is None:
        raise HTTPException(status_code=404, detail="No active bale. Set up a bale to start scoring.")
    return ScoringSession(controller=controller, user_id=user_id, background_tasks=background_tasks)


def _archer_model(payload: Dict[str, Any]) -> ArcherModel:
    return ArcherModel(**payload)


def _summary_model(summary: BaleSummary) -> BaleSummaryModel:
    return BaleSummaryModel(
        endNumber=summary.end_number,
        rows=[
            EndRowModel(
                archerId=row.archer_id,
                name=row.name,
                target=row.target,
                arrows=row.arrows,
                tens=row.tens,
                xs=row.xs,
                endTotal=row.end_total,
                runningTotal=row.running_total,
                endAverage=row.end_average,
                averageTier=row.average_tier.value,
            )
            for row in summary.rows
        ],
        summary=summary.summary_text,
    )


def _bale_response(controller: ScoringController) -> BaleResponse:
    bale = controller.bale
    snapshot = bale.to_snapshot()
    slot = controller.focused_slot
    return BaleResponse(
        id=bale.bale_id,
        baleNumber=bale.bale_number,
        currentEnd=bale.current_end,
        totalEnds=bale.total_ends,
        status=bale.status,
        lastUpdated=bale.last_updated,
        archers=[_archer_model(item) for item in snapshot["archers"]],
        summary=_summary_model(bale.summary()),
        focus=FocusModel(
            state=controller.state.value,
            archerId=slot.archer_id if slot else None,
            arrow=slot.arrow_index + 1 if slot else None,
        ),
    )


def _scorecard_response(scorecard: Scorecard) -> ScorecardResponse:
    totals = scorecard.totals
    return ScorecardResponse(
        archer=_archer_model(scorecard.archer.to_dict()),
        rows=[
            ScorecardRowModel(
                endNumber=row.end_number,
                arrows=row.arrows,
                tiers=[tier.value for tier in row.tiers],
                endTotal=row.end_total,
                runningTotal=row.running_total,
                endAverage=row.end_average,
                averageTier=row.average_tier.value,
            )
            for row in scorecard.rows
        ],
        totals=ScorecardTotalsModel(
            totalScore=totals.total_score,
            totalArrows=totals.total_arrows,
            tens=totals.tens,
            xs=totals.xs,
            average=totals.average,
            xPercentage=totals.x_percentage,
            tenPercentage=totals.ten_percentage,
        ),
        complete=scorecard.complete,
        verifiedAt=scorecard.archer.verified_at,
        verifiedBy=scorecard.archer.verified_by,
    )


def _archive_unverified(user_id: Optional[str], background_tasks: BackgroundTasks) -> None:
    previous = _load_controller(user_id)
    if previous is None:
        return
    with previous.lock:
        records = [previous.bale.round_record(archer.archer_id) for archer in previous.bale.unverified_complete()]
    for record in records:
        background_tasks.add_task(_persist_round, user_id, record)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/reference")
def reference() -> dict:
    return {
        "tokens": list(VALID_TOKENS),
        "tiers": {token: score_tier(token).value for token in VALID_TOKENS},
        "keypadActions": KEYPAD_ACTIONS,
        "arrowsPerEnd": ARROWS_PER_END,
        "totalEnds": TOTAL_ENDS,
        "collapseTens": collapse_tens_enabled(),
    }


@app.post("/bales", response_model=BaleResponse, status_code=201)
def start_bale(
    payload: BaleSetupRequest,
    background_tasks: BackgroundTasks,
    user_id: Optional[str] = Depends(current_user),
):
    try:
        bale = Bale.start(
            payload.bale_number,
            [item.model_dump(by_alias=True, exclude_none=True) for item in payload.archers],
            created_by=user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    # Complete scorecards nobody verified are kept in the round history.
    _archive_unverified(user_id, background_tasks)

    persistence().clear_session(user_id)
    controller = ScoringController(bale, collapse_tens=collapse_tens_enabled())
    _remember(user_id, controller)

    background_tasks.add_task(_persist_bale, user_id, bale.to_snapshot())
    background_tasks.add_task(_persist_view, user_id, "scoring", bale.bale_id)
    return _bale_response(controller)


@app.get("/session", response_model=SessionResponse)
def session(user_id: Optional[str] = Depends(current_user)):
    restored = persistence().restore(user_id)
    if restored.bale is None:
        return SessionResponse(view=restored.view, source=restored.source)

    controller = ScoringController(restored.bale, collapse_tens=collapse_tens_enabled())
    _remember(user_id, controller)
    return SessionResponse(view=restored.view, source=restored.source, bale=_bale_response(controller))


@app.put("/session/view", status_code=204)
def record_view(
    payload: ViewRequest,
    background_tasks: BackgroundTasks,
    user_id: Optional[str] = Depends(current_user),
):
    controller = _load_controller(user_id)
    bale_id = controller.bale.bale_id if controller else None
    background_tasks.add_task(_persist_view, user_id, payload.view, bale_id)


@app.get("/bale", response_model=BaleResponse)
def current_bale(session: ScoringSession = Depends(scoring_session)):
    with session.locked() as controller:
        return _bale_response(controller)


@app.put(
    "/bale/archers/{archer_id}/ends/{end_number}/arrows/{arrow}",
    response_model=ArrowWriteResponse,
)
def write_arrow(
    archer_id: str,
    end_number: int,
    arrow: int,
    payload: ArrowWriteRequest,
    session: ScoringSession = Depends(scoring_session),
):
    if not 1 <= arrow <= ARROWS_PER_END:
        raise HTTPException(status_code=400, detail=f"Arrow must be between 1 and {ARROWS_PER_END}")
    with session.locked() as controller:
        try:
            arrows = controller.submit(archer_id, end_number, arrow - 1, payload.token)
        except ArcherNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StaleInputError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        end = controller.bale.archer(archer_id).end(end_number)
        return ArrowWriteResponse(archerId=archer_id, endNumber=end_number, arrows=arrows, endTotal=end_total(end))


@app.post("/bale/focus", response_model=BaleResponse)
def focus(payload: FocusRequest, session: ScoringSession = Depends(scoring_session)):
    with session.locked() as controller:
        try:
            controller.focus(payload.archer_id, payload.arrow - 1)
        except ArcherNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _bale_response(controller)


@app.post("/bale/keypad", response_model=BaleResponse)
def keypad(payload: KeypadRequest, session: ScoringSession = Depends(scoring_session)):
    with session.locked() as controller:
        if payload.value is not None:
            # Invalid keys and keys with no focused cell are dropped silently.
            controller.enter(payload.value)
        elif payload.action == "next":
            controller.next_slot()
        elif payload.action == "back":
            controller.previous_slot()
        elif payload.action == "clear":
            controller.clear()
        elif payload.action == "close":
            controller.close_input()
        else:
            raise HTTPException(status_code=400, detail="Either value or action is required")
        return _bale_response(controller)


@app.post("/bale/close-input", response_model=BaleResponse)
def close_input(session: ScoringSession = Depends(scoring_session)):
    with session.locked() as controller:
        controller.close_input()
        return _bale_response(controller)


@app.post("/bale/end", response_model=BaleResponse)
def change_end(payload: EndChangeRequest, session: ScoringSession = Depends(scoring_session)):
    with session.locked() as controller:
        if payload.end is not None:
            controller.go_to_end(payload.end)
        elif payload.direction:
            controller.change_end(payload.direction)
        else:
            raise HTTPException(status_code=400, detail="Either end or a non-zero direction is required")
        return _bale_response(controller)


@app.get("/bale/archers/{archer_id}/scorecard", response_model=ScorecardResponse)
def scorecard(archer_id: str, session: ScoringSession = Depends(scoring_session)):
    with session.locked() as controller:
        try:
            card = controller.bale.scorecard(archer_id)
        except ArcherNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _scorecard_response(card)


@app.post("/bale/archers/{archer_id}/verify", response_model=CompletedRoundModel)
def verify_scorecard(archer_id: str, session: ScoringSession = Depends(scoring_session)):
    with session.locked() as controller:
        try:
            record = controller.verify(archer_id, verified_by=session.user_id)
        except ArcherNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    session.background_tasks.add_task(_persist_round, session.user_id, record)
    return CompletedRoundModel.model_validate(record)


@app.get("/rounds", response_model=List[CompletedRoundModel])
def completed_rounds(user_id: Optional[str] = Depends(current_user)):
    try:
        rounds = persistence().completed_rounds(user_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return [CompletedRoundModel.model_validate(item) for item in rounds]
