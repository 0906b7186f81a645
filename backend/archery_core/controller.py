"""Keypad focus and score entry for the active bale.

The controller is the only owner of "which cell has the keypad". At most one
slot is focused at a time; changing end or closing the keypad drops focus so
a late keypress cannot land in an end the scorer is no longer looking at.
"""

from __future__ import annotations

import enum
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from .bale import Bale
from .scoring import ARROWS_PER_END, format_score, is_valid_score_input

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Dict[str, Any]], None]


class FocusState(str, enum.Enum):
    UNFOCUSED = "unfocused"
    FOCUSED = "focused"


class StaleInputError(ValueError):
    """A write addressed an end other than the one being scored."""

    def __init__(self, end_number: int, current_end: int) -> None:
        super().__init__(f"End {end_number} is not the current end ({current_end})")
        self.end_number = end_number
        self.current_end = current_end


@dataclass(frozen=True)
class InputSlot:
    archer_id: str
    arrow_index: int


class ScoringController:
    def __init__(
        self,
        bale: Bale,
        on_change: Optional[ChangeListener] = None,
        collapse_tens: bool = False,
    ) -> None:
        self.bale = bale
        self.on_change = on_change
        self.collapse_tens = collapse_tens
        self._slot: Optional[InputSlot] = None
        self.lock = threading.RLock()

    @contextmanager
    def listening(self, listener: Optional[ChangeListener]) -> Iterator["ScoringController"]:
        """Hold the controller exclusively and route its changes to ``listener``.

        Mutations made inside the block are applied in order and reported to
        ``listener`` only; the previous listener is restored on exit.
        """

        with self.lock:
            previous = self.on_change
            self.on_change = listener
            try:
                yield self
            finally:
                self.on_change = previous

    @property
    def state(self) -> FocusState:
        return FocusState.FOCUSED if self._slot else FocusState.UNFOCUSED

    @property
    def focused_slot(self) -> Optional[InputSlot]:
        return self._slot

    def _slots(self) -> List[InputSlot]:
        return [
            InputSlot(archer.archer_id, index)
            for archer in self.bale.archers
            for index in range(ARROWS_PER_END)
        ]

    def focus(self, archer_id: str, arrow_index: int) -> InputSlot:
        self.bale.archer(archer_id)
        if not 0 <= arrow_index < ARROWS_PER_END:
            raise ValueError(f"Arrow index must be between 1 and {ARROWS_PER_END}")
        self._slot = InputSlot(archer_id, arrow_index)
        return self._slot

    def close_input(self) -> None:
        self._slot = None

    def next_slot(self) -> Optional[InputSlot]:
        return self._step(1)

    def previous_slot(self) -> Optional[InputSlot]:
        return self._step(-1)

    def _step(self, offset: int) -> Optional[InputSlot]:
        if self._slot is None:
            return None
        slots = self._slots()
        position = slots.index(self._slot) + offset
        # Stay put at either edge of the grid.
        if 0 <= position < len(slots):
            self._slot = slots[position]
        return self._slot

    def enter(self, token: str) -> Optional[InputSlot]:
        """Write a keypad token into the focused slot and advance.

        Invalid tokens and keypresses with nothing focused are dropped.
        Returns the slot that was written.
        """

        if self._slot is None:
            logger.debug("Ignoring keypad input %r with no focused slot", token)
            return None
        if not is_valid_score_input(token) or not str(token).strip():
            logger.debug("Rejected keypad input %r", token)
            return None

        written = self._slot
        self._write(written, format_score(token, collapse_tens=self.collapse_tens))
        self.next_slot()
        return written

    def clear(self) -> Optional[InputSlot]:
        if self._slot is None:
            return None
        self._write(self._slot, "")
        return self._slot

    def submit(self, archer_id: str, end_number: int, arrow_index: int, token: str) -> List[str]:
        if end_number != self.bale.current_end:
            raise StaleInputError(end_number, self.bale.current_end)
        if not is_valid_score_input(token):
            raise ValueError(f"Invalid score '{token}'")
        self._write(InputSlot(archer_id, arrow_index), format_score(token, collapse_tens=self.collapse_tens))
        return self.bale.archer(archer_id).end(end_number).to_list()

    def verify(self, archer_id: str, verified_by: Optional[str] = None) -> Dict[str, Any]:
        record = self.bale.verify(archer_id, verified_by)
        self._notify()
        return record

    def change_end(self, direction: int) -> bool:
        self.close_input()
        moved = self.bale.change_end(direction)
        if moved:
            self._notify()
        return moved

    def go_to_end(self, end_number: int) -> bool:
        self.close_input()
        moved = self.bale.go_to_end(end_number)
        if moved:
            self._notify()
        return moved

    def _write(self, slot: InputSlot, token: str) -> None:
        self.bale.set_arrow(slot.archer_id, self.bale.current_end, slot.arrow_index, token)
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.bale.to_snapshot())
