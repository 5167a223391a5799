"""Counting-line crossing detection.

A :class:`LineCounter` keeps a short position history per track and fires
at most one crossing event per track. A crossing is a strict sign change
of the cross product between the line direction and the track centre
across two consecutive samples; landing exactly on the line does not
count.

Direction follows the camera mounting convention rather than the line
orientation: moving down the image (growing ``y``) is an exit, moving up
is an entry.

Usage
-----
```
counter = LineCounter(CountingLine(0, 540, 1920, 540))
direction = counter.check_crossing(track_id, bbox)
if direction is CrossingDirection.ENTRY:
    ...
```

Replacing the line with :meth:`LineCounter.set_line` clears every track's
history, so crossings that were in progress are lost.
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, Iterable, Optional, Sequence, Tuple

from detection.types import box_center
from .shared_state import SharedMap

logger = logging.getLogger(__name__)

POSITION_HISTORY_SIZE = 10

Point = Tuple[float, float]


class CrossingDirection(enum.Enum):
    ENTRY = "entry"
    EXIT = "exit"


@dataclass(frozen=True)
class CountingLine:
    """Counting line endpoints in image pixel coordinates."""

    start_x: float = 0.0
    start_y: float = 540.0
    end_x: float = 1920.0
    end_y: float = 540.0

    def side(self, point: Point) -> float:
        """Signed cross product of ``point`` relative to the line direction."""
        x, y = point
        return (x - self.start_x) * (self.end_y - self.start_y) - (y - self.start_y) * (
            self.end_x - self.start_x
        )

    def is_crossed(self, previous: Point, current: Point) -> bool:
        return self.side(previous) * self.side(current) < 0


@dataclass
class TrackCrossingState:
    track_id: int
    positions: Deque[Point] = field(default_factory=lambda: deque(maxlen=POSITION_HISTORY_SIZE))
    has_crossed: bool = False
    direction: Optional[CrossingDirection] = None


class LineCounter:
    """Detect entries and exits of tracked people across a counting line."""

    def __init__(self, line: Optional[CountingLine] = None) -> None:
        self._line = line or CountingLine()
        self._states: SharedMap[int, TrackCrossingState] = SharedMap()

    @property
    def line(self) -> CountingLine:
        return self._line

    def set_line(self, line: CountingLine) -> None:
        """Replace the counting line and discard all per-track history."""
        self._line = line
        self.reset()

    def copy(self) -> "LineCounter":
        """Independent counter with the same line and per-track history."""
        clone = LineCounter(self._line)
        for track_id, state in self._states.items():
            positions = deque(state.positions, maxlen=POSITION_HISTORY_SIZE)
            clone._states.set(track_id, replace(state, positions=positions))
        return clone

    def state(self, track_id: int) -> Optional[TrackCrossingState]:
        return self._states.get(track_id)

    def check_crossing(self, track_id: int, bbox: Sequence[float]) -> Optional[CrossingDirection]:
        """Record the box centre for ``track_id`` and return a crossing, if any.

        Returns ``None`` when fewer than two positions are known, when the
        track already crossed once, or when the last step did not cross.
        """
        center = box_center(bbox)
        state = self._states.setdefault(track_id, lambda: TrackCrossingState(track_id))
        state.positions.append(center)

        if len(state.positions) < 2 or state.has_crossed:
            return None

        previous, current = state.positions[-2], state.positions[-1]
        if not self._line.is_crossed(previous, current):
            return None

        direction = CrossingDirection.EXIT if current[1] > previous[1] else CrossingDirection.ENTRY
        state.has_crossed = True
        state.direction = direction
        logger.info("Track %d crossed the counting line (%s)", track_id, direction.value)
        return direction

    def prune(self, active_track_ids: Iterable[int]) -> None:
        """Forget tracks that are no longer live."""
        self._states.retain(active_track_ids)

    def reset(self) -> None:
        self._states.clear()
