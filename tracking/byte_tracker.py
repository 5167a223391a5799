"""Two-tier IoU tracker in the style of ByteTrack.

Each frame, live tracks are predicted forward with :class:`MotionModel`
and matched against high-confidence detections first. Tracks left over
get a second chance against the low-confidence detections, which
recovers people who are briefly occluded or poorly detected. Unmatched
high-confidence detections start new tracks; tracks that go unmatched
for more than ``track_buffer`` frames are dropped for good.

Association defaults to a greedy matcher: candidate pairs below the cost
threshold are visited in ascending cost order and accepted when neither
side is taken yet. The result is deterministic but not globally optimal.
A Hungarian matcher (``assignment="hungarian"``) is available for
deployments that prefer optimal pairing.
"""

from __future__ import annotations

import copy
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Sequence, Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment

from detection.types import BBox, Detection, iou
from .motion import MotionModel

logger = logging.getLogger(__name__)

TRACK_HISTORY_SIZE = 30

ASSIGNMENT_STRATEGIES = ("greedy", "hungarian")


class TrackState(enum.Enum):
    NEW = "new"
    TRACKED = "tracked"
    LOST = "lost"
    REMOVED = "removed"


@dataclass
class Track:
    track_id: int
    bbox: BBox
    confidence: float
    motion: MotionModel
    class_id: int = 0
    age: int = 0
    time_since_update: int = 0
    removed: bool = False
    history: Deque[BBox] = field(default_factory=lambda: deque(maxlen=TRACK_HISTORY_SIZE))

    @property
    def state(self) -> TrackState:
        if self.removed:
            return TrackState.REMOVED
        if self.time_since_update > 0:
            return TrackState.LOST
        if self.age == 0:
            return TrackState.NEW
        return TrackState.TRACKED

    def to_detection(self) -> Detection:
        return Detection.from_bbox(self.bbox, self.confidence, self.class_id, self.track_id)


def cost_matrix(tracks: Sequence[Track], detections: Sequence[Detection]) -> np.ndarray:
    """Return the ``1 - IoU`` cost between every track and detection."""
    costs = np.ones((len(tracks), len(detections)), dtype=float)
    for t_idx, track in enumerate(tracks):
        for d_idx, det in enumerate(detections):
            costs[t_idx, d_idx] = 1.0 - iou(track.bbox, det.bbox)
    return costs


def greedy_assignment(
    costs: np.ndarray, threshold: float
) -> Tuple[List[Tuple[int, int]], List[int], List[int]]:
    """Greedily pair rows and columns whose cost is below ``threshold``.

    Candidates are visited in ascending cost; ties keep row-major order,
    so the first eligible pair wins.
    """
    n_rows, n_cols = costs.shape
    rows, cols = np.nonzero(costs < threshold)
    order = np.argsort(costs[rows, cols], kind="stable")

    matches: List[Tuple[int, int]] = []
    used_rows: set[int] = set()
    used_cols: set[int] = set()
    for idx in order:
        r, c = int(rows[idx]), int(cols[idx])
        if r in used_rows or c in used_cols:
            continue
        matches.append((r, c))
        used_rows.add(r)
        used_cols.add(c)

    unmatched_rows = [r for r in range(n_rows) if r not in used_rows]
    unmatched_cols = [c for c in range(n_cols) if c not in used_cols]
    return matches, unmatched_rows, unmatched_cols


def hungarian_assignment(
    costs: np.ndarray, threshold: float
) -> Tuple[List[Tuple[int, int]], List[int], List[int]]:
    """Globally optimal pairing, discarding pairs at or above ``threshold``."""
    n_rows, n_cols = costs.shape
    row_idx, col_idx = linear_sum_assignment(costs)
    matches = [
        (int(r), int(c)) for r, c in zip(row_idx, col_idx) if costs[r, c] < threshold
    ]
    matched_rows = {r for r, _ in matches}
    matched_cols = {c for _, c in matches}
    unmatched_rows = [r for r in range(n_rows) if r not in matched_rows]
    unmatched_cols = [c for c in range(n_cols) if c not in matched_cols]
    return matches, unmatched_rows, unmatched_cols


class ByteTracker:
    """Assigns persistent ids to per-frame person detections."""

    def __init__(
        self,
        track_thresh: float = 0.5,
        match_thresh: float = 0.8,
        track_buffer: int = 30,
        assignment: str = "greedy",
    ) -> None:
        if assignment not in ASSIGNMENT_STRATEGIES:
            raise ValueError(f"Unknown assignment strategy '{assignment}'")
        self.track_thresh = track_thresh
        self.match_thresh = match_thresh
        self.track_buffer = track_buffer
        self.assignment = assignment

        self._tracks: Dict[int, Track] = {}
        self._next_track_id = 1
        self.frame_id = 0

    # ------------------------------------------------------------------
    @property
    def tracks(self) -> List[Track]:
        return list(self._tracks.values())

    @property
    def next_track_id(self) -> int:
        return self._next_track_id

    def copy(self) -> "ByteTracker":
        """Deep copy of the tracker; updating it leaves this one untouched."""
        return copy.deepcopy(self)

    def reset(self) -> None:
        """Drop every track. Ids keep counting up so none is ever reused."""
        self._tracks.clear()
        self.frame_id = 0

    # ------------------------------------------------------------------
    def update(self, detections: Sequence[Detection]) -> List[Detection]:
        """Advance the tracker by one frame.

        Parameters
        ----------
        detections:
            Detections of the current frame. An empty sequence is valid
            and simply ages every track.

        Returns
        -------
        list of Detection
            One entry per live track (including lost ones still inside
            the buffer), annotated with its track id.
        """
        self.frame_id += 1

        # Step 1: predict existing tracks forward.
        for track in self._tracks.values():
            track.bbox = track.motion.predict()
            track.time_since_update += 1

        # Step 2: split detections by confidence.
        high = [det for det in detections if det.confidence >= self.track_thresh]
        low = [det for det in detections if det.confidence < self.track_thresh]

        # Step 3: first association against high-confidence detections.
        tracks = list(self._tracks.values())
        matches, unmatched_tracks, unmatched_high = self._associate(tracks, high)
        for t_idx, d_idx in matches:
            self._apply_match(tracks[t_idx], high[d_idx])

        # Step 4: second association of leftovers against low-confidence detections.
        remaining = [tracks[idx] for idx in unmatched_tracks]
        if remaining and low:
            recovered, _, _ = self._associate(remaining, low)
            for t_idx, d_idx in recovered:
                self._apply_match(remaining[t_idx], low[d_idx])

        # Step 5: start new tracks from unmatched high-confidence detections.
        for d_idx in unmatched_high:
            self._start_track(high[d_idx])

        # Step 6: drop tracks that have been lost for too long.
        for track_id in [tid for tid, t in self._tracks.items() if t.time_since_update > self.track_buffer]:
            track = self._tracks.pop(track_id)
            track.removed = True
            logger.debug("Track %d removed after %d frames", track_id, track.time_since_update)

        return [track.to_detection() for track in self._tracks.values()]

    # ------------------------------------------------------------------
    def _associate(
        self, tracks: Sequence[Track], detections: Sequence[Detection]
    ) -> Tuple[List[Tuple[int, int]], List[int], List[int]]:
        if not tracks or not detections:
            return [], list(range(len(tracks))), list(range(len(detections)))
        costs = cost_matrix(tracks, detections)
        if self.assignment == "hungarian":
            return hungarian_assignment(costs, self.match_thresh)
        return greedy_assignment(costs, self.match_thresh)

    @staticmethod
    def _apply_match(track: Track, det: Detection) -> None:
        track.bbox = det.bbox
        track.confidence = det.confidence
        track.class_id = det.class_id
        track.motion.correct(det.bbox)
        track.time_since_update = 0
        track.age += 1
        track.history.append(det.bbox)

    def _start_track(self, det: Detection) -> Track:
        track = Track(
            track_id=self._next_track_id,
            bbox=det.bbox,
            confidence=det.confidence,
            motion=MotionModel(det.bbox),
            class_id=det.class_id,
        )
        track.history.append(det.bbox)
        self._tracks[track.track_id] = track
        self._next_track_id += 1
        logger.debug("Track %d created", track.track_id)
        return track
