"""Detection value type shared by detectors, the tracker and analytics.

Detectors are external collaborators and may hand back detections in a
few shapes. :func:`coerce_detections` normalises whatever arrives into a
list of :class:`Detection` and silently drops anything malformed, so a
broken detector frame degrades to "no detections" instead of an error.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

BBox = Tuple[float, float, float, float]

UNASSIGNED_TRACK_ID = -1


@dataclass(frozen=True)
class Detection:
    """A person detection in image pixel coordinates (left, top, right, bottom)."""

    left: float
    top: float
    right: float
    bottom: float
    confidence: float
    class_id: int = 0
    track_id: int = UNASSIGNED_TRACK_ID

    @classmethod
    def from_bbox(
        cls,
        bbox: Sequence[float],
        confidence: float,
        class_id: int = 0,
        track_id: int = UNASSIGNED_TRACK_ID,
    ) -> "Detection":
        x1, y1, x2, y2 = bbox
        return cls(float(x1), float(y1), float(x2), float(y2), float(confidence), class_id, track_id)

    @property
    def bbox(self) -> BBox:
        return (self.left, self.top, self.right, self.bottom)

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.left + self.right) / 2.0, (self.top + self.bottom) / 2.0)

    def with_track_id(self, track_id: int) -> "Detection":
        return replace(self, track_id=track_id)


def box_center(bbox: Sequence[float]) -> Tuple[float, float]:
    x1, y1, x2, y2 = bbox
    return ((x1 + x2) / 2.0, (y1 + y2) / 2.0)


def iou(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute intersection over union between two TLBR boxes."""
    ax1, ay1, ax2, ay2 = a
    bx1, by1, bx2, by2 = b
    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter_area = inter_w * inter_h
    area_a = (ax2 - ax1) * (ay2 - ay1)
    area_b = (bx2 - bx1) * (by2 - by1)
    union = area_a + area_b - inter_area
    return inter_area / union if union > 0 else 0.0


def _coerce_one(raw: Any) -> Optional[Detection]:
    if isinstance(raw, Detection):
        det = raw
    elif isinstance(raw, Mapping):
        class_id = raw.get("classId", raw.get("class_id", 0))
        det = Detection(
            float(raw["left"]),
            float(raw["top"]),
            float(raw["right"]),
            float(raw["bottom"]),
            float(raw["confidence"]),
            int(class_id),
        )
    else:
        values = list(raw)
        if len(values) < 5:
            return None
        class_id = int(values[5]) if len(values) > 5 else 0
        det = Detection.from_bbox(values[:4], values[4], class_id)

    numbers = (det.left, det.top, det.right, det.bottom, det.confidence)
    if not all(math.isfinite(v) for v in numbers):
        return None
    if det.right <= det.left or det.bottom <= det.top:
        return None
    confidence = min(1.0, max(0.0, det.confidence))
    if confidence != det.confidence:
        det = replace(det, confidence=confidence)
    return det


def coerce_detections(raw_detections: Optional[Iterable[Any]]) -> List[Detection]:
    """Normalise raw detector output into a list of :class:`Detection`.

    Accepted entries are :class:`Detection` instances, mappings with
    ``left/top/right/bottom/confidence[/classId]`` keys, or sequences
    ``(x1, y1, x2, y2, score[, class_id])``. Malformed entries are skipped.
    """
    if raw_detections is None:
        return []
    try:
        items = list(raw_detections)
    except TypeError:
        logger.debug("Detector output is not iterable: %r", type(raw_detections))
        return []

    detections: List[Detection] = []
    for raw in items:
        try:
            det = _coerce_one(raw)
        except (KeyError, TypeError, ValueError):
            det = None
        if det is None:
            logger.debug("Dropping malformed detection: %r", raw)
            continue
        detections.append(det)
    return detections
