"""Default person detector backed by OpenCV's HOG pedestrian model.

The analytics pipeline treats the detector as a black box that returns
person boxes with a confidence per frame. This HOG/SVM detector needs no
model weights, which makes it a convenient default for development and
for cameras where a neural detector is not deployed. Any object with a
``detect(frame) -> list[Detection]`` method can replace it.
"""

from __future__ import annotations

from typing import List, Sequence

import cv2
import numpy as np

from .registry import register_detector
from .types import Detection, iou

PERSON_CLASS = 0
CONFIDENCE_THRESHOLD = 0.45
IOU_THRESHOLD = 0.5


def non_max_suppression(detections: Sequence[Detection], iou_threshold: float = IOU_THRESHOLD) -> List[Detection]:
    """Keep the most confident box among any group overlapping above ``iou_threshold``."""
    selected: List[Detection] = []
    for det in sorted(detections, key=lambda d: d.confidence, reverse=True):
        if all(iou(det.bbox, kept.bbox) <= iou_threshold for kept in selected):
            selected.append(det)
    return selected


@register_detector("hog")
class PersonDetector:
    """Detect upright people with a HOG descriptor and linear SVM.

    Parameters
    ----------
    confidence_threshold : float
        Detections scoring below this are discarded.
    score_scale : float
        SVM margins are divided by this value and clipped to [0, 1] to
        obtain a confidence.
    iou_threshold : float
        Overlap above which boxes are merged by non-maximum suppression.
    """

    def __init__(
        self,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        score_scale: float = 1.0,
        iou_threshold: float = IOU_THRESHOLD,
    ) -> None:
        self.confidence_threshold = confidence_threshold
        self.score_scale = score_scale
        self.iou_threshold = iou_threshold
        self.hog = cv2.HOGDescriptor()
        self.hog.setSVMDetector(cv2.HOGDescriptor_getDefaultPeopleDetector())

    def detect(self, frame: np.ndarray) -> List[Detection]:
        """Return person detections for a BGR frame."""
        rects, weights = self.hog.detectMultiScale(
            frame,
            winStride=(8, 8),
            padding=(16, 16),
            scale=1.05,
        )
        height, width = frame.shape[:2]
        detections: List[Detection] = []
        for (x, y, w, h), weight in zip(rects, np.ravel(weights)):
            confidence = float(np.clip(weight / self.score_scale, 0.0, 1.0))
            if confidence < self.confidence_threshold:
                continue
            left = max(0.0, float(x))
            top = max(0.0, float(y))
            right = min(float(width), float(x + w))
            bottom = min(float(height), float(y + h))
            detections.append(Detection(left, top, right, bottom, confidence, PERSON_CLASS))
        return non_max_suppression(detections, self.iou_threshold)


@register_detector("none")
class NullDetector:
    """Detector that never finds anyone; useful with externally supplied detections."""

    def detect(self, frame: np.ndarray) -> List[Detection]:
        return []
