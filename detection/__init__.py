"""Detection package.

Person detection is an external collaborator of the analytics pipeline.
This package holds the :class:`Detection` value type, the coercion of raw
detector output, a name-keyed backend registry and the default HOG
person detector.
"""

from .types import Detection, coerce_detections, iou
from .registry import build_detector, register_detector, available_detectors
from .person_detector import NullDetector, PersonDetector, non_max_suppression

__all__ = [
    "Detection",
    "NullDetector",
    "PersonDetector",
    "available_detectors",
    "build_detector",
    "coerce_detections",
    "iou",
    "non_max_suppression",
    "register_detector",
]
