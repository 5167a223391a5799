from __future__ import annotations

import math

import numpy as np
import pytest

from detection import Detection, NullDetector, PersonDetector, coerce_detections, non_max_suppression
from detection.registry import available_detectors, build_detector, register_detector


def test_person_detector_registry_default() -> None:
    detector = build_detector("hog", confidence_threshold=0.3)
    assert isinstance(detector, PersonDetector)
    assert detector.confidence_threshold == 0.3
    assert hasattr(detector, "detect")


def test_registry_lookup_is_case_insensitive() -> None:
    assert isinstance(build_detector("NONE"), NullDetector)
    assert {"hog", "none"} <= set(available_detectors())


def test_unknown_backend_raises() -> None:
    with pytest.raises(KeyError):
        build_detector("yolo-nas")


def test_duplicate_registration_is_rejected() -> None:
    with pytest.raises(ValueError):
        register_detector("hog")(NullDetector)


def test_hog_detector_finds_nobody_in_blank_frame() -> None:
    detector = build_detector("hog")
    assert detector.detect(np.zeros((240, 320, 3), dtype=np.uint8)) == []


def test_coerce_accepts_all_supported_shapes() -> None:
    raw = [
        Detection(0, 0, 10, 20, 0.9),
        {"left": 5, "top": 5, "right": 25, "bottom": 45, "confidence": 0.7, "classId": 2},
        (1, 2, 11, 22, 0.6),
        np.array([3.0, 4.0, 13.0, 24.0, 0.5, 1.0]),
    ]
    detections = coerce_detections(raw)
    assert len(detections) == 4
    assert detections[1].class_id == 2
    assert detections[2].bbox == (1.0, 2.0, 11.0, 22.0)
    assert detections[3].class_id == 1


def test_coerce_drops_malformed_entries_and_clamps_confidence() -> None:
    raw = [
        {"left": 0, "top": 0, "right": 10},
        (0, 0, 10),
        (10, 0, 0, 10, 0.9),
        (0, 0, 10, math.nan, 0.9),
        None,
        (0, 0, 10, 10, 1.7),
    ]
    detections = coerce_detections(raw)
    assert len(detections) == 1
    assert detections[0].confidence == 1.0


def test_coerce_tolerates_missing_or_non_iterable_output() -> None:
    assert coerce_detections(None) == []
    assert coerce_detections(42) == []


def test_non_max_suppression_keeps_most_confident_box() -> None:
    strong = Detection(0, 0, 100, 200, 0.9)
    weak = Detection(5, 5, 105, 205, 0.6)
    apart = Detection(300, 0, 400, 200, 0.5)
    assert non_max_suppression([weak, apart, strong]) == [strong, apart]


def test_detection_geometry() -> None:
    det = Detection.from_bbox((10, 20, 50, 100), 0.8)
    assert det.width == 40
    assert det.height == 80
    assert det.center == (30.0, 60.0)
    assert det.with_track_id(7).track_id == 7
    assert det.track_id == -1
