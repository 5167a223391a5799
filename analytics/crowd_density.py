"""Crowd density estimation for scenes too dense to track individually.

This module defines a :class:`CrowdDensityEstimator` that decides when the
pipeline should stop trusting per-person tracking and, while in crowd
mode, estimates the number of people from image statistics instead.

Four independent signals are computed over the frame and fused with
fixed weights:

* edge density (Sobel gradient magnitude above a threshold),
* texture density (standard deviation over 16x16 grey windows),
* motion density (sampled frame difference, smoothed over 10 frames),
* foreground ratio (pixels far from the modal grey level).

The fused density picks a calibration tier that fixes how many pixels a
person occupies, and the count is corrected for occlusion at high
density. The estimate never goes below the detector's own count.

All constants were calibrated empirically for an overhead retail camera
and are kept as they are until new calibration data is available.
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

CROWD_MODE_THRESHOLD = 20
HIGH_DENSITY_THRESHOLD = 0.7

GRID_SIZE = 32
MIN_EDGE_THRESHOLD = 50
TEXTURE_WINDOW_SIZE = 16
QUICK_SAMPLE_STRIDE = 10
MOTION_SAMPLE_STRIDE = 5
MOTION_THRESHOLD = 30
MOTION_HISTORY_SIZE = 10
FIRST_FRAME_MOTION = 0.5
FOREGROUND_SAMPLE_STRIDE = 5
FOREGROUND_THRESHOLD = 30
DARK_PIXEL_LEVEL = 100

EDGE_SCALE = 10.0
TEXTURE_SCALE = 2.0
MOTION_SCALE = 5.0
FOREGROUND_SCALE = 3.0

# edge, texture, motion, foreground
SIGNAL_WEIGHTS = (0.30, 0.25, 0.20, 0.25)

PIXELS_PER_PERSON_SPARSE = 5000.0
PIXELS_PER_PERSON_DENSE = 2500.0
PIXELS_PER_PERSON_PACKED = 1500.0

MIN_CONFIDENCE = 0.3
MAX_CONFIDENCE = 0.9


class DensityLevel(enum.Enum):
    EMPTY = "empty"
    SPARSE = "sparse"
    MODERATE = "moderate"
    DENSE = "dense"
    PACKED = "packed"

    @classmethod
    def from_count(cls, count: int) -> "DensityLevel":
        """Step function of the person count with breakpoints 0, 10, 30, 50."""
        if count <= 0:
            return cls.EMPTY
        if count <= 10:
            return cls.SPARSE
        if count <= 30:
            return cls.MODERATE
        if count <= 50:
            return cls.DENSE
        return cls.PACKED


@dataclass(frozen=True)
class DensitySignals:
    edge: float
    texture: float
    motion: float
    foreground: float

    @property
    def combined(self) -> float:
        w_edge, w_texture, w_motion, w_foreground = SIGNAL_WEIGHTS
        return (
            self.edge * w_edge
            + self.texture * w_texture
            + self.motion * w_motion
            + self.foreground * w_foreground
        )

    def as_array(self) -> np.ndarray:
        return np.array([self.edge, self.texture, self.motion, self.foreground], dtype=float)


@dataclass(frozen=True, eq=False)
class CrowdAnalysis:
    estimated_count: int
    density_level: DensityLevel
    density_map: np.ndarray
    confidence: float
    in_crowd_mode: bool
    cell_size: Tuple[float, float] = (0.0, 0.0)
    signals: Optional[DensitySignals] = None


def to_gray(frame: np.ndarray) -> np.ndarray:
    """Integer luma ``0.299 R + 0.587 G + 0.114 B`` of a BGR (or grey) frame."""
    if frame.ndim == 2:
        return frame.astype(np.int32)
    bgr = frame[..., :3].astype(np.float64)
    gray = 0.299 * bgr[..., 2] + 0.587 * bgr[..., 1] + 0.114 * bgr[..., 0]
    return gray.astype(np.int32)


def _as_color(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 2:
        return np.repeat(frame[..., None], 3, axis=2).astype(np.int32)
    return frame[..., :3].astype(np.int32)


def color_difference(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Sum of absolute per-channel differences of two colour arrays."""
    return np.abs(a - b).sum(axis=-1)


def correction_factor(density: float) -> float:
    if density < 0.2:
        return 1.2
    if density < 0.5:
        return 1.0
    if density < 0.7:
        return 0.9
    return 0.85


def pixels_per_person(density: float) -> float:
    if density < 0.3:
        return PIXELS_PER_PERSON_SPARSE
    if density < 0.6:
        return PIXELS_PER_PERSON_DENSE
    return PIXELS_PER_PERSON_PACKED


def signal_confidence(signals: DensitySignals) -> float:
    """``1 - stddev / mean`` of the raw signals, clamped to [0.3, 0.9]."""
    values = signals.as_array()
    mean = float(values.mean())
    if mean <= 0:
        return MIN_CONFIDENCE
    spread = min(float(values.std()) / mean, 1.0)
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, 1.0 - spread))


class CrowdDensityEstimator:
    """Switch to, and run, density-based counting for crowded frames."""

    def __init__(
        self,
        crowd_mode_threshold: int = CROWD_MODE_THRESHOLD,
        high_density_threshold: float = HIGH_DENSITY_THRESHOLD,
        grid_size: int = GRID_SIZE,
    ) -> None:
        self.crowd_mode_threshold = crowd_mode_threshold
        self.high_density_threshold = high_density_threshold
        self.grid_size = grid_size
        self._previous_frame: Optional[np.ndarray] = None
        self._motion_history: Deque[float] = deque(maxlen=MOTION_HISTORY_SIZE)

    def reset(self) -> None:
        self._previous_frame = None
        self._motion_history.clear()

    # ------------------------------------------------------------------
    def should_enter_crowd_mode(self, frame: Optional[np.ndarray], detector_count: int) -> bool:
        """Cheap mode-switch predicate; the frame is only sampled if needed."""
        if detector_count > self.crowd_mode_threshold:
            return True
        if frame is None:
            return False
        return self.quick_density(frame) > self.high_density_threshold

    def analyze(
        self,
        frame: Optional[np.ndarray],
        detector_count: int = 0,
        crowd_mode: Optional[bool] = None,
    ) -> CrowdAnalysis:
        """Estimate the crowd in ``frame``.

        Parameters
        ----------
        frame : ndarray or None
            BGR (or greyscale) frame.
        detector_count : int
            Number of people the detector found in the frame.
        crowd_mode : bool, optional
            Result of :meth:`should_enter_crowd_mode` when the caller has
            already evaluated it.
        """
        if crowd_mode is None:
            crowd_mode = self.should_enter_crowd_mode(frame, detector_count)

        empty_map = np.zeros((self.grid_size, self.grid_size), dtype=np.float32)
        if not crowd_mode:
            return CrowdAnalysis(
                estimated_count=detector_count,
                density_level=DensityLevel.from_count(detector_count),
                density_map=empty_map,
                confidence=MAX_CONFIDENCE,
                in_crowd_mode=False,
            )

        if frame is None or frame.size == 0:
            return CrowdAnalysis(
                estimated_count=detector_count,
                density_level=DensityLevel.from_count(detector_count),
                density_map=empty_map,
                confidence=MIN_CONFIDENCE,
                in_crowd_mode=True,
            )

        gray = to_gray(frame)
        signals = DensitySignals(
            edge=self.edge_density(gray),
            texture=self.texture_density(gray),
            motion=self.motion_density(frame),
            foreground=self.foreground_ratio(gray),
        )
        density = signals.combined
        height, width = gray.shape
        estimate = self.count_from_density(density, width * height)
        final_count = max(estimate, detector_count)
        density_map, cell_size = self.density_map(gray)

        logger.debug(
            "Crowd analysis: density=%.3f estimate=%d detector=%d", density, estimate, detector_count
        )
        return CrowdAnalysis(
            estimated_count=final_count,
            density_level=DensityLevel.from_count(final_count),
            density_map=density_map,
            confidence=signal_confidence(signals),
            in_crowd_mode=True,
            cell_size=cell_size,
            signals=signals,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def quick_density(frame: np.ndarray) -> float:
        """Fraction of coarse samples that differ strongly from their left and top samples."""
        samples = _as_color(frame[::QUICK_SAMPLE_STRIDE, ::QUICK_SAMPLE_STRIDE])
        total = samples.shape[0] * samples.shape[1]
        if total == 0:
            return 0.0
        current = samples[1:, 1:]
        diff = color_difference(current, samples[1:, :-1]) + color_difference(current, samples[:-1, 1:])
        edges = int(np.count_nonzero(diff > MIN_EDGE_THRESHOLD * 2))
        return edges / total

    @staticmethod
    def edge_density(gray: np.ndarray) -> float:
        height, width = gray.shape
        if height < 3 or width < 3:
            return 0.0
        image = gray.astype(np.float32)
        gx = cv2.Sobel(image, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(image, cv2.CV_32F, 0, 1, ksize=3)
        magnitude = cv2.magnitude(gx, gy)[1:-1, 1:-1]
        edge_count = int(np.count_nonzero(magnitude > MIN_EDGE_THRESHOLD))
        return edge_count / float(width * height) * EDGE_SCALE

    @staticmethod
    def texture_density(gray: np.ndarray) -> float:
        win = TEXTURE_WINDOW_SIZE
        height, width = gray.shape
        rows = len(range(0, height - win, win))
        cols = len(range(0, width - win, win))
        if rows == 0 or cols == 0:
            return 0.0
        windows = gray[: rows * win, : cols * win].astype(np.float64).reshape(rows, win, cols, win)
        complexity = windows.std(axis=(1, 3)) / 128.0
        return float(complexity.mean()) * TEXTURE_SCALE

    def motion_density(self, frame: np.ndarray) -> float:
        samples = _as_color(frame[::MOTION_SAMPLE_STRIDE, ::MOTION_SAMPLE_STRIDE])
        previous = self._previous_frame
        self._previous_frame = samples
        if previous is None or previous.shape != samples.shape:
            return FIRST_FRAME_MOTION

        moving = np.count_nonzero(color_difference(samples, previous) > MOTION_THRESHOLD)
        self._motion_history.append(moving / float(samples.shape[0] * samples.shape[1]))
        return float(np.mean(self._motion_history)) * MOTION_SCALE

    @staticmethod
    def foreground_ratio(gray: np.ndarray) -> float:
        samples = gray[::FOREGROUND_SAMPLE_STRIDE, ::FOREGROUND_SAMPLE_STRIDE]
        if samples.size == 0:
            return 0.0
        histogram = np.bincount(np.clip(samples, 0, 255).ravel(), minlength=256)
        background = int(np.argmax(histogram))
        foreground = np.count_nonzero(np.abs(samples - background) > FOREGROUND_THRESHOLD)
        return foreground / float(samples.size) * FOREGROUND_SCALE

    def density_map(self, gray: np.ndarray) -> Tuple[np.ndarray, Tuple[float, float]]:
        """Dark-pixel fraction per grid cell and the cell size in pixels."""
        grid = self.grid_size
        height, width = gray.shape
        cell_w = width // grid
        cell_h = height // grid
        if cell_w == 0 or cell_h == 0:
            return np.zeros((grid, grid), dtype=np.float32), (0.0, 0.0)
        cells = gray[: grid * cell_h, : grid * cell_w].reshape(grid, cell_h, grid, cell_w)
        density = (cells < DARK_PIXEL_LEVEL).mean(axis=(1, 3)).astype(np.float32)
        return density, (float(cell_w), float(cell_h))

    @staticmethod
    def count_from_density(density: float, frame_area: int) -> int:
        base_count = int(frame_area * density / pixels_per_person(density))
        corrected = int(base_count * correction_factor(density))
        return max(1, corrected)
