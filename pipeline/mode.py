"""Two-state analysis mode machine.

The pipeline runs either in ``TRACKING`` mode (per-person identities,
line crossings and polygon membership) or in ``CROWD`` mode (density
heuristics). The switch is re-evaluated every frame from the crowd
estimator's predicate::

    crowd  <=>  detector_count > crowd_mode_threshold
                or quick_density > high_density_threshold

There is no hysteresis; a frame below both thresholds returns to
tracking immediately.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

import numpy as np

from analytics.crowd_density import CrowdDensityEstimator

logger = logging.getLogger(__name__)


class AnalysisMode(enum.Enum):
    TRACKING = "tracking"
    CROWD = "crowd"


class ModeSwitch:
    """Holds the current analysis mode and logs transitions."""

    def __init__(self, estimator: CrowdDensityEstimator) -> None:
        self.estimator = estimator
        self.mode = AnalysisMode.TRACKING
        self.transitions = 0

    @property
    def in_crowd_mode(self) -> bool:
        return self.mode is AnalysisMode.CROWD

    def evaluate(self, frame: Optional[np.ndarray], detector_count: int) -> AnalysisMode:
        """Re-evaluate the switch predicate for this frame and return the mode."""
        crowded = self.estimator.should_enter_crowd_mode(frame, detector_count)
        mode = AnalysisMode.CROWD if crowded else AnalysisMode.TRACKING
        if mode is not self.mode:
            self.transitions += 1
            logger.info(
                "Analysis mode %s -> %s (detections=%d)", self.mode.value, mode.value, detector_count
            )
            self.mode = mode
        return mode

    def reset(self) -> None:
        self.mode = AnalysisMode.TRACKING
        self.transitions = 0
