"""Velocity-smoothing motion model for tracked boxes.

This is not a Kalman filter: no covariance is propagated and measurements
are trusted outright. Prediction advances the box centre by the current
velocity estimate. Correction snaps the centre and size to the measured
box and blends the velocity exponentially::

    v' = 0.5 * v + 0.5 * (measured_centre - prior_centre)

The model reacts within a frame or two to direction changes, which suits
short-range association between consecutive frames better than noise
suppression does.
"""

from __future__ import annotations

from typing import Sequence, Tuple

BBox = Tuple[float, float, float, float]

VELOCITY_BLEND = 0.5


class MotionModel:
    """Constant-velocity predictor with exponentially blended velocity."""

    def __init__(self, bbox: Sequence[float]) -> None:
        self.cx = 0.0
        self.cy = 0.0
        self.width = 0.0
        self.height = 0.0
        self.vx = 0.0
        self.vy = 0.0
        self.initiate(bbox)

    def initiate(self, bbox: Sequence[float]) -> None:
        """Reset the state to ``bbox`` with zero velocity."""
        x1, y1, x2, y2 = bbox
        self.cx = (x1 + x2) / 2.0
        self.cy = (y1 + y2) / 2.0
        self.width = float(x2 - x1)
        self.height = float(y2 - y1)
        self.vx = 0.0
        self.vy = 0.0

    @property
    def velocity(self) -> Tuple[float, float]:
        return (self.vx, self.vy)

    def to_tlbr(self) -> BBox:
        half_w = self.width / 2.0
        half_h = self.height / 2.0
        return (self.cx - half_w, self.cy - half_h, self.cx + half_w, self.cy + half_h)

    def predict(self) -> BBox:
        """Advance the centre by one frame of velocity and return the box."""
        self.cx += self.vx
        self.cy += self.vy
        return self.to_tlbr()

    def correct(self, measurement: Sequence[float]) -> None:
        """Fold a measured box into the state."""
        x1, y1, x2, y2 = measurement
        measured_cx = (x1 + x2) / 2.0
        measured_cy = (y1 + y2) / 2.0

        self.vx = VELOCITY_BLEND * self.vx + (1.0 - VELOCITY_BLEND) * (measured_cx - self.cx)
        self.vy = VELOCITY_BLEND * self.vy + (1.0 - VELOCITY_BLEND) * (measured_cy - self.cy)

        self.cx = measured_cx
        self.cy = measured_cy
        self.width = float(x2 - x1)
        self.height = float(y2 - y1)
