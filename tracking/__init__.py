"""Tracking package.

This package assigns consistent identifiers to people detected in video
frames. The tracker is a two-tier IoU matcher in the style of ByteTrack,
driven by a lightweight velocity-smoothing motion model.
"""

from .byte_tracker import ByteTracker, Track, TrackState
from .motion import MotionModel

__all__ = ["ByteTracker", "MotionModel", "Track", "TrackState"]
