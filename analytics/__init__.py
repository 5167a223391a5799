"""Analytics package.

Counting-line crossings, polygon zone occupancy and crowd density
estimation built on top of the tracker output.
"""

from .crowd_density import CrowdAnalysis, CrowdDensityEstimator, DensityLevel
from .line_counter import CountingLine, CrossingDirection, LineCounter
from .shared_state import AtomicCounter, SharedMap
from .zones import Zone, ZoneAggregator, ZoneType, point_in_polygon

__all__ = [
    "AtomicCounter",
    "CountingLine",
    "CrossingDirection",
    "CrowdAnalysis",
    "CrowdDensityEstimator",
    "DensityLevel",
    "LineCounter",
    "SharedMap",
    "Zone",
    "ZoneAggregator",
    "ZoneType",
    "point_in_polygon",
]
