"""Polygon zones and per-zone occupancy aggregation.

Zones are configured polygons (assumed simple, i.e. not self
intersecting) with a capacity and a type tag. Each frame the pipeline
counts how many track centres fall inside every zone and reports the
result to a :class:`ZoneAggregator`, which keeps the instantaneous count
and a rolling window of recent counts for a smoothed average.

In crowd mode individual tracks are unreliable, so
:func:`estimate_zone_from_density` derives a coarse occupancy from the
crowd density grid instead.
"""

from __future__ import annotations

import enum
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .shared_state import SharedMap

ROLLING_WINDOW = 30

# Density grid cells are dark-pixel fractions in [0, 1]; a mean cell
# density of 0.5 over the zone maps to full capacity.
CROWD_ZONE_SCALE = 2.0

Point = Tuple[float, float]


class ZoneType(enum.Enum):
    COUNTING = "counting"
    ENTRY = "entry"
    EXIT = "exit"
    EXCLUSION = "exclusion"


def point_in_polygon(x: float, y: float, points: Sequence[Point]) -> bool:
    """Ray-casting membership test with a horizontal ray towards +x.

    Results for points lying exactly on a vertex or edge are not
    guaranteed to be consistent.
    """
    n = len(points)
    if n < 3:
        return False
    inside = False
    p1x, p1y = points[0]
    for i in range(1, n + 1):
        p2x, p2y = points[i % n]
        if min(p1y, p2y) < y <= max(p1y, p2y) and x <= max(p1x, p2x):
            if p1y != p2y:
                xinters = (y - p1y) * (p2x - p1x) / (p2y - p1y) + p1x
            else:
                xinters = p1x
            if p1x == p2x or x <= xinters:
                inside = not inside
        p1x, p1y = p2x, p2y
    return inside


@dataclass(frozen=True)
class Zone:
    """Configured polygon region.

    Points are normalised to float pairs on construction; a polygon with
    fewer than three vertices or non-finite coordinates raises
    ``ValueError``.
    """

    id: str
    name: str
    points: Tuple[Point, ...]
    capacity: int = 50
    type: ZoneType = ZoneType.COUNTING

    def __post_init__(self) -> None:
        try:
            points = tuple((float(x), float(y)) for x, y in self.points)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Zone '{self.id}' has malformed points: {exc}") from exc
        if len(points) < 3:
            raise ValueError(f"Zone '{self.id}' needs at least 3 points, got {len(points)}")
        if not all(math.isfinite(v) for point in points for v in point):
            raise ValueError(f"Zone '{self.id}' has non-finite coordinates")
        object.__setattr__(self, "points", points)
        object.__setattr__(self, "type", ZoneType(self.type))

    def contains(self, x: float, y: float) -> bool:
        return point_in_polygon(x, y, self.points)

    def count_members(self, centers: Iterable[Point]) -> int:
        return sum(1 for cx, cy in centers if self.contains(cx, cy))

    def occupancy_percent(self, count: int) -> float:
        """Occupancy as a percentage of capacity; 0 for zones without capacity."""
        if self.capacity <= 0:
            return 0.0
        return count / self.capacity * 100.0


def default_zone() -> Zone:
    return Zone(
        id="default",
        name="Main Area",
        points=((100.0, 100.0), (1820.0, 100.0), (1820.0, 980.0), (100.0, 980.0)),
        capacity=100,
        type=ZoneType.COUNTING,
    )


def count_zone_members(zones: Iterable[Zone], centers: Sequence[Point]) -> Dict[str, int]:
    """Number of ``centers`` inside each zone, keyed by zone id."""
    return {zone.id: zone.count_members(centers) for zone in zones}


@dataclass
class ZoneOccupancy:
    count: int = 0
    history: Deque[int] = field(default_factory=lambda: deque(maxlen=ROLLING_WINDOW))

    def record(self, count: int) -> None:
        self.history.append(count)
        self.count = count

    @property
    def rolling_average(self) -> float:
        if not self.history:
            return 0.0
        return sum(self.history) / len(self.history)


@dataclass(frozen=True)
class OccupancyReading:
    count: int
    rolling_average: float


def _reading(occupancy: Optional[ZoneOccupancy]) -> OccupancyReading:
    if occupancy is None:
        return OccupancyReading(0, 0.0)
    return OccupancyReading(occupancy.count, occupancy.rolling_average)


class ZoneAggregator:
    """Instantaneous and rolling-average occupancy per zone id.

    Ids that disappear from the configuration are simply no longer
    updated; their last values stay readable until :meth:`reset`.
    A zone's count and history change together under the map lock, so a
    reading never pairs a new count with a stale average.
    """

    def __init__(self) -> None:
        self._zones: SharedMap[str, ZoneOccupancy] = SharedMap()

    def update(self, zone_id: str, count: int) -> None:
        self._zones.apply(zone_id, lambda occupancy: occupancy.record(count), ZoneOccupancy)

    def update_many(self, counts: Mapping[str, int]) -> None:
        for zone_id, count in counts.items():
            self.update(zone_id, count)

    def occupancy(self, zone_id: str) -> OccupancyReading:
        return self._zones.apply(zone_id, _reading)

    def count(self, zone_id: str) -> int:
        return self.occupancy(zone_id).count

    def rolling_average(self, zone_id: str) -> float:
        return self.occupancy(zone_id).rolling_average

    def all_counts(self) -> Dict[str, int]:
        return {zone_id: self.count(zone_id) for zone_id in self._zones.keys()}

    def zone_ids(self) -> List[str]:
        return self._zones.keys()

    def reset(self) -> None:
        self._zones.clear()


def estimate_zone_from_density(
    zone: Zone,
    density_map: np.ndarray,
    cell_size: Tuple[float, float],
    scale: float = CROWD_ZONE_SCALE,
) -> int:
    """Approximate a zone's occupancy from a crowd density grid.

    Cells whose image-space centre lies inside the zone polygon are
    summed, and the sum is then normalised by the number of such cells
    before scaling by the zone capacity and ``scale``. The normalisation
    keeps the estimate independent of how many cells a zone spans; a raw
    sum would grow with zone area. A zone covering no cells reports 0.

    Parameters
    ----------
    zone : Zone
        Zone to estimate.
    density_map : ndarray
        ``(rows, cols)`` grid of per-cell densities in [0, 1].
    cell_size : tuple
        ``(width, height)`` of one grid cell in image pixels.
    """
    if zone.capacity <= 0 or density_map.size == 0:
        return 0
    rows, cols = density_map.shape
    cell_w, cell_h = cell_size

    total = 0.0
    covered = 0
    for row in range(rows):
        cy = (row + 0.5) * cell_h
        for col in range(cols):
            cx = (col + 0.5) * cell_w
            if zone.contains(cx, cy):
                total += float(density_map[row, col])
                covered += 1
    if covered == 0:
        return 0
    return int(round(total / covered * zone.capacity * scale))
