"""Immutable analytics snapshots handed to storage and dashboard consumers."""

from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping

from analytics.crowd_density import DensityLevel


@dataclass(frozen=True)
class ZoneSnapshot:
    zone_id: str
    name: str
    zone_type: str
    count: int
    capacity: int
    occupancy_percent: float
    rolling_average: float


@dataclass(frozen=True)
class AnalyticsSnapshot:
    current_count: int
    total_entries: int
    total_exits: int
    unique_visitors: int
    fps: float
    zones: Mapping[str, ZoneSnapshot] = field(default_factory=lambda: MappingProxyType({}))
    crowd_mode: bool = False
    crowd_confidence: float = 0.9
    density_level: DensityLevel = DensityLevel.EMPTY
    frames_processed: int = 0
    frames_dropped: int = 0
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation."""
        return {
            "timestamp": datetime.datetime.fromtimestamp(self.timestamp, tz=datetime.timezone.utc).isoformat(),
            "current_count": self.current_count,
            "total_entries": self.total_entries,
            "total_exits": self.total_exits,
            "unique_visitors": self.unique_visitors,
            "fps": round(self.fps, 2),
            "crowd_mode": self.crowd_mode,
            "crowd_confidence": round(self.crowd_confidence, 3),
            "density_level": self.density_level.value,
            "frames_processed": self.frames_processed,
            "frames_dropped": self.frames_dropped,
            "zones": {zone_id: asdict(zone) for zone_id, zone in self.zones.items()},
        }
