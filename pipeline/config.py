"""Pipeline configuration loaded from YAML.

The configuration file mirrors the dataclasses below. Every section is
optional; missing values fall back to the defaults the analytics were
calibrated with.

```yaml
tracking:
  track_thresh: 0.5
  match_thresh: 0.8
  track_buffer: 30
  assignment: greedy        # or "hungarian"
crowd:
  crowd_mode_threshold: 20
  high_density_threshold: 0.7
  max_trackable_detections: 50
counting_line: {start_x: 0, start_y: 540, end_x: 1920, end_y: 540}
zones:
  - id: entrance
    name: Entrance
    points: [[100, 100], [900, 100], [900, 600], [100, 600]]
    capacity: 25
    type: entry
snapshot_interval: 1.0
metrics_port: 9095
camera: {source: "0"}
detection: {backend: hog}
```
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from analytics.line_counter import CountingLine
from analytics.zones import Zone, ZoneType, default_zone
from tracking.byte_tracker import ASSIGNMENT_STRATEGIES


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class TrackerConfig:
    track_thresh: float = 0.5
    match_thresh: float = 0.8
    track_buffer: int = 30
    assignment: str = "greedy"

    def __post_init__(self) -> None:
        _check_unit_interval("track_thresh", self.track_thresh)
        _check_unit_interval("match_thresh", self.match_thresh)
        if self.track_buffer < 0:
            raise ValueError(f"track_buffer must be non-negative, got {self.track_buffer}")
        if self.assignment not in ASSIGNMENT_STRATEGIES:
            raise ValueError(
                f"assignment must be one of {', '.join(ASSIGNMENT_STRATEGIES)}, got '{self.assignment}'"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrackerConfig":
        return cls(
            track_thresh=float(data.get("track_thresh", cls.track_thresh)),
            match_thresh=float(data.get("match_thresh", cls.match_thresh)),
            track_buffer=int(data.get("track_buffer", cls.track_buffer)),
            assignment=str(data.get("assignment", cls.assignment)).lower(),
        )


@dataclass(frozen=True)
class CrowdConfig:
    crowd_mode_threshold: int = 20
    high_density_threshold: float = 0.7
    # Above this many raw detections the tracker is skipped in crowd mode.
    max_trackable_detections: int = 50

    def __post_init__(self) -> None:
        if self.crowd_mode_threshold < 0:
            raise ValueError(f"crowd_mode_threshold must be non-negative, got {self.crowd_mode_threshold}")
        if self.high_density_threshold < 0:
            raise ValueError(
                f"high_density_threshold must be non-negative, got {self.high_density_threshold}"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CrowdConfig":
        return cls(
            crowd_mode_threshold=int(data.get("crowd_mode_threshold", cls.crowd_mode_threshold)),
            high_density_threshold=float(data.get("high_density_threshold", cls.high_density_threshold)),
            max_trackable_detections=int(
                data.get("max_trackable_detections", cls.max_trackable_detections)
            ),
        )


def counting_line_from_dict(data: Mapping[str, Any]) -> CountingLine:
    default = CountingLine()
    return CountingLine(
        start_x=float(data.get("start_x", default.start_x)),
        start_y=float(data.get("start_y", default.start_y)),
        end_x=float(data.get("end_x", default.end_x)),
        end_y=float(data.get("end_y", default.end_y)),
    )


def zone_from_dict(data: Mapping[str, Any]) -> Zone:
    points = tuple(data["points"])
    raw_type = str(data.get("type", ZoneType.COUNTING.value)).lower()
    try:
        zone_type = ZoneType(raw_type)
    except ValueError:
        warnings.warn(f"Unknown zone type '{raw_type}', treating zone as counting.", stacklevel=2)
        zone_type = ZoneType.COUNTING
    zone_id = str(data["id"])
    return Zone(
        id=zone_id,
        name=str(data.get("name", zone_id)),
        points=points,
        capacity=int(data.get("capacity", 50)),
        type=zone_type,
    )


@dataclass(frozen=True)
class PipelineConfig:
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    crowd: CrowdConfig = field(default_factory=CrowdConfig)
    counting_line: CountingLine = field(default_factory=CountingLine)
    zones: Sequence[Zone] = field(default_factory=lambda: (default_zone(),))
    snapshot_interval: float = 1.0
    metrics_port: Optional[int] = None
    camera: Dict[str, Any] = field(default_factory=dict)
    detection: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PipelineConfig":
        data = data or {}
        zones_cfg: List[Mapping[str, Any]] = data.get("zones") or []
        zones = tuple(zone_from_dict(z) for z in zones_cfg) or (default_zone(),)
        metrics_port = data.get("metrics_port", (data.get("monitoring") or {}).get("metrics_port"))
        return cls(
            tracker=TrackerConfig.from_dict(data.get("tracking") or {}),
            crowd=CrowdConfig.from_dict(data.get("crowd") or {}),
            counting_line=counting_line_from_dict(data.get("counting_line") or {}),
            zones=zones,
            snapshot_interval=float(data.get("snapshot_interval", 1.0)),
            metrics_port=int(metrics_port) if metrics_port is not None else None,
            camera=dict(data.get("camera") or {}),
            detection=dict(data.get("detection") or {}),
        )


def load_config(config_path: str | Path) -> PipelineConfig:
    with open(config_path, "r") as f:
        return PipelineConfig.from_dict(yaml.safe_load(f))
