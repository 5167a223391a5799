"""Pipeline package.

Sequences detection, tracking, line counting, zone occupancy and crowd
density estimation per frame and publishes immutable analytics
snapshots.
"""

from .analyzer import TrafficAnalyzer
from .config import CrowdConfig, PipelineConfig, TrackerConfig, load_config
from .mode import AnalysisMode, ModeSwitch
from .snapshot import AnalyticsSnapshot, ZoneSnapshot

__all__ = [
    "AnalysisMode",
    "AnalyticsSnapshot",
    "CrowdConfig",
    "ModeSwitch",
    "PipelineConfig",
    "TrackerConfig",
    "TrafficAnalyzer",
    "ZoneSnapshot",
    "load_config",
]
