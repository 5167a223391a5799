"""Prometheus metrics exporter utilities for pipeline observability."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

if TYPE_CHECKING:
    from pipeline.snapshot import AnalyticsSnapshot

_server_lock = threading.Lock()
_server_started_ports: set[int] = set()


class MetricsExporter:
    """Expose occupancy and processing metrics via Prometheus.

    Each exporter owns its registry. The HTTP endpoint is only started
    when ``port`` is given, and at most once per port per process.
    """

    def __init__(self, port: Optional[int] = None, registry: Optional[CollectorRegistry] = None) -> None:
        self.port = port
        self.registry = registry or CollectorRegistry()
        if port is not None:
            with _server_lock:
                if port not in _server_started_ports:
                    start_http_server(port, registry=self.registry)
                    _server_started_ports.add(port)

        self.frame_latency = Histogram(
            "foottraffic_frame_latency_seconds",
            "Per-frame processing latency",
            registry=self.registry,
        )
        self.person_detections = Counter(
            "foottraffic_person_detections_total",
            "Total person detections received from the detector",
            registry=self.registry,
        )
        self.active_tracks = Gauge(
            "foottraffic_active_tracks",
            "Number of live person tracks",
            registry=self.registry,
        )
        self.current_count = Gauge(
            "foottraffic_current_count",
            "People currently in view",
            registry=self.registry,
        )
        self.entries = Gauge(
            "foottraffic_entries",
            "Cumulative entries across the counting line",
            registry=self.registry,
        )
        self.exits = Gauge(
            "foottraffic_exits",
            "Cumulative exits across the counting line",
            registry=self.registry,
        )
        self.crowd_mode = Gauge(
            "foottraffic_crowd_mode",
            "Analysis mode (1=crowd density, 0=tracking)",
            registry=self.registry,
        )
        self.zone_occupancy = Gauge(
            "foottraffic_zone_occupancy",
            "People inside each configured zone",
            ["zone"],
            registry=self.registry,
        )
        self.dropped_frames = Counter(
            "foottraffic_dropped_frames_total",
            "Frames dropped because the previous frame was still processing",
            registry=self.registry,
        )
        self.errors = Counter(
            "foottraffic_pipeline_errors_total",
            "Count of per-frame errors by type",
            ["category"],
            registry=self.registry,
        )

    def record_frame(
        self,
        latency_s: float,
        person_count: int,
        active_tracks: int,
        crowd_mode: bool,
    ) -> None:
        self.frame_latency.observe(max(latency_s, 0.0))
        if person_count:
            self.person_detections.inc(person_count)
        self.active_tracks.set(max(active_tracks, 0))
        self.crowd_mode.set(1 if crowd_mode else 0)

    def record_dropped_frame(self) -> None:
        self.dropped_frames.inc()

    def record_error(self, category: str) -> None:
        self.errors.labels(category).inc()

    def record_snapshot(self, snapshot: "AnalyticsSnapshot") -> None:
        """Snapshot sink: mirror the latest aggregate counters into gauges."""
        self.current_count.set(snapshot.current_count)
        self.entries.set(snapshot.total_entries)
        self.exits.set(snapshot.total_exits)
        self.crowd_mode.set(1 if snapshot.crowd_mode else 0)
        for zone_id, zone in snapshot.zones.items():
            self.zone_occupancy.labels(zone_id).set(zone.count)
