"""Per-frame orchestration of tracking, counting and crowd analytics.

:class:`TrafficAnalyzer` is the pipeline context. It is constructed
explicitly and passed to whoever feeds it frames; there is no global
instance. For every accepted frame it:

1. runs the detector (or takes detections supplied by the caller),
2. evaluates the tracking/crowd mode switch,
3. in tracking mode, updates the tracker, the counting line and the
   per-zone membership counts,
4. in crowd mode, runs the density estimator, approximates zone
   occupancy from the density grid and, while the raw detection count
   is still small enough, keeps tracking and line counting going,
5. commits the aggregate counters and publishes an immutable
   :class:`AnalyticsSnapshot`.

Backpressure
------------
At most one frame is in the pipeline at a time. A frame that arrives
while another is being processed is dropped, never queued. Frames can be
processed synchronously with :meth:`TrafficAnalyzer.process_frame` or
handed to the single background worker with
:meth:`TrafficAnalyzer.submit_frame`.

Concurrency
-----------
Tracker, line counter and zone state are written only by the frame being
processed. Aggregate counters and zone occupancy may be read at any time
from other threads through :meth:`TrafficAnalyzer.snapshot`; readers see
an eventually consistent view. :meth:`reset` and counting line changes
wait for the in-flight frame to finish, so they always apply between
frames. Snapshot sinks run after the frame has released the pipeline and
may call them.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from analytics.crowd_density import CrowdAnalysis, CrowdDensityEstimator
from analytics.line_counter import CountingLine, CrossingDirection, LineCounter
from analytics.shared_state import AtomicCounter
from analytics.zones import Zone, ZoneAggregator, count_zone_members, estimate_zone_from_density
from detection.types import Detection, coerce_detections
from monitoring.metrics import MetricsExporter
from tracking.byte_tracker import ByteTracker
from .config import CrowdConfig, PipelineConfig, TrackerConfig, zone_from_dict
from .mode import AnalysisMode, ModeSwitch
from .snapshot import AnalyticsSnapshot, ZoneSnapshot

logger = logging.getLogger(__name__)

SnapshotSink = Callable[[AnalyticsSnapshot], None]


@dataclass(frozen=True)
class FrameResult:
    mode: AnalysisMode
    detections: int
    tracks: List[Detection]
    crossings: List[Tuple[int, CrossingDirection]]
    crowd: CrowdAnalysis


class TrafficAnalyzer:
    """Pipeline context turning detections into occupancy analytics.

    Parameters
    ----------
    config : PipelineConfig, optional
        Thresholds, counting line and zones. Defaults are used when omitted.
    detector : callable or object with ``detect``, optional
        External detector invoked with the frame when the caller does not
        pass detections explicitly.
    sinks : iterable of callables, optional
        Snapshot consumers, called at most once per ``snapshot_interval``.
    metrics : MetricsExporter, optional
        Receives per-frame latency, drop and error metrics.
    clock : callable, optional
        Wall clock used for snapshot timestamps and sink cadence.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        detector: Any = None,
        sinks: Iterable[SnapshotSink] = (),
        metrics: Optional[MetricsExporter] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        config = config or PipelineConfig()
        self.config = config
        self.detector = detector
        self.sinks: List[SnapshotSink] = list(sinks)
        self.metrics = metrics
        self.clock = clock

        self.tracker = ByteTracker(
            track_thresh=config.tracker.track_thresh,
            match_thresh=config.tracker.match_thresh,
            track_buffer=config.tracker.track_buffer,
            assignment=config.tracker.assignment,
        )
        self.line_counter = LineCounter(config.counting_line)
        self.zone_aggregator = ZoneAggregator()
        self.crowd_estimator = CrowdDensityEstimator(
            crowd_mode_threshold=config.crowd.crowd_mode_threshold,
            high_density_threshold=config.crowd.high_density_threshold,
        )
        self.mode_switch = ModeSwitch(self.crowd_estimator)
        self.max_trackable_detections = config.crowd.max_trackable_detections
        self.snapshot_interval = config.snapshot_interval
        self._zones: Tuple[Zone, ...] = tuple(config.zones)

        self.current_count = AtomicCounter()
        self.total_entries = AtomicCounter()
        self.total_exits = AtomicCounter()
        self.unique_visitors = AtomicCounter()
        self.frames_processed = AtomicCounter()
        self.frames_dropped = AtomicCounter()

        self._stats_lock = threading.Lock()
        self._fps = 0.0
        self._crowd = self.crowd_estimator.analyze(None, 0, crowd_mode=False)

        self._busy = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._last_push: Optional[float] = None

    # ------------------------------------------------------------------
    # Frame intake
    # ------------------------------------------------------------------
    def process_frame(
        self,
        frame: Optional[np.ndarray],
        detections: Optional[Iterable[Any]] = None,
    ) -> Optional[AnalyticsSnapshot]:
        """Process a frame on the calling thread.

        Returns the new snapshot, or ``None`` when the frame was dropped
        (pipeline busy) or failed.
        """
        if not self._busy.acquire(blocking=False):
            self._record_drop()
            return None
        try:
            snapshot = self._process(frame, detections)
        finally:
            self._busy.release()
        if snapshot is not None:
            self._publish(snapshot)
        return snapshot

    def submit_frame(
        self,
        frame: Optional[np.ndarray],
        detections: Optional[Iterable[Any]] = None,
    ) -> bool:
        """Hand a frame to the background worker without blocking.

        Returns ``False`` when the frame was dropped because the previous
        one is still in flight.
        """
        if not self._busy.acquire(blocking=False):
            self._record_drop()
            return False
        try:
            executor = self._ensure_executor()
            executor.submit(self._run_submitted, frame, detections)
        except BaseException:
            self._busy.release()
            raise
        return True

    def _run_submitted(self, frame: Optional[np.ndarray], detections: Optional[Iterable[Any]]) -> None:
        try:
            snapshot = self._process(frame, detections)
        finally:
            self._busy.release()
        if snapshot is not None:
            self._publish(snapshot)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="traffic-analyzer")
        return self._executor

    def _record_drop(self) -> None:
        self.frames_dropped.increment()
        if self.metrics is not None:
            self.metrics.record_dropped_frame()
        logger.debug("Frame dropped: previous frame still processing")

    # ------------------------------------------------------------------
    # Per-frame pipeline
    # ------------------------------------------------------------------
    def _process(
        self,
        frame: Optional[np.ndarray],
        detections: Optional[Iterable[Any]],
    ) -> Optional[AnalyticsSnapshot]:
        start = time.perf_counter()
        try:
            result = self._analyze(frame, detections)
        except Exception as exc:
            logger.exception("Error processing frame")
            if self.metrics is not None:
                self.metrics.record_error(type(exc).__name__)
            return None

        latency = time.perf_counter() - start
        with self._stats_lock:
            self._fps = 1.0 / latency if latency > 0 else 0.0
        self.frames_processed.increment()
        if self.metrics is not None:
            self.metrics.record_frame(
                latency,
                result.detections,
                len(result.tracks),
                result.mode is AnalysisMode.CROWD,
            )

        return self.snapshot()

    def _detect(self, frame: Optional[np.ndarray]) -> Any:
        if self.detector is None or frame is None:
            return []
        detect = getattr(self.detector, "detect", self.detector)
        return detect(frame)

    def _analyze(self, frame: Optional[np.ndarray], raw_detections: Optional[Iterable[Any]]) -> FrameResult:
        if raw_detections is None:
            raw_detections = self._detect(frame)
        detections = coerce_detections(raw_detections)
        detector_count = len(detections)

        mode = self.mode_switch.evaluate(frame, detector_count)
        crowd = self.crowd_estimator.analyze(frame, detector_count, crowd_mode=mode is AnalysisMode.CROWD)

        # Tracker and crossing state are advanced on copies and only
        # swapped in at commit, so a frame that fails leaves them as they were.
        tracker: Optional[ByteTracker] = None
        line_counter: Optional[LineCounter] = None
        tracks: List[Detection] = []
        crossings: List[Tuple[int, CrossingDirection]] = []
        if mode is AnalysisMode.TRACKING or detector_count < self.max_trackable_detections:
            tracker = self.tracker.copy()
            line_counter = self.line_counter.copy()
            tracks = tracker.update(detections)
            for det in tracks:
                direction = line_counter.check_crossing(det.track_id, det.bbox)
                if direction is not None:
                    crossings.append((det.track_id, direction))
            line_counter.prune(det.track_id for det in tracks)

        zones = self._zones
        if mode is AnalysisMode.TRACKING:
            zone_counts = count_zone_members(zones, [det.center for det in tracks])
            current = len(tracks)
        else:
            zone_counts = {
                zone.id: estimate_zone_from_density(zone, crowd.density_map, crowd.cell_size)
                for zone in zones
            }
            current = crowd.estimated_count

        # Commit.
        if tracker is not None and line_counter is not None:
            self.tracker = tracker
            self.line_counter = line_counter
        self.zone_aggregator.update_many(zone_counts)
        self.current_count.set(current)
        for track_id, direction in crossings:
            if direction is CrossingDirection.ENTRY:
                self.total_entries.increment()
                self.unique_visitors.increment()
                logger.debug("Entry detected: track %d", track_id)
            else:
                self.total_exits.increment()
                logger.debug("Exit detected: track %d", track_id)
        with self._stats_lock:
            self._crowd = crowd

        return FrameResult(mode, detector_count, tracks, crossings, crowd)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    @property
    def fps(self) -> float:
        with self._stats_lock:
            return self._fps

    @property
    def zones(self) -> Tuple[Zone, ...]:
        return self._zones

    def snapshot(self) -> AnalyticsSnapshot:
        """Assemble an immutable view of the current aggregates."""
        with self._stats_lock:
            fps = self._fps
            crowd = self._crowd

        zones = {}
        for zone in self._zones:
            reading = self.zone_aggregator.occupancy(zone.id)
            zones[zone.id] = ZoneSnapshot(
                zone_id=zone.id,
                name=zone.name,
                zone_type=zone.type.value,
                count=reading.count,
                capacity=zone.capacity,
                occupancy_percent=zone.occupancy_percent(reading.count),
                rolling_average=reading.rolling_average,
            )

        return AnalyticsSnapshot(
            current_count=self.current_count.get(),
            total_entries=self.total_entries.get(),
            total_exits=self.total_exits.get(),
            unique_visitors=self.unique_visitors.get(),
            fps=fps,
            zones=MappingProxyType(zones),
            crowd_mode=crowd.in_crowd_mode,
            crowd_confidence=crowd.confidence,
            density_level=crowd.density_level,
            frames_processed=self.frames_processed.get(),
            frames_dropped=self.frames_dropped.get(),
            timestamp=self.clock(),
        )

    def add_sink(self, sink: SnapshotSink) -> None:
        self.sinks.append(sink)

    def _publish(self, snapshot: AnalyticsSnapshot) -> None:
        """Hand ``snapshot`` to the sinks, at most once per ``snapshot_interval``.

        Called after the busy lock is released, so a sink may call
        :meth:`reset` or any other reconfiguration method.
        """
        now = snapshot.timestamp
        with self._stats_lock:
            if self._last_push is not None and now - self._last_push < self.snapshot_interval:
                return
            self._last_push = now
        for sink in self.sinks:
            try:
                sink(snapshot)
            except Exception:
                logger.exception("Snapshot sink %r failed", sink)

    # ------------------------------------------------------------------
    # Reconfiguration
    # ------------------------------------------------------------------
    def set_zones(self, zones: Sequence[Union[Zone, Mapping[str, Any]]]) -> None:
        """Replace the zone list; removed zone ids simply stop updating.

        Entries may be :class:`Zone` objects or configuration mappings as
        accepted by :func:`zone_from_dict`. The list is validated before it
        replaces the current one, so a bad entry leaves the zones unchanged.

        Raises
        ------
        ValueError
            If an entry is not a valid zone or two zones share an id.
        """
        validated: List[Zone] = []
        for zone in zones:
            if isinstance(zone, Mapping):
                try:
                    zone = zone_from_dict(zone)
                except (KeyError, TypeError) as exc:
                    raise ValueError(f"Invalid zone configuration: {exc}") from exc
            elif not isinstance(zone, Zone):
                raise ValueError(f"Expected a Zone, got {type(zone).__name__}")
            validated.append(zone)
        ids = [zone.id for zone in validated]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Zone ids must be unique, got {ids}")
        self._zones = tuple(validated)

    def set_counting_line(self, line: CountingLine) -> None:
        """Replace the counting line; crossings in progress are discarded."""
        with self._busy:
            self.line_counter.set_line(line)

    def update_thresholds(
        self,
        tracker: Optional[TrackerConfig] = None,
        crowd: Optional[CrowdConfig] = None,
    ) -> None:
        with self._busy:
            if tracker is not None:
                self.tracker.track_thresh = tracker.track_thresh
                self.tracker.match_thresh = tracker.match_thresh
                self.tracker.track_buffer = tracker.track_buffer
                self.tracker.assignment = tracker.assignment
            if crowd is not None:
                self.crowd_estimator.crowd_mode_threshold = crowd.crowd_mode_threshold
                self.crowd_estimator.high_density_threshold = crowd.high_density_threshold
                self.max_trackable_detections = crowd.max_trackable_detections

    def reset(self) -> None:
        """Clear counters and all per-track and per-zone state between frames."""
        with self._busy:
            for counter in (
                self.current_count,
                self.total_entries,
                self.total_exits,
                self.unique_visitors,
                self.frames_processed,
                self.frames_dropped,
            ):
                counter.reset()
            self.tracker.reset()
            self.line_counter.reset()
            self.zone_aggregator.reset()
            self.crowd_estimator.reset()
            self.mode_switch.reset()
            with self._stats_lock:
                self._fps = 0.0
                self._crowd = self.crowd_estimator.analyze(None, 0, crowd_mode=False)
                self._last_push = None
        logger.info("Analytics counters reset")

    # ------------------------------------------------------------------
    def close(self) -> None:
        """Stop the background worker after the in-flight frame completes."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "TrafficAnalyzer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
