from __future__ import annotations

import threading
from typing import Iterator

import numpy as np
import pytest

from analytics.crowd_density import DensityLevel
from analytics.line_counter import CountingLine
from analytics.zones import Zone, ZoneType, default_zone
from monitoring import MetricsExporter
from pipeline import AnalyticsSnapshot, PipelineConfig, TrafficAnalyzer


def _person(cx: float, cy: float, score: float = 0.9) -> tuple[float, float, float, float, float]:
    return (cx - 30, cy - 60, cx + 30, cy + 60, score)


class _Clock:
    def __init__(self, *ticks: float) -> None:
        self._ticks: Iterator[float] = iter(ticks)
        self.now = 0.0

    def __call__(self) -> float:
        self.now = next(self._ticks, self.now)
        return self.now


def _walk(analyzer: TrafficAnalyzer, ys: list[float], x: float = 500.0) -> AnalyticsSnapshot | None:
    snapshot = None
    for y in ys:
        snapshot = analyzer.process_frame(None, [_person(x, y)])
    return snapshot


def test_person_walking_down_is_counted_as_one_exit() -> None:
    analyzer = TrafficAnalyzer()
    snapshot = _walk(analyzer, [500, 520, 560, 580])

    assert snapshot is not None
    assert snapshot.total_exits == 1
    assert snapshot.total_entries == 0
    assert snapshot.unique_visitors == 0
    assert snapshot.current_count == 1
    assert snapshot.frames_processed == 4
    assert not snapshot.crowd_mode
    assert snapshot.zones["default"].count == 1
    assert snapshot.zones["default"].occupancy_percent == pytest.approx(1.0)


def test_person_walking_up_is_an_entry_and_a_visitor() -> None:
    analyzer = TrafficAnalyzer()
    snapshot = _walk(analyzer, [580, 560, 520, 500])

    assert snapshot.total_entries == 1
    assert snapshot.unique_visitors == 1
    assert snapshot.total_exits == 0


def test_empty_frames_keep_lost_tracks_in_count_until_buffer_expires() -> None:
    config = PipelineConfig.from_dict({"tracking": {"track_buffer": 2}})
    analyzer = TrafficAnalyzer(config)
    analyzer.process_frame(None, [_person(500, 300)])

    assert analyzer.process_frame(None, []).current_count == 1
    assert analyzer.process_frame(None, []).current_count == 1
    assert analyzer.process_frame(None, []).current_count == 0


def test_frame_is_dropped_while_busy() -> None:
    metrics = MetricsExporter()
    analyzer = TrafficAnalyzer(metrics=metrics)
    analyzer._busy.acquire()
    try:
        assert analyzer.process_frame(None, [_person(500, 300)]) is None
        assert analyzer.submit_frame(None, [_person(500, 300)]) is False
    finally:
        analyzer._busy.release()

    snapshot = analyzer.snapshot()
    assert snapshot.frames_dropped == 2
    assert snapshot.frames_processed == 0
    assert analyzer.tracker.tracks == []
    assert metrics.registry.get_sample_value("foottraffic_dropped_frames_total") == 2.0


def test_submitted_frame_is_processed_by_worker() -> None:
    done = threading.Event()
    with TrafficAnalyzer(sinks=[lambda snapshot: done.set()]) as analyzer:
        assert analyzer.submit_frame(None, [_person(500, 300)])
        assert done.wait(timeout=5)
    assert analyzer.snapshot().frames_processed == 1
    assert analyzer.snapshot().current_count == 1


def test_detector_failure_is_contained() -> None:
    calls = {"n": 0}

    def flaky_detector(frame: np.ndarray) -> list:
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("detector crashed")
        return [_person(500, 300)]

    metrics = MetricsExporter()
    analyzer = TrafficAnalyzer(detector=flaky_detector, metrics=metrics)
    frame = np.zeros((120, 160, 3), dtype=np.uint8)

    first = analyzer.process_frame(frame)
    assert first is not None and first.current_count == 1

    assert analyzer.process_frame(frame) is None
    snapshot = analyzer.snapshot()
    assert snapshot.current_count == 1
    assert snapshot.frames_processed == 1
    assert metrics.registry.get_sample_value(
        "foottraffic_pipeline_errors_total", {"category": "RuntimeError"}
    ) == 1.0

    # the pipeline keeps accepting frames afterwards
    assert analyzer.process_frame(frame) is not None
    assert analyzer.tracker.tracks[0].track_id == 1


def test_detector_object_with_detect_method() -> None:
    class Detector:
        def detect(self, frame: np.ndarray) -> list:
            return [{"left": 10, "top": 10, "right": 50, "bottom": 90, "confidence": 0.8}]

    analyzer = TrafficAnalyzer(detector=Detector())
    snapshot = analyzer.process_frame(np.zeros((120, 160, 3), dtype=np.uint8))
    assert snapshot.current_count == 1


def test_malformed_detections_are_ignored() -> None:
    analyzer = TrafficAnalyzer()
    snapshot = analyzer.process_frame(None, [(1, 2), "garbage", _person(500, 300), (10, 10, 5, 5, 0.9)])
    assert snapshot.current_count == 1


def test_reset_clears_counters_and_tracks() -> None:
    analyzer = TrafficAnalyzer()
    _walk(analyzer, [500, 520, 560, 580])
    analyzer.reset()

    snapshot = analyzer.snapshot()
    assert snapshot.total_exits == 0
    assert snapshot.current_count == 0
    assert snapshot.frames_processed == 0
    assert snapshot.zones["default"].count == 0
    assert analyzer.tracker.tracks == []

    after = analyzer.process_frame(None, [_person(500, 300)])
    assert after.current_count == 1
    assert analyzer.tracker.tracks[0].track_id == 2


def test_set_counting_line_restarts_crossing_detection() -> None:
    analyzer = TrafficAnalyzer()
    _walk(analyzer, [500, 520, 560])
    analyzer.set_counting_line(CountingLine(0, 600, 1920, 600))
    snapshot = _walk(analyzer, [580, 590, 620])
    assert snapshot.total_exits == 2


def test_sinks_are_called_at_snapshot_interval() -> None:
    received: list[AnalyticsSnapshot] = []
    clock = _Clock(100.0, 100.5, 101.0, 101.7, 102.1)
    analyzer = TrafficAnalyzer(sinks=[received.append], clock=clock)

    for _ in range(5):
        analyzer.process_frame(None, [_person(500, 300)])

    assert [s.timestamp for s in received] == [100.0, 101.0, 102.1]
    assert received[-1].frames_processed == 5


def test_failing_sink_does_not_stop_other_sinks() -> None:
    received: list[AnalyticsSnapshot] = []

    def broken(snapshot: AnalyticsSnapshot) -> None:
        raise ValueError("sink down")

    analyzer = TrafficAnalyzer(sinks=[broken, received.append])
    assert analyzer.process_frame(None, [_person(500, 300)]) is not None
    assert len(received) == 1


def test_crowd_mode_keeps_tracking_while_detections_are_trackable() -> None:
    analyzer = TrafficAnalyzer()
    crowd = [_person(80 * i + 40, 300) for i in range(25)]
    snapshot = analyzer.process_frame(None, crowd)

    assert snapshot.crowd_mode
    assert snapshot.current_count == 25
    assert snapshot.crowd_confidence == pytest.approx(0.3)
    assert snapshot.density_level is DensityLevel.MODERATE
    assert len(analyzer.tracker.tracks) == 25
    assert analyzer.mode_switch.in_crowd_mode


def test_crowd_mode_skips_tracker_for_very_large_crowds() -> None:
    analyzer = TrafficAnalyzer()
    crowd = [_person(30 * i + 40, 100 + 150 * (i % 5)) for i in range(60)]
    snapshot = analyzer.process_frame(None, crowd)

    assert snapshot.crowd_mode
    assert snapshot.current_count == 60
    assert analyzer.tracker.tracks == []


def test_crowd_mode_estimates_zones_from_density_grid() -> None:
    config = PipelineConfig.from_dict(
        {
            "zones": [
                {"id": "left", "points": [[0, 0], [160, 0], [160, 240], [0, 240]], "capacity": 10},
                {"id": "right", "points": [[160, 0], [320, 0], [320, 240], [160, 240]], "capacity": 10},
            ]
        }
    )
    analyzer = TrafficAnalyzer(config)
    frame = np.full((240, 320, 3), 255, dtype=np.uint8)
    frame[:, :160] = 0
    crowd = [_person(10 * i + 40, 120) for i in range(25)]
    snapshot = analyzer.process_frame(frame, crowd)

    assert snapshot.crowd_mode
    assert snapshot.current_count >= 25
    assert snapshot.zones["left"].count == 20
    assert snapshot.zones["right"].count == 0


def test_returning_below_threshold_switches_back_to_tracking() -> None:
    analyzer = TrafficAnalyzer()
    analyzer.process_frame(None, [_person(80 * i + 40, 300) for i in range(25)])
    snapshot = analyzer.process_frame(None, [_person(40, 300)])
    assert not snapshot.crowd_mode
    assert analyzer.mode_switch.transitions == 2


def test_set_zones_replaces_reported_zones() -> None:
    analyzer = TrafficAnalyzer()
    analyzer.process_frame(None, [_person(500, 300)])
    lobby = Zone("lobby", "Lobby", ((0, 0), (1000, 0), (1000, 1000), (0, 1000)), 4, ZoneType.ENTRY)
    analyzer.set_zones([lobby])
    snapshot = analyzer.process_frame(None, [_person(500, 300)])

    assert list(snapshot.zones) == ["lobby"]
    assert snapshot.zones["lobby"].occupancy_percent == pytest.approx(25.0)
    # the orphaned default zone keeps its last value
    assert analyzer.zone_aggregator.count("default") == 1


def test_snapshot_to_dict_is_json_friendly() -> None:
    analyzer = TrafficAnalyzer(clock=_Clock(0.0))
    data = analyzer.process_frame(None, [_person(500, 300)]).to_dict()
    assert data["timestamp"] == "1970-01-01T00:00:00+00:00"
    assert data["density_level"] == "sparse"
    assert data["zones"]["default"]["zone_type"] == "counting"


def test_failure_after_tracking_leaves_tracks_and_crossings_untouched(monkeypatch: pytest.MonkeyPatch) -> None:
    analyzer = TrafficAnalyzer()
    _walk(analyzer, [500, 520])
    track = analyzer.tracker.tracks[0]
    assert track.age == 1

    def broken_count(self: Zone, centers: object) -> int:
        raise TypeError("zone geometry corrupted")

    with monkeypatch.context() as patch:
        patch.setattr(Zone, "count_members", broken_count)
        assert analyzer.process_frame(None, [_person(500, 560)]) is None

    # the failed frame neither aged the track nor consumed its crossing
    assert analyzer.tracker.tracks[0].age == 1
    assert analyzer.tracker.tracks[0].time_since_update == 0
    state = analyzer.line_counter.state(1)
    assert state is not None and not state.has_crossed
    assert len(state.positions) == 2
    assert analyzer.snapshot().total_exits == 0
    assert analyzer.snapshot().frames_processed == 2

    snapshot = analyzer.process_frame(None, [_person(500, 580)])
    assert snapshot.total_exits == 1
    assert analyzer.tracker.tracks[0].track_id == 1
    assert analyzer.tracker.tracks[0].age == 2


def test_sink_can_reset_the_pipeline() -> None:
    analyzer = TrafficAnalyzer()
    analyzer.add_sink(lambda snapshot: analyzer.reset())
    outcome: list[AnalyticsSnapshot | None] = []

    worker = threading.Thread(target=lambda: outcome.append(analyzer.process_frame(None, [_person(500, 300)])))
    worker.start()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert outcome[0] is not None and outcome[0].current_count == 1
    assert analyzer.snapshot().current_count == 0
    assert analyzer.tracker.tracks == []


def test_sink_can_reconfigure_from_the_worker_thread() -> None:
    done = threading.Event()
    analyzer = TrafficAnalyzer()

    def reconfigure(snapshot: AnalyticsSnapshot) -> None:
        analyzer.set_counting_line(CountingLine(0, 100, 1920, 100))
        done.set()

    analyzer.add_sink(reconfigure)
    with analyzer:
        assert analyzer.submit_frame(None, [_person(500, 300)])
        assert done.wait(timeout=5)
    assert analyzer.line_counter.line.start_y == 100


def test_set_zones_accepts_config_mappings() -> None:
    analyzer = TrafficAnalyzer()
    analyzer.set_zones([{"id": "door", "points": [[0, 0], [1000, 0], [1000, 1000]], "capacity": 2}])
    snapshot = analyzer.process_frame(None, [_person(700, 300)])
    assert snapshot.zones["door"].count == 1


@pytest.mark.parametrize(
    "zones",
    [
        [{"id": "door", "points": [[0, 0], [10, 10]]}],
        [{"points": [[0, 0], [10, 0], [10, 10]]}],
        ["not a zone"],
        [default_zone(), default_zone()],
    ],
)
def test_set_zones_rejects_invalid_lists_and_keeps_current_zones(zones: list) -> None:
    analyzer = TrafficAnalyzer()
    with pytest.raises(ValueError):
        analyzer.set_zones(zones)
    assert [zone.id for zone in analyzer.zones] == ["default"]
