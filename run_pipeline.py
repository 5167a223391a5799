"""Entry point for running the foot traffic analytics pipeline.

This script reads frames from a video file, RTSP stream or webcam, runs
the configured person detector and feeds the frames to a
:class:`TrafficAnalyzer` worker. Frames that arrive while the previous
one is still being analysed are dropped. Snapshots are logged and, when
a metrics port is configured, exposed to Prometheus.

Usage
-----
```bash
python run_pipeline.py --config configs/default.yaml
python run_pipeline.py --config configs/default.yaml --source people.mp4
```
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from typing import Optional

import cv2

from detection import build_detector
from monitoring import MetricsExporter
from pipeline import AnalyticsSnapshot, PipelineConfig, TrafficAnalyzer, load_config

logger = logging.getLogger("run_pipeline")


def create_capture(source: str) -> cv2.VideoCapture:
    """Open a capture for a file path, stream URL or numeric webcam index."""
    capture = cv2.VideoCapture(int(source)) if source.isdigit() else cv2.VideoCapture(source)
    if not capture.isOpened():
        raise RuntimeError(f"Failed to open video source: {source}")
    return capture


def log_snapshot(snapshot: AnalyticsSnapshot) -> None:
    logger.info("snapshot %s", json.dumps(snapshot.to_dict()))


def run(config: PipelineConfig, source: str, max_fps: Optional[float] = None) -> AnalyticsSnapshot:
    detection_cfg = dict(config.detection)
    backend = detection_cfg.pop("backend", "hog")
    detector = build_detector(backend, **detection_cfg)

    metrics: MetricsExporter | None = None
    sinks = [log_snapshot]
    if config.metrics_port is not None:
        metrics = MetricsExporter(port=config.metrics_port)
        sinks.append(metrics.record_snapshot)

    capture = create_capture(source)
    frame_period = 1.0 / max_fps if max_fps else 0.0
    analyzer = TrafficAnalyzer(config, detector=detector, sinks=sinks, metrics=metrics)
    try:
        while True:
            started = time.perf_counter()
            ok, frame = capture.read()
            if not ok:
                break
            analyzer.submit_frame(frame)
            if frame_period:
                time.sleep(max(0.0, frame_period - (time.perf_counter() - started)))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        capture.release()
        analyzer.close()

    snapshot = analyzer.snapshot()
    log_snapshot(snapshot)
    return snapshot


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the foot traffic analytics pipeline.")
    parser.add_argument("--config", type=str, default=None, help="Path to configuration file.")
    parser.add_argument("--source", type=str, default=None, help="Video file, stream URL or webcam index.")
    parser.add_argument("--max-fps", type=float, default=None, help="Throttle frame reading to this rate.")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level.")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config) if args.config else PipelineConfig()
    source = args.source or str(config.camera.get("source", "0"))
    run(config, source, max_fps=args.max_fps)


if __name__ == "__main__":
    main()
