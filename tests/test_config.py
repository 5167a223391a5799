from __future__ import annotations

from pathlib import Path

import pytest

from analytics.zones import ZoneType
from pipeline import PipelineConfig, load_config
from pipeline.config import CrowdConfig, TrackerConfig, zone_from_dict

CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"


def test_defaults_without_file() -> None:
    config = PipelineConfig.from_dict(None)
    assert config.tracker == TrackerConfig()
    assert config.crowd.crowd_mode_threshold == 20
    assert config.counting_line.start_y == 540
    assert [zone.id for zone in config.zones] == ["default"]
    assert config.metrics_port is None


def test_bundled_default_config_matches_defaults() -> None:
    config = load_config(CONFIG_DIR / "default.yaml")
    assert config.tracker == TrackerConfig()
    assert config.crowd == CrowdConfig()
    assert config.detection["backend"] == "hog"
    assert config.zones[0].capacity == 100
    assert config.metrics_port is None


def test_load_config_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "site.yaml"
    path.write_text(
        "\n".join(
            [
                "tracking:",
                "  match_thresh: 0.7",
                "  assignment: Hungarian",
                "crowd:",
                "  crowd_mode_threshold: 35",
                "counting_line: {start_x: 0, start_y: 300, end_x: 1280, end_y: 320}",
                "zones:",
                "  - id: till",
                "    points: [[0, 0], [200, 0], [200, 200]]",
                "    capacity: 5",
                "    type: exclusion",
                "monitoring:",
                "  metrics_port: 9200",
            ]
        )
    )
    config = load_config(path)
    assert config.tracker.match_thresh == pytest.approx(0.7)
    assert config.tracker.assignment == "hungarian"
    assert config.tracker.track_buffer == 30
    assert config.crowd.crowd_mode_threshold == 35
    assert config.counting_line.end_y == 320
    assert config.zones[0].name == "till"
    assert config.zones[0].type is ZoneType.EXCLUSION
    assert config.metrics_port == 9200


@pytest.mark.parametrize(
    "section, values",
    [
        ("tracking", {"track_thresh": 1.5}),
        ("tracking", {"match_thresh": -0.1}),
        ("tracking", {"track_buffer": -1}),
        ("tracking", {"assignment": "auction"}),
        ("crowd", {"crowd_mode_threshold": -3}),
    ],
)
def test_invalid_values_are_rejected(section: str, values: dict) -> None:
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({section: values})


def test_zone_needs_three_points() -> None:
    with pytest.raises(ValueError):
        zone_from_dict({"id": "line", "points": [[0, 0], [10, 10]]})


def test_unknown_zone_type_falls_back_to_counting() -> None:
    with pytest.warns(UserWarning, match="Unknown zone type"):
        zone = zone_from_dict({"id": "z", "points": [[0, 0], [1, 0], [1, 1]], "type": "queue"})
    assert zone.type is ZoneType.COUNTING
