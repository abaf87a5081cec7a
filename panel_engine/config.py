from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .utils import load_json

DEFAULTS: dict[str, dict[str, Any]] = {
    "detect": {
        "edge_threshold": 200,
        "min_area_ratio": 0.02,
        "gutter_ratio": 0.02,
        "splash_ratio": 0.8,
        "max_detect_dim": 1200,
    },
    "sequence": {
        "row_tolerance_px": 5,
    },
    "frame": {
        "viewport_width": 1280,
        "viewport_height": 720,
    },
    "render": {
        "blur_radius": 20,
        "dim_factor": 0.4,
        "cache_max_entries": 64,
    },
}


@dataclass(frozen=True)
class EngineConfig:
    detect: dict[str, Any]
    sequence: dict[str, Any]
    frame: dict[str, Any]
    render: dict[str, Any]


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    merged = dict(DEFAULTS[name])
    merged.update(data.get(name, {}) or {})
    return merged


def default_config() -> EngineConfig:
    return config_from_dict({})


def config_from_dict(data: dict[str, Any]) -> EngineConfig:
    return EngineConfig(
        detect=_section(data, "detect"),
        sequence=_section(data, "sequence"),
        frame=_section(data, "frame"),
        render=_section(data, "render"),
    )


def load_config(config_path: str | Path | None) -> EngineConfig:
    if config_path is None:
        return default_config()
    data = load_json(config_path)
    if not isinstance(data, dict):
        raise ValueError(f"config must be a JSON object: {config_path}")
    return config_from_dict(data)
