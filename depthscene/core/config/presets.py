from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class SensorPreset:
    width: int
    height: int
    focal: float
    scale: float


# Depth sensor optics. Focal lengths are in pixels for the given image size;
# `scale` corrects the raw depth units to true distance.
SENSOR_PRESETS: dict[str, SensorPreset] = {
    # 57 x 43 degree structured light sensor.
    "kinect1": SensorPreset(width=640, height=480, focal=525.0, scale=0.9659),
    # Time-of-flight sensor registered to the half-size color image.
    "kinect2": SensorPreset(width=960, height=540, focal=540.685, scale=1.0),
}


PRESET_LABELS: dict[str, str] = {
    "kinect1": "Kinect (VGA)",
    "kinect2": "Kinect v2 (qHD)",
}


def list_presets() -> list[dict[str, Any]]:
    return [
        {
            "id": preset_id,
            "label": PRESET_LABELS.get(preset_id, preset_id),
            "width": p.width,
            "height": p.height,
            "focal": p.focal,
            "scale": p.scale,
        }
        for preset_id, p in SENSOR_PRESETS.items()
    ]
