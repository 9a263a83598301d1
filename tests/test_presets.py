from __future__ import annotations

import dataclasses

import pytest

from depthscene.core.config.presets import PRESET_LABELS, SENSOR_PRESETS, list_presets


def test_list_presets_has_expected_shape_and_labels():
    presets = list_presets()
    assert isinstance(presets, list)
    ids = {p["id"] for p in presets}
    assert set(SENSOR_PRESETS.keys()) == ids

    by_id = {p["id"]: p for p in presets}
    assert by_id["kinect1"]["label"] == PRESET_LABELS["kinect1"]
    assert by_id["kinect1"]["focal"] == 525.0
    assert by_id["kinect2"]["width"] == 960


def test_presets_are_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        SENSOR_PRESETS["kinect1"].focal = 1.0
