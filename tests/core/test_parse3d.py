from __future__ import annotations

import numpy as np

from depthscene.core.depth.surface import height_to_pel
from depthscene.core.detectors.parse3d import Parse3D, max_bin_n, percentile_bin


def _person_map(px: float = 0.0, py: float = 60.0, top: float = 66.0) -> np.ndarray:
    """240x240 map at 0.5 in/pel covering x in [-60, 60] and y in [0, 120]."""

    ys, xs = np.mgrid[0:240, 0:240]
    wx = xs * 0.5 - 60.0
    wy = ys * 0.5
    hmap = np.full((240, 240), height_to_pel(0.0, 20.0, 90.0), np.uint8)
    body = ((wx - px) / 9.0) ** 2 + ((wy - py) / 5.0) ** 2 <= 1.0
    head = np.hypot(wx - px, wy - py) <= 3.5
    hmap[body] = height_to_pel(top - 9.0, 20.0, 90.0)
    hmap[head] = height_to_pel(top, 20.0, 90.0)
    return hmap


def _parser() -> Parse3D:
    p = Parse3D()
    p.set_scale(20.0, 90.0, 0.5)
    p.set_view(0.0, 60.0, 0.0)
    return p


def test_map_world_conversion_inverts():
    p = _parser()
    p.map_size(240, 240)
    w = p.m2w(100.0, 30.0)
    fx, fy = p.w2m(w[0], w[1])
    assert abs(fx - 100.0) < 1e-9
    assert abs(fy - 30.0) < 1e-9


def test_histogram_helpers():
    hist = np.zeros(256, dtype=np.int64)
    hist[10] = 5
    hist[200] = 30
    assert max_bin_n(hist, 20) == 200
    assert percentile_bin(hist, 0.9) == 200


def test_single_standing_person_found():
    p = _parser()
    found = p.find_people(_person_map())
    assert len(found) == 1
    guy = found[0]
    assert abs(guy.x) < 1.0
    assert abs(guy.y - 60.0) < 1.0
    assert abs(guy.z - 59.5) < 1.0
    assert p.num_raw() == 1
    assert p.person_blob(0.0, 60.0)
    assert p.blob_at(0.0, 60.0) > 0
    assert guy.blob == p.blob_at(0.0, 60.0)


def test_short_blob_is_not_a_person():
    p = _parser()
    assert p.find_people(_person_map(top=40.0)) == []
    assert not p.person_blob(0.0, 60.0)


def test_person_outside_ring_ignored():
    p = _parser()
    p.sps.ring = 50.0
    assert p.find_people(_person_map()) == []


def test_empty_floor_and_bad_input():
    p = _parser()
    flat = np.full((240, 240), 1, np.uint8)
    assert p.find_people(flat) == []
    assert p.blob_at(500.0, 500.0) == -1
    assert p.find_people(np.zeros((10, 10), np.uint16)) == []
