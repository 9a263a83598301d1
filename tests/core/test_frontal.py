from __future__ import annotations

import numpy as np

from depthscene.core.analytics.frontal import Frontal
from depthscene.core.roi import Roi


class FixedFace:
    """Always reports the same face box inside the crop."""

    def __init__(self, box=None):
        self.box = box
        self.calls = 0

    def find_within(self, img, fsz):
        self.calls += 1
        return None if self.box is None else self.box.copy_roi()


def _img():
    rng = np.random.default_rng(3)
    return rng.integers(0, 255, size=(480, 640), dtype=np.uint8)


AREA = Roi(100, 50, 80, 80)


def test_centered_face_counts_as_frontal():
    fr = Frontal(FixedFace(Roi(25, 25, 30, 30)))
    assert fr.face_chk(0, _img(), AREA) == 1
    assert fr.face_chk(0, _img(), AREA) == 2
    assert fr.frontal(0, 0, 2)
    assert fr.found(0)
    assert fr.front_cnt(0) == 2
    assert fr.face_cnt(0) == 2
    assert fr.shift_x(0) == 0.0
    assert fr.pct_y(0) == 0
    assert fr.get_size(0) == 30
    assert fr.get_crop(0).shape == (80, 80)


def test_offset_face_is_not_frontal():
    fr = Frontal(FixedFace(Roi(0, 0, 30, 30)))
    assert fr.face_chk(0, _img(), AREA) == 0
    assert fr.found(0)
    assert not fr.frontal(0)
    assert fr.pct_x(0) == -83
    assert fr.face_cnt(0) == 0


def test_no_face():
    fr = Frontal(FixedFace())
    assert fr.face_chk(0, _img(), AREA) == -1
    assert not fr.found(0)
    assert fr.get_crop(0) is None
    assert fr.face_mid(0) is None
    assert fr.checked(0)


def test_cycle_bookkeeping():
    fr = Frontal(FixedFace(Roi(25, 25, 30, 30)))
    fr.face_chk(2, _img(), AREA, cam=1)
    assert fr.done_chk() == 1
    assert fr.checked(2, 1)
    assert fr.front_new(1) == 2
    cam, box = fr.front_best(2)
    assert cam == 1
    assert box == Roi(25, 25, 30, 30)
    # not probed on the next cycle
    assert fr.done_chk() == 0
    assert not fr.checked(2, 1)
    assert fr.front_cnt(2, 1) == -1
    assert fr.front_best(2) == (-1, None)


def test_face_mid_maps_back_to_source():
    fr = Frontal(FixedFace(Roi(25, 25, 30, 30)))
    fr.face_chk(0, _img(), AREA)
    fx, fy = fr.face_mid(0)
    assert abs(fx - 140.5) < 1e-6
    assert abs(fy - 90.5) < 1e-6
    sx, _ = fr.face_mid(0, sc=2.0)
    assert abs(sx - 281.0) < 1e-6
    assert fr.probe_pose(0) == (140.0, 90.0, 0.0)


def test_bad_inputs():
    fr = Frontal(FixedFace(Roi(25, 25, 30, 30)))
    assert fr.face_chk(99, _img(), AREA) == -1
    assert fr.face_chk(0, _img(), Roi()) == -1
    assert fr.front_cnt(99) == -1
    assert fr.face_cnt(0, 20) == 0
    assert fr.front_best(-1) == (-1, None)
    assert fr.ff.calls == 0


def test_params_round_trip(tmp_path):
    fr = Frontal(FixedFace())
    fr.set_front(0.4, 0.5, 0.45, 0.2, 0.1)
    path = tmp_path / "front.cfg"
    assert fr.save_vals(path) == 1
    other = Frontal(FixedFace())
    assert other.defaults(path) == 1
    assert other.dps.fsz == 0.4
    assert other.dps.yoff == 0.45
