from __future__ import annotations

import numpy as np
import pytest

from depthscene.core import imgops
from depthscene.core.depth.surface import Surface3D
from depthscene.core.nav.local_occ import FLOOR, MISS, OBST, LocalOcc
from depthscene.core.types import DEPTH_MIN

CAM_POS = np.array([0.0, 0.0, 40.0])
CAM_DIR = np.array([90.0, -60.0, 0.0])


def _robot_view(box: tuple[float, float, float, float, float] | None = None) -> np.ndarray:
    """Depth from a sensor on the robot looking down at the floor ahead.

    `box` is (x0, x1, y0, y1, top) for a flat topped obstacle in inches.
    """

    s = Surface3D()
    s.set_camera(*CAM_POS)
    s.set_view(*CAM_DIR)
    s.build_matrices()
    h, w = s.ih, s.iw
    rows, cols = np.mgrid[0:h, 0:w]
    u = (cols - 0.5 * (w - 1)) / s.kf
    v = ((h - 1 - rows) - 0.5 * (h - 1)) / s.kf
    ray = s.rot @ np.stack([u.ravel(), v.ravel(), -np.ones(u.size)])
    with np.errstate(divide="ignore", invalid="ignore"):
        t = np.where(ray[2] < -1e-6, -CAM_POS[2] / ray[2], 0.0)
        if box is not None:
            x0, x1, y0, y1, top = box
            tb = np.where(ray[2] < -1e-6, (top - CAM_POS[2]) / ray[2], 0.0)
            bx = CAM_POS[0] + tb * ray[0]
            by = CAM_POS[1] + tb * ray[1]
            hit = (tb > 0) & (bx >= x0) & (bx <= x1) & (by >= y0) & (by <= y1)
            t = np.where(hit, tb, t)
    raw = t / s.dsc
    raw[(raw < DEPTH_MIN) | (t > 110.0)] = 0
    return np.rint(raw).reshape(h, w).astype(np.uint16)


def test_reset_centres_robot_and_sizes_maps():
    occ = LocalOcc()
    assert occ.map.shape == (640, 640)
    assert occ.obst.shape == occ.map.shape
    assert occ.robot_pel() == pytest.approx((320.0, 320.0))
    assert occ.num_dir() == 12
    assert occ.step() == 15.0
    assert occ.cmax == 225
    assert not occ.obst.any()


def test_clear_floor_gives_full_lead_ahead():
    occ = LocalOcc()
    assert occ.refine_maps(_robot_view(), CAM_POS, CAM_DIR) == 1
    occ.compute_paths()

    px, py = occ.robot_pel()
    assert occ.obst[int(py) + 80, int(px)] == FLOOR
    assert occ.ahead() > 17.0
    assert occ.behind() < 2.0
    assert occ.move_limit(30.0) == occ.ahead()
    assert occ.move_limit(-10.0) == -occ.behind()
    assert occ.known > 0.5


def test_obstacle_ahead_limits_travel():
    occ = LocalOcc()
    occ.refine_maps(_robot_view((-6.0, 6.0, 20.0, 26.0, 6.0)), CAM_POS, CAM_DIR)
    occ.compute_paths()

    px, py = occ.robot_pel()
    iy = int(round(py + 23.0 / occ.map_ipp))
    assert occ.obst[iy, int(px)] == OBST
    assert 2.0 < occ.ahead() < 8.0
    assert occ.path(0) == occ.ahead()
    assert occ.path(0, fwd=0) == occ.behind()


def test_missing_floor_without_plane():
    occ = LocalOcc()
    assert occ.refine_maps(np.zeros((480, 640), np.uint16), CAM_POS, CAM_DIR) == 0
    assert np.any(occ.obst == MISS)
    assert not np.any(occ.obst == OBST)


def test_adjust_maps_shifts_whole_pixels():
    occ = LocalOcc()
    occ.refine_maps(_robot_view(), CAM_POS, CAM_DIR)
    before = occ.obst.copy()

    assert occ.adjust_maps(0.1, 0.0, 0.0) == 0
    assert occ.adjust_maps(3.0, 0.0, 0.0) == 1
    assert abs(occ.ry) < occ.map_ipp
    assert abs(occ.rx) < 1e-9
    # content slides toward lower rows as the robot drives forward
    assert np.array_equal(occ.obst, imgops.shift(before, 0, -10))

    assert occ.adjust_maps(0.0, 0.0, 90.0) == 0
    assert occ.raim == 90.0


def test_confidence_fades_and_forgets():
    occ = LocalOcc()
    occ.refine_maps(_robot_view(), CAM_POS, CAM_DIR)
    peak = int(occ.conf.max())
    for _ in range(occ.cwait * peak):
        occ.adjust_maps(0.0, 0.0, 0.0)

    assert not occ.conf.any()
    assert not occ.obst.any()


def test_turn_limit_with_free_turning():
    occ = LocalOcc()
    occ.refine_maps(_robot_view(), CAM_POS, CAM_DIR)
    occ.compute_paths()
    assert occ.turn_limit(45.0) == 45.0
    assert occ.turn_limit(-400.0) == occ.max_rt()


def test_bad_input_rejected():
    occ = LocalOcc()
    assert occ.refine_maps(np.zeros((480, 640), np.uint8), CAM_POS, CAM_DIR) == -1


def test_params_round_trip(tmp_path):
    occ = LocalOcc()
    occ.nps.lead = 24.0
    path = tmp_path / "occ.cfg"
    assert occ.save_vals(path) == 1

    other = LocalOcc()
    other.defaults(path)
    assert other.nps.lead == 24.0
    assert other.eps.dej == 96.0
