from __future__ import annotations

import math

import numpy as np

from depthscene.core.depth.plane_fit import PlaneFitter, _segment_max, add_points, plane_err, S_HT, S_TILT
from depthscene.core.depth.surface import Surface3D
from depthscene.core.types import DEPTH_MIN, PlanePose


def _floor_depth(
    tilt: float, ht: float, roll: float = 0.0, noise: int = 0, seed: int = 0, w: int = 640, h: int = 480
) -> np.ndarray:
    s = Surface3D()
    s.set_size(w, h)
    s.set_camera(0.0, 0.0, ht)
    s.set_view(90.0, tilt, roll)
    s.build_matrices()
    rows, cols = np.mgrid[0:h, 0:w]
    u = (cols - 0.5 * (w - 1)) / s.kf
    v = ((h - 1 - rows) - 0.5 * (h - 1)) / s.kf
    ray = np.stack([u.ravel(), v.ravel(), -np.ones(u.size)])
    dz = (s.rot @ ray)[2]
    with np.errstate(divide="ignore", invalid="ignore"):
        t = np.where(dz < -1e-6, -ht / dz, 0.0)
    raw = t / s.dsc
    raw[(raw < DEPTH_MIN) | (t > 200.0)] = 0
    if noise > 0:
        jit = np.random.default_rng(seed).integers(-noise, noise + 1, size=raw.shape)
        raw = np.where(raw > 0, raw + jit, 0)
    return np.rint(raw).reshape(h, w).astype(np.uint16)


def test_plane_err_on_exact_plane():
    xs, ys = np.meshgrid(np.linspace(-20, 20, 9), np.linspace(-10, 10, 7))
    zs = 0.0 * xs + 1.0 * ys + 50.0
    s = np.zeros(14)
    add_points(s, xs.ravel(), ys.ravel(), zs.ravel())

    std = plane_err(s)
    assert std < 1e-6
    # slope 1 means the normal is 45 degrees off the optical axis
    assert abs(s[S_TILT] - 45.0) < 1e-6
    assert abs(s[S_HT] - 50.0 / math.sqrt(2.0)) < 1e-6


def test_plane_err_singular_is_infinite():
    s = np.zeros(14)
    add_points(s, np.zeros(5), np.zeros(5), np.ones(5))
    assert math.isinf(plane_err(s))


def test_fit_3d_recovers_steep_floor_pose():
    pf = PlaneFitter()
    pose = pf.fit_3d(_floor_depth(-30.0, 44.6, roll=2.0, noise=4, seed=3))

    assert pose.ok
    assert abs(pose.tilt + 30.0) < 1.0
    assert abs(pose.roll - 2.0) < 1.0
    assert abs(pose.height - 44.6) < 1.0


def test_fit_3d_recovers_shallow_floor_pose():
    # camera five degrees down, slightly rolled, about 45 inches up
    pf = PlaneFitter()
    pose = pf.fit_3d(_floor_depth(-5.0, 44.6, roll=2.0, noise=4, seed=5))

    assert pose.ok
    assert abs(pose.tilt + 5.0) < 1.0
    assert abs(pose.roll - 2.0) < 1.0
    assert abs(pose.height - 44.6) < 1.0


def test_fit_3d_failure_repeats_previous():
    pf = PlaneFitter()
    prev = PlanePose(-20.0, 1.0, 30.0, 0.5)
    pose = pf.fit_3d(np.zeros((480, 640), np.uint16), prev)

    assert not pose.ok
    assert (pose.tilt, pose.roll, pose.height) == (-20.0, 1.0, 30.0)


def test_fit_3d_rejects_bad_image():
    pf = PlaneFitter()
    assert not pf.fit_3d(np.zeros((48, 64), np.uint8)).ok


def test_surface_data_outputs_are_zero():
    pf = PlaneFitter()
    assert pf.surface_data(_floor_depth(-30.0, 40.0, noise=4)) == (1, 0.0, 0.0, 0.0)


def test_segment_max_first_segment_is_one_sample_longer():
    grid = np.zeros((1, 160), np.int32)
    grid[0, 20] = 2000
    grid[0, 41] = 3000
    z, k = _segment_max(grid, 80, 4, 8)

    # 21 samples in the first segment, 20 in each later one
    assert (z[0, 0], k[0, 0]) == (2000, 20)
    assert z[0, 1] == 0
    assert (z[0, 2], k[0, 2]) == (3000, 41)
