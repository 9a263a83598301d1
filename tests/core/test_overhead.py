from __future__ import annotations

import numpy as np

from depthscene.core.depth.overhead import Overhead3D
from depthscene.core.depth.surface import Surface3D, height_to_pel, pel_to_height


def _down_view(ht: float = 90.0, box: float = 0.0) -> np.ndarray:
    """Depth seen by a camera looking straight down at a floor, with an optional box top."""

    s = Surface3D()
    d16 = np.full((480, 640), int(round(ht / s.dsc)), np.uint16)
    if box > 0.0:
        d16[200:280, 280:360] = int(round((ht - box) / s.dsc))
    return d16


def _overhead() -> Overhead3D:
    ov = Overhead3D()
    ov.set_map(144.0, 144.0, 72.0, 72.0, -4.0, 40.0, 0.5, 0.0)
    ov.set_cam(0, 0.0, 0.0, 90.0, 90.0, -90.0, 0.0, 240.0)
    ov.reset()
    return ov


def test_height_encoding_limits():
    assert height_to_pel(0.0, 0.0, 40.0) == 1
    assert height_to_pel(40.0, 0.0, 40.0) == 252
    assert height_to_pel(80.0, 0.0, 40.0) == 252
    assert abs(pel_to_height(252, 0.0, 40.0) - 40.0) < 1e-9


def test_img_pt_and_world_pt_agree():
    s = Surface3D()
    s.set_camera(10.0, -5.0, 60.0)
    s.set_view(80.0, -35.0, 2.0)
    s.build_matrices()
    ix, iy, iz = s.img_pt_z(12.0, 40.0, 3.0)
    wx, wy, wz = s.world_pt(ix, iy, iz)

    assert abs(wx - 12.0) < 1e-6
    assert abs(wy - 40.0) < 1e-6
    assert abs(wz - 3.0) < 1e-6


def test_ingest_plots_box_over_floor_and_max_merges():
    ov = _overhead()
    assert ov.ingest(_down_view(box=30.0)) == 1
    cx = ov.pels(72.0)
    top = int(height_to_pel(30.0, -4.0, 40.0))
    flat = int(height_to_pel(0.0, -4.0, 40.0))

    assert ov.map.shape == (288, 288)
    assert abs(int(ov.map[cx, cx]) - top) <= 1
    assert abs(int(ov.map[cx, cx + 80]) - flat) <= 1
    assert ov.map[0, 0] == 0

    # a later floor-only view from the same cycle keeps the box
    assert ov.ingest(_down_view()) == 1
    assert abs(int(ov.map[cx, cx]) - top) <= 1

    # a new cycle starts from a clean map
    ov.reset()
    ov.ingest(_down_view())
    assert abs(int(ov.map[cx, cx]) - flat) <= 1


def test_est_pose_on_level_floor():
    ov = _overhead()
    pose = ov.est_pose(_down_view())

    assert pose is not None
    assert abs(pose.height) < 0.5
    assert abs(pose.tilt) < 1.0
    assert abs(pose.roll) < 1.0


def test_plane_dev_marks_box_above_floor():
    ov = _overhead()
    ov.ingest(_down_view(box=30.0))
    devs = np.zeros_like(ov.map)
    assert ov.plane_dev(devs, ov.map, 2.0) == 1

    cx = ov.pels(72.0)
    assert abs(int(devs[cx, cx + 80]) - 128) <= 3
    assert devs[cx, cx] == 255


def test_plane_dev_rejects_sparse_fit():
    ov = _overhead()
    ov.set_fit(n=10 ** 7)
    ov.ingest(_down_view())
    devs = np.zeros_like(ov.map)
    assert ov.plane_dev(devs, ov.map, 2.0) == 0
    assert not devs.any()


def test_bad_input_is_rejected():
    ov = _overhead()
    assert ov.ingest(np.zeros((480, 640), np.uint8)) == 0
    assert ov.dump_loc(5) is None
    assert ov.dump_loc(0).tolist() == [0.0, 0.0, 90.0]


def _pair() -> Overhead3D:
    """Two downward cameras whose floor footprints do not touch."""

    ov = Overhead3D(2)
    ov.set_map(144.0, 144.0, 72.0, 72.0, -4.0, 40.0, 0.5, 0.0)
    ov.set_cam(0, -40.0, 0.0, 60.0, 90.0, -90.0, 0.0, 240.0, 0)
    ov.set_cam(1, 40.0, 0.0, 60.0, 90.0, -90.0, 0.0, 240.0, 1)
    ov.reset()
    return ov


def _half_view(ht: float) -> np.ndarray:
    d16 = _down_view(ht)
    d16[240:] = 0
    return d16


def test_fused_map_is_union_of_single_cameras():
    ov = _pair()
    singles = []
    for cam in (0, 1):
        ov.reset()
        assert ov.ingest(_half_view(60.0), cam=cam) == 1
        raw = ov.map.copy()
        singles.append((raw, np.count_nonzero(ov.interpolate(8, 10))))
    (map_a, n_a), (map_b, n_b) = singles
    assert n_a > 0 and n_b > 0
    assert not np.any((map_a > 0) & (map_b > 0))

    ov.reset()
    ov.ingest(_half_view(60.0), cam=0)
    ov.ingest(_half_view(60.0), cam=1)
    assert np.array_equal(ov.map, np.maximum(map_a, map_b))
    assert [c.used for c in ov.cams] == [1, 1]
    n = np.count_nonzero(ov.interpolate(8, 10))
    assert abs(n - (n_a + n_b)) <= 0.01 * (n_a + n_b)


def test_interpolate_fills_small_gaps_only():
    ov = _overhead()
    ov.ingest(_down_view())
    cx = ov.pels(72.0)
    ov.map[cx, cx] = 0
    filled = ov.interpolate(3, 3)
    assert filled[cx, cx] == ov.map[cx, cx + 1]
    assert filled[0, 0] == 0
    assert filled is ov.map2


def test_reproject_writes_single_camera_map():
    ov = _pair()
    ov.ingest(_half_view(60.0), cam=0)
    before = ov.map.copy()

    dest = np.zeros_like(ov.map)
    assert ov.reproject(dest, _half_view(60.0), cam=1) == 1
    assert np.array_equal(ov.map, before)
    assert dest.any()
    assert not np.any((dest > 0) & (before > 0))
    assert [c.used for c in ov.cams] == [0, 1]
    assert ov.reproject(np.zeros((5, 5), np.uint8), _half_view(60.0)) == 0


def test_correct_undoes_camera_roll():
    src = np.zeros((480, 640), np.uint16)
    src[0, 0] = 1000
    ov = Overhead3D()

    ov.set_cam(0, 0.0, 0.0, 90.0, 90.0, -90.0, 0.0)
    assert np.array_equal(ov.correct(src), src)

    ov.set_cam(0, 0.0, 0.0, 90.0, 90.0, -90.0, 90.0)
    side = ov.correct(src)
    assert side.shape == (640, 480)
    assert side[0, 479] == 1000

    ov.set_cam(0, 0.0, 0.0, 90.0, 90.0, -90.0, 180.0)
    flip = ov.correct(src)
    assert flip.shape == (480, 640)
    assert flip[479, 639] == 1000

    ov.set_cam(0, 0.0, 0.0, 90.0, 90.0, -90.0, 0.0)
    assert ov.correct(np.zeros((1080, 1920), np.uint16)).shape == (540, 960)


def test_src_size_sets_fields_of_view():
    ov = Overhead3D()
    ov.set_cam(0, 0.0, 0.0, 90.0, 90.0, -90.0, 0.0)
    ov.src_size(640, 480)
    assert abs(ov.hfov - 62.75) < 0.1
    assert abs(ov.vfov - 49.14) < 0.1

    ov.src_size(960, 540, 540.685, 1.0)
    assert abs(ov.hfov - 64.88) < 0.1

    ov.set_cam(0, 0.0, 0.0, 90.0, 90.0, -90.0, 90.0)
    ov.src_size(640, 480)
    assert (ov.iw, ov.ih) == (480, 640)
    assert abs(ov.hfov - 49.14) < 0.1
    assert abs(ov.vfov - 62.75) < 0.1
