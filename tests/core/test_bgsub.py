from __future__ import annotations

import numpy as np

from depthscene.core.background.bgsub import HEAL_RED, BgSub

DARK = (20, 30, 45)


def _scene(seed: int, obj=None) -> np.ndarray:
    """Gray ramp seen through a little sensor noise, optionally with a box on it."""

    rng = np.random.default_rng(seed)
    ramp = np.repeat((80.0 + 0.2 * np.arange(160))[None, :], 120, axis=0)
    img = np.repeat(ramp[..., None], 3, axis=2)
    if obj is not None:
        img[40:80, 60:100] = obj
    img = img + rng.integers(-3, 4, size=img.shape)
    return np.clip(img, 0, 255).astype(np.uint8)


def _ready() -> BgSub:
    bs = BgSub()
    bs.fps.wind = 0
    bs.set_bg(_scene(0))
    return bs


def _until_heal(bs: BgSub, start: int = 100, limit: int = 30) -> int:
    for i in range(limit):
        code, _ = bs.find_fg(_scene(start + i, DARK))
        if code == -1:
            return i + 1
    return -1


def test_set_bg_sizes_model():
    bs = _ready()
    assert (bs.fw, bs.fh, bs.ff) == (160, 120, 3)
    assert bs.samp == 1
    assert bs.status() == 1
    assert np.array_equal(bs.full_bg(), _scene(0))


def test_empty_scene_has_no_foreground():
    bs = _ready()
    for i in range(3):
        code, mask = bs.find_fg(_scene(1 + i), want_mask=True)
        assert code == 1
        assert mask.shape == (120, 160)
    assert bs.fg_fraction() == 0.0
    assert bs.object_cnt() == 0
    assert bs.object_box(0) is None


def test_new_object_is_foreground():
    bs = _ready()
    for i in range(2):
        bs.find_fg(_scene(1 + i))
    code, _ = bs.find_fg(_scene(10, DARK))
    assert code == 1
    assert 0.05 < bs.fg_fraction() < 0.12
    assert bs.object_cnt() == 1
    box = bs.object_box(0)
    assert abs(box.x - 60) <= 4 and abs(box.y - 40) <= 4
    assert abs(box.w - 40) <= 8 and abs(box.h - 40) <= 8
    assert bs.full_sal().shape == (120, 160)
    labels = bs.full_mask(cc=1)
    assert labels.dtype == np.uint16
    assert labels[60, 80] > 0


def test_force_bg_absorbs_object():
    bs = _ready()
    frame = _scene(10, DARK)
    bs.find_fg(frame)
    before = bs.fg_fraction()
    n = bs.force_bg(np.full((120, 160), 255, np.uint8), frame)
    assert n == np.count_nonzero(bs.mask > 128)
    assert n > 0
    bs.find_fg(_scene(11, DARK))
    assert bs.fg_fraction() < 0.5 * before


def test_stationary_object_is_healed():
    bs = _ready()
    bs.bps.stable = 10
    n = _until_heal(bs)
    assert n > 5
    labels, cnt = bs.full_heal()
    assert cnt == 1
    assert labels[60, 80] == 1
    assert np.any(bs.mask == HEAL_RED)
    assert bs.heal_type(1) == 1
    assert bs.heal_type(2) == 0
    for i in range(3):
        bs.find_fg(_scene(200 + i, DARK))
    assert bs.fg_fraction() < 0.01


def test_veto_keeps_object_in_foreground():
    bs = _ready()
    bs.bps.stable = 10
    assert _until_heal(bs) > 0
    assert bs.veto_heal(5) == 0
    assert bs.veto_heal(0) == 1
    code, _ = bs.find_fg(_scene(300, DARK))
    assert code == 1
    assert bs.fg_fraction() > 0.05


def test_veto_areas_blocks_selected_region():
    bs = _ready()
    bs.bps.stable = 10
    assert _until_heal(bs) > 0
    keep = np.zeros((120, 160), np.uint8)
    keep[30:90, 50:110] = 255
    assert bs.veto_areas(keep) > 0
    assert bs.veto_areas(np.zeros((10, 10), np.uint8)) == 0


def test_duplicate_frames():
    bs = BgSub()
    bs.fps.wind = 0
    bs.f2ps.maxdup = 3
    frame = _scene(1)
    assert bs.find_fg(frame)[0] != 0
    for _ in range(3):
        assert bs.find_fg(frame)[0] == 0
    assert bs.find_fg(frame)[0] == -2
    assert bs.find_fg(_scene(2))[0] != -2


def test_knocked_camera_resets_model():
    bs = _ready()
    bs.bps.still = 2
    codes = []
    for i in range(3):
        rng = np.random.default_rng(400 + i)
        img = np.array([200, 30, 30]) + rng.integers(-3, 4, size=(120, 160, 3))
        codes.append(bs.find_fg(img.astype(np.uint8))[0])
    assert codes == [1, 1, -2]
    assert bs.status() == -1


def test_wrong_size_frame_rejected():
    bs = _ready()
    assert bs.find_fg(np.zeros((60, 80, 3), np.uint8)) == (0, None)
    assert bs.find_fg(np.zeros((5,), np.uint8)) == (0, None)


def test_merge_builds_model():
    bs = BgSub()
    assert bs.status() == -1
    assert bs.merge_bg(_scene(0)) == 0
    for i in range(29):
        last = bs.merge_bg(_scene(1 + i))
    assert last == 1


def test_background_file_round_trip(tmp_path):
    bs = BgSub()
    bs.set_bg(_scene(0), 12, 9, 20)
    assert bs.noise() == (12.0, 9.0, 20.0)
    path = tmp_path / "bg.bmp"
    assert bs.save_bg(path) == 1

    other = BgSub()
    assert other.load_bg(path) == 1
    assert other.noise() == (12.0, 9.0, 20.0)
    assert np.array_equal(other.full_bg(), _scene(0))
    assert other.status() == 1


def test_background_file_errors(tmp_path):
    bs = BgSub()
    assert bs.save_bg(tmp_path / "none.bmp") == -1
    assert bs.load_bg(tmp_path / "missing.bmp") == 0
    junk = tmp_path / "junk.bmp"
    junk.write_bytes(b"definitely not an image")
    assert bs.load_bg(junk) == -1
    assert bs.status() == -1


def test_params_round_trip(tmp_path):
    bs = BgSub()
    bs.kps.pth = 120
    bs.nps.vdef = 14
    path = tmp_path / "bgs.cfg"
    assert bs.save_vals(path) == 1
    other = BgSub()
    assert other.defaults(path) == 1
    assert other.kps.pth == 120
    assert other.rn.vdef == 14.0


def test_default_stable_object_heals_on_schedule():
    bs = _ready()
    n = _until_heal(bs, limit=200)
    assert 140 < n <= bs.bps.stable
    assert np.any(bs.mask == HEAL_RED)
    code, _ = bs.find_fg(_scene(400, DARK))
    assert code == 1
    assert bs.fg_fraction() < 0.01


def test_repeat_is_judged_against_last_distinct_frame():
    bs = BgSub()
    bs.fps.wind = 0
    a = _scene(1)
    b = a.copy()
    b[10, :120] += 50
    c = b.copy()
    c[20, :120] += 50
    assert bs.find_fg(a)[0] != 0
    # each step changes under 1% of the pixels but together they change more
    assert bs.find_fg(b)[0] == 0
    assert bs.find_fg(c)[0] != 0


def test_knocked_camera_waits_before_relearning():
    bs = _ready()
    still, bcnt = bs.bps.still, bs.bps.bcnt
    codes = []
    for i in range(still + 1):
        rng = np.random.default_rng(600 + i)
        img = np.array([200, 30, 30]) + rng.integers(-3, 4, size=(120, 160, 3))
        codes.append(bs.find_fg(img.astype(np.uint8))[0])
    assert codes[:still] == [1] * still
    assert codes[still] == -2
    assert bs.status() == -1

    for i in range(still):
        assert bs.find_fg(_scene(500 + i))[0] == -2
        assert bs.status() == -1
    for i in range(still, still + bcnt - 1):
        assert bs.find_fg(_scene(500 + i))[0] == 1
        assert bs.status() == -1
    assert bs.find_fg(_scene(500 + still + bcnt - 1))[0] == 1
    assert bs.status() == 1
