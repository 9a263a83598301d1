from __future__ import annotations

import cv2
import numpy as np

from depthscene.core.background.stabilize import ContrastStretch, PixelKalman, Stabilizer


def _texture():
    rng = np.random.default_rng(11)
    noise = rng.integers(0, 255, size=(120, 160)).astype(np.uint8)
    return cv2.GaussianBlur(noise, (0, 0), 2.0)


def test_first_frame_becomes_reference():
    st = Stabilizer()
    img = _texture()
    assert st.stabilize(img, np.zeros_like(img)) == 1
    assert st.glast is not None
    assert st.fdx == 0.0 and st.fdy == 0.0


def test_measures_horizontal_shake():
    st = Stabilizer()
    img = _texture()
    mask = np.zeros_like(img)
    st.stabilize(img, mask)
    moved = np.roll(img, 2, axis=1)
    assert st.stabilize(moved, mask) == 1
    assert abs(st.fdx + 2.0) < 0.3
    assert abs(st.fdy) < 0.3
    back = st.apply(moved)
    assert back.shape == img.shape


def test_masked_out_frame_is_not_trusted():
    st = Stabilizer()
    img = _texture()
    st.stabilize(img, np.zeros_like(img))
    assert st.stabilize(img, np.full_like(img, 255)) == 0


def test_contrast_stretch_widens_range():
    cs = ContrastStretch()
    rng = np.random.default_rng(2)
    img = rng.integers(100, 141, size=(60, 80)).astype(np.uint8)
    for _ in range(200):
        out = cs.stretch(img)
    assert cs.sc == 2.0
    assert out.std() > 1.5 * img.std()


def test_pixel_kalman_blends():
    pk = PixelKalman(noise=4.0, f0=0.5)
    first = np.full((2, 2), 100, np.uint8)
    assert np.array_equal(pk.flywheel(first), first)
    out = pk.flywheel(np.full((2, 2), 104, np.uint8))
    assert np.all(out == 102)
