from __future__ import annotations

import numpy as np

from depthscene.core import imgops


def test_threshold_is_strictly_over():
    src = np.array([[10, 11, 12]], np.uint8)
    assert imgops.threshold(src, 11).tolist() == [[0, 0, 255]]
    assert imgops.in_range(src, 11, 12).tolist() == [[0, 255, 255]]


def test_nz_box_max_fills_only_zeros():
    src = np.zeros((5, 5), np.uint8)
    src[2, 1] = 40
    src[2, 3] = 90
    out = imgops.nz_box_max(src, 3, 2)

    # centre sees both non-zero pixels
    assert out[2, 2] == 90
    assert out[2, 1] == 40
    # corners see at most one neighbour
    assert out[0, 0] == 0


def test_ccomps4_and_rem_small():
    mask = np.zeros((20, 20), np.uint8)
    mask[1:3, 1:3] = 255
    mask[10:18, 10:18] = 255
    labels, n = imgops.ccomps4(mask)
    assert n == 3
    assert labels.dtype == np.uint16

    kept, big = imgops.rem_small(mask, 0.0, 10)
    assert big == 64
    assert kept[1, 1] == 0
    assert kept[12, 12] == 255


def test_fill_holes_ignores_border_regions():
    mask = np.zeros((12, 12), np.uint8)
    mask[2:10, 2:10] = 255
    mask[5:7, 5:7] = 0
    out = imgops.fill_holes(mask, 10)
    assert out[5, 5] == 255
    assert out[0, 0] == 0


def test_shift_moves_content_and_fills():
    src = np.arange(16, dtype=np.uint8).reshape(4, 4)
    out = imgops.shift(src, 1, 2)
    assert out[2, 1] == src[0, 0]
    assert np.all(out[:2] == 0)
    assert np.all(out[:, 0] == 0)
    assert np.all(imgops.shift(src, 5, 0) == 0)


def test_mix_toward_moves_at_least_dmin():
    cur = np.array([100, 100, 100], np.uint8)
    tgt = np.array([101, 200, 50], np.uint8)
    out = imgops.mix_toward(cur, tgt, 0.1, 2)
    assert out.tolist() == [101, 110, 95]


def test_rotate_patch_centre_pixel():
    src = np.zeros((40, 40), np.uint8)
    src[18:22, 18:22] = 200
    patch, m = imgops.rotate_patch(src, 20.0, 20.0, 10, 10, 30.0)
    assert patch.shape == (10, 10)
    assert m.shape == (2, 3)
    assert patch[5, 5] == 200
