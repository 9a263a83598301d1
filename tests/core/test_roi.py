from __future__ import annotations

import numpy as np

from depthscene.core.roi import Image, Roi, line_bytes


def test_line_bytes_pads_to_four():
    assert line_bytes(5) == 8
    assert line_bytes(4) == 4
    assert line_bytes(3, 3) == 12


def test_roi_clip_and_intersect():
    r = Roi(-5, 10, 20, 100).clip_roi(50, 40)
    assert (r.x, r.y, r.w, r.h) == (0, 10, 15, 30)

    both = Roi(0, 0, 10, 10).intersect(Roi(5, 5, 10, 10))
    assert (both.x, both.y, both.w, both.h) == (5, 5, 5, 5)
    assert Roi(0, 0, 10, 10).overlap(Roi(20, 20, 5, 5)) == 0


def test_roi_absorb_and_scale():
    r = Roi()
    r.absorb(Roi(2, 3, 4, 5))
    assert (r.x, r.y, r.w, r.h) == (2, 3, 4, 5)
    r.absorb(Roi(10, 0, 2, 2))
    assert (r.x, r.y, r.x2, r.y2) == (2, 0, 12, 8)
    r.scale(2.0)
    assert (r.x, r.y, r.w, r.h) == (4, 0, 20, 16)


def test_frac_roi_counts_from_bottom():
    r = Roi().frac_roi(0.0, 0.5, 0.0, 0.25, 100, 80)
    # bottom quarter of the image, left half
    assert (r.x, r.w) == (0, 50)
    assert (r.y, r.h) == (60, 20)


def test_image_combine_only_touches_common_window():
    a = Image(8, 8).fill_arr(10)
    b = Image(8, 8).fill_arr(20)
    a.set_roi(Roi(0, 0, 4, 8))
    b.set_roi(Roi(2, 0, 6, 8))
    win = a.combine(lambda x, y: x + y, a, b)

    assert (win.x, win.w) == (2, 2)
    assert np.all(a.pix[:, 2:4] == 30)
    assert np.all(a.pix[:, :2] == 10)
    assert np.all(a.pix[:, 4:] == 10)


def test_image_wrap_detects_fields():
    assert Image.wrap(np.zeros((4, 6, 3), np.uint8)).fields == 3
    assert Image.wrap(np.zeros((4, 6), np.uint16)).fields == 2
    img = Image.wrap(np.zeros((4, 6), np.uint8))
    assert img.fields == 1 and img.width == 6 and img.height == 4
