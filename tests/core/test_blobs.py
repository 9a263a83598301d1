from __future__ import annotations

import numpy as np

from depthscene.core.blobs import INVALID, PENDING, BBoxTable, BlobTable


def _two_blobs() -> np.ndarray:
    labels = np.zeros((30, 40), np.uint16)
    labels[2:6, 3:13] = 1
    labels[15:27, 20:24] = 2
    return labels


def test_find_bbox_boxes_and_counts():
    tab = BBoxTable(4)
    n = tab.find_bbox(_two_blobs())

    assert n == 3
    assert tab.status[0] == INVALID
    assert tab.status[1] == PENDING
    assert tab.pixels[1] == 40
    r = tab.get_roi(2)
    assert (r.x, r.y, r.w, r.h) == (20, 15, 4, 12)
    assert tab.count_over() == 2


def test_area_thresh_and_index_over():
    tab = BBoxTable()
    tab.find_bbox(_two_blobs())
    tab.area_thresh(45)

    assert tab.count_over() == 1
    assert tab.index_over(0) == 2
    assert tab.index_over(1) == -1


def test_find_params_elongation_and_angle():
    tab = BlobTable(4)
    tab.find_params(_two_blobs())

    # wide blob lies along x, tall one along y
    assert abs(tab.angle[1]) < 1.0
    assert abs(abs(tab.angle[2]) - 90.0) < 1.0
    assert tab.elongation(1) > 2.0
    assert tab.elongation(2) > 2.0
    assert abs(tab.cx[2] - 21.5) < 1e-6


def test_min_each_and_map_value():
    labels = _two_blobs()
    data = np.full(labels.shape, 100, np.uint8)
    data[3, 5] = 7
    tab = BlobTable(4)
    tab.find_bbox(labels)
    tab.min_each(labels, data)
    painted = tab.map_value(labels, bg=255)

    assert painted[2, 3] == 7
    assert painted[20, 21] == 100
    assert painted[0, 0] == 255
