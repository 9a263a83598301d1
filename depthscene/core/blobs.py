"""Connected-component bounding box and moment tables.

Entries are indexed 1..N-1 (index 0 is the label image background and is never
bounded). The status column uses: -2 never seen, -1 dead this frame,
0 invalid, 1 pending, 2 just valid, 3 stable. Threshold filters only touch the
status column.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from depthscene.core.roi import Roi

logger = logging.getLogger(__name__)

# Largest component whose 8 bit squared sums still fit a 32 bit accumulator.
AREA_LIMIT = 66051

NEVER = -2
DEAD = -1
INVALID = 0
PENDING = 1
JUST_VALID = 2
STABLE = 3


class BBoxTable:
    """Parallel arrays of boxes, statuses, pixel counts and velocities."""

    def __init__(self, size: int = 0) -> None:
        self.set_size(size)

    def set_size(self, size: int) -> None:
        self.total = max(1, int(size))
        self.valid = 0
        self.status = np.full(self.total, NEVER, dtype=np.int32)
        self.count = np.zeros(self.total, dtype=np.int32)
        self.pixels = np.zeros(self.total, dtype=np.int64)
        self.aux = np.zeros(self.total, dtype=np.float64)
        self.vel = np.zeros((self.total, 3), dtype=np.float64)
        self.xlo = np.zeros(self.total, dtype=np.int32)
        self.xhi = np.zeros(self.total, dtype=np.int32)
        self.ylo = np.zeros(self.total, dtype=np.int32)
        self.yhi = np.zeros(self.total, dtype=np.int32)

    def _grow(self, n: int) -> None:
        if n > self.total:
            self.set_size(n)

    def reset_all(self, val: int = 0) -> None:
        self.status[:] = val
        self.count[:] = 0
        self.pixels[:] = 0
        self.aux[:] = 0.0
        self.vel[:] = 0.0

    def get_roi(self, i: int) -> Roi:
        if not 0 < i < self.valid or self.pixels[i] <= 0:
            return Roi()
        return Roi(int(self.xlo[i]), int(self.ylo[i]), int(self.xhi[i] - self.xlo[i] + 1), int(self.yhi[i] - self.ylo[i] + 1))

    def box_mid(self, i: int) -> tuple[float, float]:
        return (0.5 * (self.xlo[i] + self.xhi[i]), 0.5 * (self.ylo[i] + self.yhi[i]))

    def box_w(self, i: int) -> int:
        return int(self.xhi[i] - self.xlo[i] + 1)

    def box_h(self, i: int) -> int:
        return int(self.yhi[i] - self.ylo[i] + 1)

    def find_bbox(self, labels: np.ndarray, roi: Roi | None = None) -> int:
        """Tight boxes and pixel counts for every label inside `roi`.

        Returns the table limit (one more than the highest label seen).
        """

        win = Roi(0, 0, labels.shape[1], labels.shape[0]) if roi is None else roi.copy_roi().clip_roi(labels.shape[1], labels.shape[0])
        sub = labels[win.slices()].astype(np.int64)
        n = int(sub.max()) + 1 if sub.size else 1
        self._grow(n)
        self.valid = n
        self.pixels[:] = 0
        self.status[:] = INVALID
        self.count[:] = 0
        ys, xs = np.indices(sub.shape)
        flat = sub.ravel()
        self.pixels[:n] = np.bincount(flat, minlength=n)
        big = np.iinfo(np.int32).max
        xlo = np.full(n, big, dtype=np.int64)
        ylo = np.full(n, big, dtype=np.int64)
        xhi = np.full(n, -1, dtype=np.int64)
        yhi = np.full(n, -1, dtype=np.int64)
        np.minimum.at(xlo, flat, xs.ravel() + win.x)
        np.minimum.at(ylo, flat, ys.ravel() + win.y)
        np.maximum.at(xhi, flat, xs.ravel() + win.x)
        np.maximum.at(yhi, flat, ys.ravel() + win.y)
        have = self.pixels[:n] > 0
        self.xlo[:n] = np.where(have, xlo, 0)
        self.ylo[:n] = np.where(have, ylo, 0)
        self.xhi[:n] = np.where(have, xhi, -1)
        self.yhi[:n] = np.where(have, yhi, -1)
        self.status[1:n] = np.where(have[1:], PENDING, INVALID)
        # background is never bounded
        self.pixels[0] = 0
        self.status[0] = INVALID
        self.xlo[0], self.xhi[0], self.ylo[0], self.yhi[0] = 0, -1, 0, -1
        return n

    def _live(self, sth: int) -> np.ndarray:
        sel = np.zeros(self.total, dtype=bool)
        sel[1 : self.valid] = self.status[1 : self.valid] > sth
        return sel

    def count_over(self, sth: int = 0) -> int:
        return int(np.count_nonzero(self._live(sth)))

    def index_over(self, k: int, sth: int = 0) -> int:
        """Table index of the k-th live component (counting from 0), or -1."""

        live = np.flatnonzero(self._live(sth))
        return int(live[k]) if 0 <= k < live.size else -1

    def area_thresh(self, lo: int, hi: int | None = None, sth: int = 0, bad: int = INVALID) -> None:
        """Mark live components with pixel counts outside [lo, hi] as `bad`."""

        sel = self._live(sth)
        fail = self.pixels < lo
        if hi is not None:
            fail |= self.pixels > hi
        self.status[sel & fail] = bad

    def aspect_thresh(self, lo: float, hi: float, sth: int = 0, bad: int = INVALID) -> None:
        """Mark live boxes whose height/width ratio is outside [lo, hi]."""

        sel = self._live(sth)
        w = np.maximum(1, self.xhi - self.xlo + 1).astype(np.float64)
        h = np.maximum(1, self.yhi - self.ylo + 1).astype(np.float64)
        asp = h / w
        self.status[sel & ((asp < lo) | (asp > hi))] = bad

    def pixel_thresh(self, labels: np.ndarray, data: np.ndarray, th: float, sth: int = 0, bad: int = INVALID) -> None:
        """Keep only live components whose max value in `data` is over `th`."""

        top = np.zeros(self.total, dtype=np.float64)
        np.maximum.at(top, labels.ravel().astype(np.int64), data.ravel().astype(np.float64))
        self.status[self._live(sth) & (top <= th)] = bad

    def rem_border(self, width: int, height: int, margin: int = 10, sth: int = 0, bad: int = INVALID) -> None:
        """Invalidate live components whose box comes within `margin` of an edge."""

        sel = self._live(sth)
        touch = (self.xlo < margin) | (self.ylo < margin)
        touch |= (self.xhi >= width - margin) | (self.yhi >= height - margin)
        self.status[sel & touch] = bad

    def poison_over(self, labels: np.ndarray, marks: np.ndarray, th: float = 0) -> int:
        """Invalidate components containing any mark over `th`; returns count hit."""

        hit = np.unique(labels[(marks > th) & (labels > 0)].astype(np.int64))
        hit = hit[hit < self.valid]
        self.status[hit] = INVALID
        return int(hit.size)

    def retain_over(self, labels: np.ndarray, marks: np.ndarray, th: float = 0) -> int:
        """Keep only components containing some mark over `th`; returns survivors."""

        hit = np.zeros(self.total, dtype=bool)
        ids = labels[(marks > th) & (labels > 0)].astype(np.int64)
        hit[ids[ids < self.total]] = True
        sel = self._live(0)
        self.status[sel & ~hit] = INVALID
        return int(np.count_nonzero(sel & hit))

    def biggest(self, sth: int = 0) -> int:
        """Index of the live component with the most pixels (0 if none)."""

        sel = self._live(sth)
        if not sel.any():
            return 0
        return int(np.argmax(np.where(sel, self.pixels, -1)))

    def mark_valid(self, labels: np.ndarray, sth: int = 0, val: int = 255) -> np.ndarray:
        """Binary image of all pixels belonging to live components."""

        ok = self._live(sth)
        lab = labels.astype(np.int64)
        lab = np.where(lab < self.total, lab, 0)
        return np.where(ok[lab], val, 0).astype(np.uint8)


class BlobTable(BBoxTable):
    """Box table extended with first/second moments and a per-component value."""

    def set_size(self, size: int) -> None:
        super().set_size(size)
        self.value = np.zeros(self.total, dtype=np.float64)
        self.cx = np.zeros(self.total, dtype=np.float64)
        self.cy = np.zeros(self.total, dtype=np.float64)
        self.major = np.zeros(self.total, dtype=np.float64)
        self.minor = np.zeros(self.total, dtype=np.float64)
        self.angle = np.zeros(self.total, dtype=np.float64)

    def find_params(self, labels: np.ndarray) -> int:
        """Boxes plus centroid and equivalent ellipse for every component."""

        n = self.find_bbox(labels)
        flat = labels.ravel().astype(np.int64)
        ys, xs = np.indices(labels.shape)
        # y measured upward from the bottom row
        xf = xs.ravel().astype(np.float64)
        yf = (labels.shape[0] - 1 - ys).ravel().astype(np.float64)
        cnt = self.pixels[:n].astype(np.float64)
        sx = np.bincount(flat, xf, minlength=n)
        sy = np.bincount(flat, yf, minlength=n)
        sxx = np.bincount(flat, xf * xf, minlength=n)
        syy = np.bincount(flat, yf * yf, minlength=n)
        sxy = np.bincount(flat, xf * yf, minlength=n)
        for i in range(1, n):
            a = cnt[i]
            if a <= 0:
                continue
            if a > AREA_LIMIT:
                logger.debug("Blob %d too large for moments (%d pixels)", i, int(a))
                self.status[i] = INVALID
                continue
            self._ellipse(i, a, sx[i], sy[i], sxx[i], syy[i], sxy[i])
        return n

    def _ellipse(self, i: int, n: float, sx: float, sy: float, sxx: float, syy: float, sxy: float) -> None:
        mx, my = sx / n, sy / n
        cxx = sxx / n - mx * mx
        cyy = syy / n - my * my
        cxy = sxy / n - mx * my
        mid = 0.5 * (cxx + cyy)
        rt = math.sqrt(max(0.0, 0.25 * (cxx - cyy) ** 2 + cxy * cxy))
        self.cx[i] = mx
        self.cy[i] = my
        self.major[i] = 4.0 * math.sqrt(max(0.0, mid + rt))
        self.minor[i] = 4.0 * math.sqrt(max(0.0, mid - rt))
        self.angle[i] = math.degrees(0.5 * math.atan2(2.0 * cxy, cxx - cyy))

    def elongation(self, i: int) -> float:
        return self.major[i] / max(1e-6, self.minor[i])

    def _reduce(self, labels: np.ndarray, data: np.ndarray, fn: np.ufunc, init: float) -> None:
        n = max(self.valid, int(labels.max()) + 1)
        self._grow(n)
        vals = np.full(self.total, init, dtype=np.float64)
        fn.at(vals, labels.ravel().astype(np.int64), data.ravel().astype(np.float64))
        self.value[:] = np.where(np.isfinite(vals), vals, 0.0)

    def min_each(self, labels: np.ndarray, data: np.ndarray) -> None:
        self._reduce(labels, data, np.minimum, np.inf)

    def max_each(self, labels: np.ndarray, data: np.ndarray) -> None:
        self._reduce(labels, data, np.maximum, -np.inf)

    def avg_each(self, labels: np.ndarray, data: np.ndarray) -> None:
        flat = labels.ravel().astype(np.int64)
        n = max(self.total, int(flat.max()) + 1)
        tot = np.bincount(flat, data.ravel().astype(np.float64), minlength=n)
        cnt = np.bincount(flat, minlength=n)
        self._grow(n)
        self.value[:n] = np.where(cnt > 0, tot / np.maximum(cnt, 1), 0.0)

    def map_value(self, labels: np.ndarray, bg: int = 0) -> np.ndarray:
        """Paint each pixel with its component's value slot (background gets `bg`)."""

        lab = labels.astype(np.int64)
        out = np.clip(np.rint(self.value[np.minimum(lab, self.total - 1)]), 0, 255).astype(np.uint8)
        out[lab == 0] = bg
        return out
