"""Input conditioning for background subtraction.

`Stabilizer` removes small camera shakes (and optionally rolling-sync tearing)
by block matching against a reference monochrome frame. `ContrastStretch`
expands washed-out images using slowly tracked histogram percentiles.
`PixelKalman` smooths each pixel over time.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from depthscene.core import imgops
from depthscene.core.background.agc import Knob

logger = logging.getLogger(__name__)

# Reference frame is refreshed at least this often.
REF_LIFE = 100


def _ssd(a: np.ndarray, b: np.ndarray, ok: np.ndarray, dx: int, dy: int) -> float:
    """Mean squared difference of `a` shifted by (dx, dy) against `b` over `ok`."""

    h, w = b.shape
    ys = slice(max(0, dy), h + min(0, dy))
    xs = slice(max(0, dx), w + min(0, dx))
    ya = slice(max(0, -dy), h - max(0, dy))
    xa = slice(max(0, -dx), w - max(0, dx))
    sel = ok[ys, xs]
    n = np.count_nonzero(sel)
    if n == 0:
        return float("inf")
    d = a[ya, xa][sel] - b[ys, xs][sel]
    return float(np.dot(d, d)) / n


def _vertex(lo: float, mid: float, hi: float) -> float:
    """Sub-step offset of the minimum of a parabola through three samples."""

    den = lo - 2.0 * mid + hi
    if not np.isfinite(den) or den <= 0.0:
        return 0.0
    return float(np.clip(0.5 * (lo - hi) / den, -0.5, 0.5))


class Stabilizer:
    """Block matching de-jitter with out-of-range shake counting.

    `st_bad` goes positive after out-of-range shifts and negative while things
    are fine; it starts well negative so a fresh reference is trusted.
    """

    def __init__(self) -> None:
        self.glast: np.ndarray | None = None
        self.refm: np.ndarray | None = None
        self.vdx = np.zeros(0)
        self.reset()

    def reset(self) -> None:
        self.st_cnt = -1
        self.st_bad = -50
        self.fdx = 0.0
        self.fdy = 0.0
        self.vdx = np.zeros(0)

    def align(self, gnow: np.ndarray, gref: np.ndarray, ok: np.ndarray, xrng: int, yrng: int, fine: int = 1) -> tuple[float, float]:
        """Shift (dx, dy) that makes `gnow` line up with `gref`.

        The coarse pass scores every integer offset on a sparse grid of
        pixels; the fine pass re-scores the winner's neighbours on all pixels
        and fits a parabola along each axis.
        """

        a = gnow.astype(np.float32)
        b = gref.astype(np.float32)
        grid = np.zeros_like(ok)
        grid[::4, ::4] = True
        sparse = ok & grid if np.count_nonzero(ok & grid) >= 16 else ok
        best, bx, by = float("inf"), 0, 0
        for dy in range(-yrng, yrng + 1):
            for dx in range(-xrng, xrng + 1):
                e = _ssd(a, b, sparse, dx, dy)
                if e < best:
                    best, bx, by = e, dx, dy
        if fine <= 0 or not np.isfinite(best):
            return float(bx), float(by)
        mid = _ssd(a, b, ok, bx, by)
        fx = bx + _vertex(_ssd(a, b, ok, bx - 1, by), mid, _ssd(a, b, ok, bx + 1, by))
        fy = by + _vertex(_ssd(a, b, ok, bx, by - 1), mid, _ssd(a, b, ok, bx, by + 1))
        return fx, fy

    def est_wobble(self, gnow: np.ndarray, gref: np.ndarray, ok: np.ndarray, wx: int) -> np.ndarray:
        """Per-row horizontal offsets (on top of the global shift) for sync tearing."""

        h, w = gref.shape
        a = imgops.frac_shift(gnow, self.fdx, self.fdy).astype(np.float32)
        b = gref.astype(np.float32)
        cost = np.full((h, 2 * wx + 1), np.inf)
        for k, dx in enumerate(range(-wx, wx + 1)):
            xs = slice(max(0, dx), w + min(0, dx))
            xa = slice(max(0, -dx), w - max(0, dx))
            d = np.abs(a[:, xa] - b[:, xs])
            sel = ok[:, xs]
            cnt = sel.sum(axis=1)
            tot = np.where(sel, d, 0.0).sum(axis=1)
            cost[:, k] = np.where(cnt > 0, tot / np.maximum(cnt, 1), np.inf)
        rows = np.argmin(cost, axis=1) - wx
        rows = np.where(np.isfinite(cost.min(axis=1)), rows, 0).astype(np.float64)
        sm = np.convolve(rows, np.ones(3) / 3.0, mode="same")
        return sm + self.fdx

    def stabilize(
        self, src: np.ndarray, mask: np.ndarray, xrng: int = 4, yrng: int = 2, wx: int = 2, mot: int = 2, sync: int = 0
    ) -> int:
        """Measure the shift of `src` relative to the reference frame.

        `mask` marks foreground (over 128) at the size of `src`. Results land
        in `fdx`, `fdy` and, with `sync`, the per-row offsets `vdx`. Returns 0
        while recent shifts have been out of range (or too much is masked),
        else 1.
        """

        self.fdx = self.fdy = 0.0
        self.vdx = np.zeros(0)
        gnow = imgops.mono(src)
        if self.st_cnt < 0 or self.glast is None or self.glast.shape != gnow.shape:
            self.st_cnt = 0
            self.glast = gnow
            self.refm = mask.copy()
            return 1
        self.st_cnt += 1

        both = np.maximum(mask, self.refm)
        if imgops.frac_over(both) > 0.5:
            return 0
        ok = both <= 128
        if mot > 0:
            self.fdx, self.fdy = self.align(gnow, self.glast, ok, xrng, yrng, mot - 1)
        if sync > 0:
            self.vdx = self.est_wobble(gnow, self.glast, ok, wx)

        if abs(self.fdx) >= xrng or abs(self.fdy) >= yrng:
            self.st_bad = max(0, self.st_bad) + 1
            logger.debug("Shake out of range: %4.1f %4.1f", self.fdx, self.fdy)
        else:
            self.st_bad = min(0, self.st_bad) - 1

        if self.st_cnt > REF_LIFE or self.st_bad > 3:
            self.glast = gnow
            self.refm = mask.copy()
            self.st_cnt = 0
        return 0 if self.st_bad > -5 else 1

    def apply(self, src: np.ndarray) -> np.ndarray:
        """Undo the last measured shift (row by row if tearing was estimated)."""

        if self.vdx.size != src.shape[0] or not np.any(self.vdx != self.fdx):
            return imgops.frac_shift(src, self.fdx, self.fdy)
        h, w = src.shape[:2]
        xs, ys = np.meshgrid(np.arange(w, dtype=np.float32), np.arange(h, dtype=np.float32))
        mx = xs - self.vdx.astype(np.float32)[:, None]
        my = ys - np.float32(self.fdy)
        return cv2.remap(src, mx, my, cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)


class ContrastStretch:
    """Linear stretch driven by 5th and 95th percentile knobs with hysteresis."""

    def __init__(self) -> None:
        self.ct0 = Knob(20.0, 0.0, 150.0, 0.05)
        self.ct1 = Knob(240.0, 50.0, 255.0, 0.05)
        self.off = 0
        self.sc = 1.0

    def reset(self) -> None:
        self.ct0.reset()
        self.ct1.reset()
        self.off = 0
        self.sc = 1.0

    def stretch(self, src: np.ndarray, smax: float = 2.0) -> np.ndarray:
        hist = np.bincount(src.ravel(), minlength=256).astype(np.float64)
        hist[0] = hist[255] = 0.0
        hist = np.convolve(hist, np.ones(9) / 9.0, mode="same")
        tot = hist.sum()
        if tot <= 0.0:
            return src.copy()
        cum = np.cumsum(hist) / tot
        ilo = float(np.searchsorted(cum, 0.05))
        ihi = float(np.searchsorted(cum, 0.95))
        self.ct0.update(ilo)
        self.ct1.update(ihi)
        span = max(1.0, self.ct1.val - self.ct0.val)
        self.sc = min(smax, 255.0 / span)
        if self.sc <= 1.0:
            self.off, self.sc = 0, 1.0
            return src.copy()
        self.off = -self.ct0.ival()
        f = (src.astype(np.float32) + self.off) * self.sc
        return np.clip(np.rint(f), 0, 255).astype(np.uint8)


class PixelKalman:
    """Per-pixel scalar Kalman filter with fixed measurement noise."""

    def __init__(self, noise: float = 4.0, f0: float = 0.5) -> None:
        self.noise = noise
        self.f0 = f0
        self.est: np.ndarray | None = None
        self.var: np.ndarray | None = None

    def reset(self) -> None:
        self.est = None
        self.var = None

    def flywheel(self, src: np.ndarray) -> np.ndarray:
        x = src.astype(np.float32)
        n2 = self.noise * self.noise
        if self.est is None or self.est.shape != x.shape:
            self.est = x.copy()
            self.var = np.full_like(x, n2)
            return src.copy()
        d = x - self.est
        vm = self.f0 * d * d + (1.0 - self.f0) * self.var
        k = vm / (vm + n2)
        self.est += k * d
        self.var = (1.0 - k) * vm
        return np.clip(np.rint(self.est), 0, 255).astype(np.uint8)
