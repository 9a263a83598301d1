"""Planar surface fitting on 16 bit depth images.

The image is cut into parallel bands. Within each band the farthest pixel of
every short segment is kept as a seed, the seeds are depth sorted and a line is
fitted in the camera YZ plane. Bands whose lines agree in offset and angle are
then merged into a clique and a least-squares plane is solved from the sums of
all their 3D points.

Scan directions: 0 = bottom up, 1 = top down, 2 = from left, 3 = from right.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from depthscene.core.config.params import ParamBundle, fspec, ispec
from depthscene.core.roi import Roi
from depthscene.core.types import DEPTH_MAX, DEPTH_MIN, DepthImage, PlanePose

logger = logging.getLogger(__name__)

NBINS = 1000
BIN_SZ = 40

# point status codes
PT_CAND = 1
PT_UNUSED = 0
PT_SLOPE = -1
PT_GATE = -2

SCAN_VBOT = 0
SCAN_VTOP = 1
SCAN_HLF = 2
SCAN_HRT = 3

# layout of the plane statistics vector
N_STATS = 14
S_STD, S_HT, S_TILT, S_ROLL = 10, 11, 12, 13


def add_point(s: np.ndarray, x: float, y: float, z: float) -> None:
    s[0] += x
    s[1] += y
    s[2] += z
    s[3] += x * x
    s[4] += y * y
    s[5] += z * z
    s[6] += x * y
    s[7] += x * z
    s[8] += y * z
    s[9] += 1.0


def add_points(s: np.ndarray, x: np.ndarray, y: np.ndarray, z: np.ndarray) -> None:
    """Vector form of `add_point` for a whole set of camera points."""

    s[0] += x.sum()
    s[1] += y.sum()
    s[2] += z.sum()
    s[3] += (x * x).sum()
    s[4] += (y * y).sum()
    s[5] += (z * z).sum()
    s[6] += (x * y).sum()
    s[7] += (x * z).sum()
    s[8] += (y * z).sum()
    s[9] += float(x.size)


def plane_err(s: np.ndarray) -> float:
    """Least-squares fit of z = a*x + b*y + c from the sums in `s[0:10]`.

    Writes the orthogonal standard deviation, plane distance, tilt and roll into
    `s[10:14]` and returns the deviation. The 3x3 moment matrix is inverted
    directly. A singular matrix gives an infinite deviation.
    """

    sx, sy, sz, sxx, syy, szz, sxy, sxz, syz, num = (float(v) for v in s[:10])
    m00 = num * syy - sy * sy
    m10 = sx * sy - num * sxy
    m20 = sy * sxy - sx * syy
    m01 = m10
    m11 = num * sxx - sx * sx
    m21 = sx * sxy - sy * sxx
    m02 = m20
    m12 = m21
    m22 = sxx * syy - sxy * sxy
    det = sxx * m00 - sxy * (num * sxy - sx * sy) + sx * m20
    if det == 0.0 or num <= 0.0:
        s[S_STD] = math.inf
        s[S_HT:] = 0.0
        return math.inf
    idet = 1.0 / det

    a = idet * (sxz * m00 + syz * m10 + sz * m20)
    b = idet * (sxz * m01 + syz * m11 + sz * m21)
    c = idet * (sxz * m02 + syz * m12 + sz * m22)

    # summed squared residual without the n*c^2 term
    nr2 = (a * sx + b * sy - sz) * c
    nr2 += a * b * sxy - a * sxz - b * syz
    nr2 *= 2.0
    nr2 += szz + a * a * sxx + b * b * syy

    tip = a * a + b * b + 1.0
    std = math.sqrt(max(0.0, (nr2 / num + c * c) / tip))

    # normal is (a, b, -1) with the camera at the origin looking down -z
    s[S_STD] = std
    s[S_HT] = c / math.sqrt(tip)
    s[S_TILT] = math.degrees(math.atan2(math.sqrt(a * a + b * b), 1.0))
    s[S_ROLL] = math.degrees(math.atan2(a, b))
    return std


def line_vals(s: np.ndarray) -> tuple[float, float, float] | None:
    """Slope, intercept and 100 * R^2 of the YZ line in `s`, None if degenerate."""

    sy, sz, syy, szz, syz, num = (float(v) for v in s)
    top = num * syz - sy * sz
    bot1 = num * syy - sy * sy
    bot2 = num * szz - sz * sz
    if bot1 == 0.0 or bot2 == 0.0:
        return None
    m = top / bot1
    b = (sz - m * sy) / num
    return m, b, 100.0 * m * top / bot2


@dataclass
class BandTable:
    """Seed points for all bands in contiguous (band, point) arrays."""

    bands: int
    cap: int = 0
    pcnt: np.ndarray = field(init=False)
    keep: np.ndarray = field(init=False)
    fit: np.ndarray = field(init=False)
    ang: np.ndarray = field(init=False)
    off: np.ndarray = field(init=False)
    vpt: np.ndarray = field(init=False)

    def __post_init__(self) -> None:
        self.pcnt = np.zeros(self.bands, dtype=np.int32)
        self.keep = np.ones(self.bands, dtype=np.int32)
        self.fit = np.zeros(self.bands)
        self.ang = np.zeros(self.bands)
        self.off = np.zeros(self.bands)
        self.vpt = np.zeros(self.bands, dtype=np.int32)
        self.alloc(self.cap)

    def alloc(self, cap: int) -> None:
        if cap <= self.cap and hasattr(self, "ok"):
            return
        self.cap = max(cap, 1)
        shape = (self.bands, self.cap)
        self.ok = np.zeros(shape, dtype=np.int32)
        self.ix = np.zeros(shape, dtype=np.int32)
        self.iy = np.zeros(shape, dtype=np.int32)
        self.iz = np.zeros(shape, dtype=np.int32)
        self.cx = np.zeros(shape)
        self.cy = np.zeros(shape)
        self.cz = np.zeros(shape)

    def clear(self) -> None:
        self.pcnt[:] = 0
        self.keep[:] = 1
        self.fit[:] = 0.0
        self.ang[:] = 0.0
        self.off[:] = 0.0
        self.vpt[:] = 0

    def valid(self, b: int) -> np.ndarray:
        n = int(self.pcnt[b])
        return np.nonzero(self.ok[b, :n] > 0)[0]


def _segment_max(grid: np.ndarray, blen: int, step: int, bands: int) -> tuple[np.ndarray, np.ndarray]:
    """Per segment winners of each grid row.

    Rows of `grid` are scan lines; columns are samples along the line. A segment
    ends once its sample count covers `blen - 1` pixels. Returns the winning
    depth (0 when nothing valid) and the sample index of the first maximum,
    both shaped (rows, bands).
    """

    rows, cols = grid.shape
    first = max(1, -(-(blen - 1) // step) + 1) if blen > 1 else 1
    seg = max(1, first - 1)
    vals = np.where((grid >= DEPTH_MIN) & (grid <= DEPTH_MAX), grid, 0).astype(np.int32)
    # the first segment takes one extra sample; later ones restart after it
    nseg = 1 + max(0, -(-(cols - first) // seg))
    pad = np.zeros((rows, first + (nseg - 1) * seg), dtype=np.int32)
    pad[:, :cols] = vals
    head = pad[:, :first]
    a0 = head.argmax(axis=1)
    b0 = np.take_along_axis(head, a0[:, None], axis=1)[:, 0]
    blk = pad[:, first:].reshape(rows, nseg - 1, seg)
    arg = blk.argmax(axis=2)
    rest = np.take_along_axis(blk, arg[..., None], axis=2)[..., 0]
    best = np.concatenate([b0[:, None], rest], axis=1)
    idx = np.concatenate([a0[:, None], arg + first + np.arange(nseg - 1)[None, :] * seg], axis=1)
    z = np.zeros((rows, bands), dtype=np.int32)
    k = np.zeros((rows, bands), dtype=np.int64)
    use = min(nseg, bands)
    z[:, :use] = best[:, :use]
    k[:, :use] = idx[:, :use]
    return z, k


class PlaneFitter:
    """Finds camera tilt, roll and height relative to a dominant plane."""

    def __init__(self, bands: int = 8, width: int = 640, height: int = 480) -> None:
        self.fps = ParamBundle(
            "plane_fit",
            [
                ispec("vstep", 4, "Vertical seed sampling"),
                ispec("hstep", 4, "Horizontal seed sampling"),
                ispec("pmin", 5, "Min line points"),
                fspec("fmin", 90.0, "Min line fit (R^2)"),
                ispec("bmin", 3, "Min band agreement"),
                fspec("dev", 1.8, "Max err increase"),
                fspec("htol", 8.0, "Height tolerance (pct)"),
                fspec("atol", 5.0, "Angle tolerance (deg)"),
                ispec("bands", bands, "Number of bands"),
            ],
        )
        self.kf = 525.0
        self.ksc = 0.9659
        self.iw = width
        self.ih = height
        self.tab = BandTable(bands, max(width, height))
        self.err = -1.0
        self.ht = 0.0
        self.tilt = 0.0
        self.roll = 0.0

    # ------------------------------------------------------------------ config

    @property
    def bands(self) -> int:
        return self.fps.bands

    def defaults(self, path: str | Path | None = None) -> int:
        ok = self.fps.load_defs(path)
        self._sync_bands()
        return ok

    def save_vals(self, path: str | Path) -> int:
        return self.fps.save_vals(path)

    def set_optics(self, focal: float, scale: float = 0.9659) -> None:
        self.kf = float(focal)
        self.ksc = float(scale)

    def set_size(self, width: int, height: int) -> None:
        self.iw = int(width)
        self.ih = int(height)
        self.tab.alloc(max(self.iw, self.ih))

    def _sync_bands(self) -> None:
        if self.tab.bands != self.fps.bands:
            self.tab = BandTable(self.fps.bands, max(self.iw, self.ih))

    # ------------------------------------------------------------- accessors

    def band_counts(self) -> list[int]:
        return [int(n) for n in self.tab.pcnt]

    def band_fit(self, b: int) -> tuple[float, float, float, int]:
        """R^2 fit, line angle, line offset and retained points for band `b`."""

        t = self.tab
        return float(t.fit[b]), float(t.ang[b]), float(t.off[b]), int(t.vpt[b])

    def band_keep(self) -> list[int]:
        return [int(k) for k in self.tab.keep]

    def pose(self) -> PlanePose:
        return PlanePose(self.tilt, self.roll, self.ht, self.err)

    # ------------------------------------------------------------ main calls

    def surface_data(self, d16: DepthImage, area: Roi | None = None, vert: int = 0) -> tuple[int, float, float, float]:
        """Camera pan, tilt and distance to a surface.

        Runs the normal and vertically flipped fits for diagnostics only; the
        returned (ha, va, d) are always zero.
        """

        for name, img in (("normal", d16), ("flipped", d16[::-1, :])):
            res = self.fit_3d(img, roi=area)
            if res.ok:
                logger.debug("%s: t = %3.1f, r = %3.1f, h = %3.1f, e = %3.1f", name, res.tilt, res.roll, res.height, res.err)
            else:
                logger.debug("%s: failed", name)
        return 1, 0.0, 0.0, 0.0

    def fit_3d(
        self,
        d16: DepthImage,
        prev: PlanePose | None = None,
        dirn: int = SCAN_VBOT,
        dh: float = 0.0,
        ksc: float | None = None,
        kf: float | None = None,
        roi: Roi | None = None,
    ) -> PlanePose:
        """Estimate camera tilt, roll and height from a depth image.

        If `dh > 0` only points within `dh` of `prev.height` (measured along
        `prev.tilt`) are used. On failure the returned pose repeats `prev`
        with `err = -1`.
        """

        prev = prev or PlanePose()
        failed = PlanePose(prev.tilt, prev.roll, prev.height, -1.0)
        if d16.ndim != 2 or d16.dtype != np.uint16:
            logger.error("Bad images to PlaneFitter.fit_3d")
            return failed
        ksc = self.ksc if ksc is None else ksc
        kf = self.kf if kf is None else kf
        dsc = 0.25 * ksc / 25.4
        finv = 1.0 / kf

        self._sync_bands()
        if d16.shape[1] != self.iw or d16.shape[0] != self.ih:
            self.set_size(d16.shape[1], d16.shape[0])
        logger.debug("PlaneFitter.fit_3d with dir = %d, dh = %3.1f", dirn, dh)

        self._collect(d16, dirn, dsc, finv, roi)
        t = self.tab
        if dh > 0.0:
            for b in range(self.bands):
                self._ht_gate(b, dh, prev.height, prev.tilt)

        for b in range(self.bands):
            self._line_fit(b, self._pick_start(b))

        # eliminate bad YZ lines
        bad = (t.fit < self.fps.fmin) | (t.vpt < self.fps.pmin)
        t.keep[bad] = -1

        stats = np.zeros(N_STATS)
        if self._form_clique(stats, t.keep) <= 0 or not math.isfinite(stats[S_STD]):
            logger.debug("No consistent band clique")
            return failed

        self.err = float(stats[S_STD])
        self.ht = float(stats[S_HT])
        self.tilt = float(stats[S_TILT]) - 90.0
        self.roll = float(stats[S_ROLL])
        return self.pose()

    # ------------------------------------------------------------ seed points

    def _collect(self, d16: DepthImage, dirn: int, dsc: float, finv: float, roi: Roi | None) -> None:
        """Gather per-band seed points for the given scan direction."""

        h, w = d16.shape
        win = Roi(0, 0, w, h) if roi is None else roi.copy_roi().clip_roi(w, h)
        t = self.tab
        t.clear()
        if win.empty():
            return
        vstep, hstep = max(1, self.fps.vstep), max(1, self.fps.hstep)
        x0, xlim = win.x, win.x + win.w - 1
        # y measured up from the bottom row
        y0, ylim = h - win.y - win.h, h - 1 - win.y
        hw, hh = 0.5 * self.iw, 0.5 * self.ih
        up = d16[::-1, :]

        if dirn <= SCAN_VTOP:
            ys = np.arange(y0, ylim + 1, vstep) if dirn <= SCAN_VBOT else np.arange(ylim, y0 - 1, -vstep)
            xs = np.arange(x0, xlim + 1, hstep)
            z, k = _segment_max(up[np.ix_(ys, xs)], self.iw // self.bands, hstep, self.bands)
            outer = np.repeat(ys[:, None], self.bands, axis=1)
            inner = xs[np.minimum(k, xs.size - 1)]
            ix, iy = inner, outer
        else:
            xs = np.arange(x0, xlim + 1, hstep) if dirn == SCAN_HLF else np.arange(xlim, x0 - 1, -hstep)
            ys = np.arange(y0, ylim + 1, vstep)
            z, k = _segment_max(up[np.ix_(ys, xs)].T, self.ih // self.bands, vstep, self.bands)
            outer = np.repeat(xs[:, None], self.bands, axis=1)
            inner = ys[np.minimum(k, ys.size - 1)]
            ix, iy = outer, inner

        for b in range(self.bands):
            sel = np.nonzero(z[:, b] >= DEPTH_MIN)[0]
            n = sel.size
            if n > t.cap:
                t.alloc(n)
            bz = z[sel, b]
            bx = ix[sel, b]
            by = iy[sel, b]
            cz = dsc * bz
            d = cz * finv
            if dirn <= SCAN_VBOT:
                cx, cy = d * (bx - hw), d * (by - hh)
            elif dirn == SCAN_VTOP:
                cx, cy = d * (bx - hw), d * (hh - by)
            elif dirn == SCAN_HLF:
                cx, cy = d * (by - hh), d * (bx - hw)
            else:
                cx, cy = d * (by - hh), d * (hw - bx)
            t.pcnt[b] = n
            t.ok[b, :n] = PT_CAND
            t.iz[b, :n] = bz
            t.ix[b, :n] = bx
            t.iy[b, :n] = by
            t.cx[b, :n] = cx
            t.cy[b, :n] = cy
            t.cz[b, :n] = cz
        logger.debug("Band counts %s", self.band_counts())

    def _ht_gate(self, b: int, dh: float, h: float, tilt: float) -> None:
        """Only keep points whose height along `tilt` lies in h +/- dh."""

        t = self.tab
        n = int(t.pcnt[b])
        rads = math.radians(tilt)
        ph = math.sin(rads) * t.cz[b, :n] + math.cos(rads) * t.cy[b, :n]
        out = (ph < h - dh) | (ph > h + dh)
        t.ok[b, :n][out] = PT_GATE

    # ------------------------------------------------------- line within band

    def _sort_band(self, b: int) -> tuple[np.ndarray, int]:
        """Hash sort band points into depth bins; returns (bins, count)."""

        t = self.tab
        bins = np.full(NBINS, -1, dtype=np.int64)
        n = int(t.pcnt[b])
        cnt = 0
        zlast = 0
        ok = t.ok[b]
        iz = t.iz[b]
        for i in range(n):
            if ok[i] <= 0:
                continue
            # depth must not decrease moving away from the scan start
            if iz[i] < zlast:
                ok[i] = PT_SLOPE
                continue
            zlast = int(iz[i])
            cm = zlast // BIN_SZ
            while cm < NBINS and bins[cm] >= 0:
                cm += 1
            if cm >= NBINS:
                ok[i:n] = PT_SLOPE
                break
            bins[cm] = i
            cnt += 1
        self._bins = bins
        return bins, cnt

    def _pick_start(self, b: int) -> int:
        """Bin holding the lowest cy point, or -1 if the band is too sparse."""

        bins, cnt = self._sort_band(b)
        if cnt < 2:
            return -1
        t = self.tab
        filled = np.nonzero(bins >= 0)[0]
        cy = t.cy[b, bins[filled]]
        first = int(filled[int(np.argmin(cy))])
        # closer points are not part of the line
        t.ok[b, bins[filled[filled < first]]] = PT_UNUSED
        return first

    def _line_fit(self, b: int, first: int) -> None:
        t = self.tab
        t.fit[b] = 0.0
        t.ang[b] = 0.0
        t.off[b] = 0.0
        t.vpt[b] = 0
        if first < 0:
            return

        bins = self._bins
        s = np.zeros(6)
        best = 0.0
        mwin = bwin = 0.0
        last = first
        n = 0
        for cm in range(first, NBINS):
            i = bins[cm]
            if i < 0:
                continue
            y, z = t.cy[b, i], t.cz[b, i]
            s += (y, z, y * y, z * z, y * z, 1.0)
            num = int(s[5])
            if num < 3:
                last = cm
                continue
            vals = line_vals(s)
            if vals is None:
                continue
            m0, b0, r2 = vals
            if num < 10 or r2 >= best:
                best, mwin, bwin = r2, m0, b0
                last = cm
                n = num

        # farther points past the line end are unused
        tail = bins[last + 1 :]
        t.ok[b, tail[tail >= 0]] = PT_UNUSED

        t.fit[b] = best
        t.ang[b] = math.degrees(math.atan(mwin))
        t.off[b] = bwin / math.sqrt(mwin * mwin + 1.0)
        t.vpt[b] = n

    # ---------------------------------------------------------- band clique

    def _init_stats(self, s: np.ndarray, b: int) -> float:
        t = self.tab
        s[:] = 0.0
        v = t.valid(b)
        add_points(s, t.cx[b, v], t.cy[b, v], t.cz[b, v])
        return plane_err(s)

    def _try_band(self, s: np.ndarray, b: int) -> int:
        """Add band `b` to `s` if the deviation grows by at most `dev`."""

        t = self.tab
        dlim = self.fps.dev * s[S_STD]
        s2 = np.zeros(N_STATS)
        s2[:10] = s[:10]
        v = t.valid(b)
        add_points(s2, t.cx[b, v], t.cy[b, v], t.cz[b, v])
        if plane_err(s2) > dlim:
            return 0
        s[:] = s2
        return 1

    def _add_compatible(self, s: np.ndarray, mark: np.ndarray, base: int) -> int:
        t = self.tab
        off0, ang0 = t.off[base], t.ang[base]
        cnt = 1
        while True:
            cand = np.nonzero(mark == 1)[0]
            if cand.size == 0:
                break
            diffs = np.abs(t.off[cand] - off0)
            win = int(cand[int(np.argmin(diffs))])
            best = float(diffs.min())

            # no remaining band can be closer
            if best > off0 * self.fps.htol / 100.0:
                logger.debug("reject band %d based on distance change %4.2f", win, best)
                mark[mark == 1] = 0
                break
            if abs(t.ang[win] - ang0) > self.fps.atol:
                logger.debug("reject band %d based on angle change %4.2f", win, abs(t.ang[win] - ang0))
                mark[win] = 0
                continue
            if self._try_band(s, win) <= 0:
                logger.debug("reject band %d based on plane fit", win)
                mark[win] = 0
                continue
            logger.debug("added band %d", win)
            mark[win] = 2
            off0 = s[S_HT]
            ang0 = s[S_TILT]
            cnt += 1
        return cnt

    def _form_clique(self, s: np.ndarray, group: np.ndarray) -> int:
        """Grow the biggest consistent band set; updates `s` and `group`."""

        t = self.tab
        while True:
            mark = group.copy()
            live = np.nonzero(mark > 0)[0]
            if live.size == 0:
                return 0
            # first band with the largest offset
            base = int(live[int(np.argmax(t.off[live]))])
            logger.debug("starting with band %d", base)
            self._init_stats(s, base)
            mark[base] = 2
            if self._add_compatible(s, mark, base) >= self.fps.bmin:
                break
            group[base] = 0

        group[(mark <= 0) & (group > 0)] = 0
        return 1
