"""Head, shoulder and arm finder working on an overhead height map.

The map is sliced at several heights: a chest slice separates people, a head
slice just below each blob's top checks head size and shape, a shoulder slice
checks for support underneath, and an arm slice is searched radially from the
middle of the back for extended hands.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from depthscene.core import imgops
from depthscene.core.blobs import BBoxTable, BlobTable
from depthscene.core.config.params import ParamBundle, fspec, ispec, load_all, save_all
from depthscene.core.depth.surface import height_to_pel, pel_to_height
from depthscene.core.roi import Roi
from depthscene.core.types import MapImage, RawHand, RawPerson

logger = logging.getLogger(__name__)

RMAX = 50
STAR_BINS = 360


@dataclass
class _Head:
    pos: np.ndarray
    cx: float
    cy: float
    area: float
    length: float
    link: tuple[int, int]
    mx: int = 0
    my: int = 0


def _odd(v: float) -> int:
    return int(round(v)) | 0x01


def _ccomps(mask: np.ndarray, amin: int, th: float) -> np.ndarray:
    """4-connected labels of pixels over `th`, dropping components under `amin` pixels."""

    labels, n = imgops.ccomps4(mask, th)
    if n <= 1 or amin <= 1:
        return labels
    areas = np.bincount(labels.ravel(), minlength=n)
    small = areas < amin
    small[0] = False
    if small.any():
        labels[small[labels]] = 0
    return labels


def max_bin_n(hist: np.ndarray, n: int) -> int:
    """Highest bin such that at least `n` counts lie at or above it."""

    top = np.cumsum(hist[::-1])
    hit = np.nonzero(top >= n)[0]
    if hit.size == 0:
        return 0
    return int(len(hist) - 1 - hit[0])


def percentile_bin(hist: np.ndarray, frac: float) -> int:
    targ = int(frac * int(hist.sum()) + 0.5)
    cum = np.cumsum(hist)
    hit = np.nonzero(cum >= targ)[0]
    if hit.size == 0:
        return -1
    i = int(hit[0])
    if i > 0 and (cum[i] - targ) > (int(hist[i]) >> 1):
        return i - 1
    return i


def boxcar(src: np.ndarray, sc: int) -> np.ndarray:
    """Running integer average of width `sc` with clamped (non-cyclic) ends."""

    if sc <= 1:
        return src.copy()
    n = sc // 2
    p = sc - n
    pad = np.concatenate([np.full(n, src[0]), src, np.full(p, src[-1])]).astype(np.int64)
    cum = np.concatenate([[0], np.cumsum(pad)])
    sums = cum[sc : sc + len(src)] - cum[: len(src)]
    return sums // sc


def true_max(arr: np.ndarray, lo: int, hi: int, bias: int = 0) -> int:
    """Index of the peak over a cyclic range, -1 if the range is flat."""

    sz = len(arr)
    end = hi if lo <= hi else hi + sz
    pk, top, diff = lo, arr[lo], False
    for i in range(lo + 1, end + 1):
        v = arr[i % sz]
        if not diff and v != top:
            diff = True
        if v > top or (bias > 0 and v == top):
            pk, top = i % sz, v
    return pk if diff else -1


def cyc_bounds(arr: np.ndarray, pk: int, tol: float) -> tuple[int, int] | None:
    """Valleys (lo, hi) on either side of a peak in a cyclic array."""

    sz = len(arr)
    bounds = []
    for rng in (range(pk + 1, pk + sz), range(pk + sz - 1, pk, -1)):
        best = -1
        val = int(arr[pk])
        th = int(round(tol * val))
        for i in rng:
            v = int(arr[i % sz])
            if v - val > th:
                break
            if v < val:
                best, val = i % sz, v
                th = int(round(tol * v))
        if best < 0:
            return None
        bounds.append(best)
    hi, lo = bounds
    return lo, hi


class Parse3D:
    """Finds raw people (head plus up to two hands) in an overhead map."""

    def __init__(self) -> None:
        self.bps = ParamBundle(
            "p3d_chest",
            [
                fspec("wall", 100.0, "Mask out above (in)"),
                fspec("ch", 38.0, "Torso height cutoff (in)"),
                fspec("sm", 1.5, "Smoothing scale (in)"),
                ispec("sth", 180, "Smooth fill threshold"),
                fspec("amin", 25.0, "Min person area (in^2)"),
                fspec("amax", 700.0, "Max person area (in^2)"),
                fspec("h0", 44.0, "Min head height (in)"),
                fspec("h1", 74.0, "Max head height (in)"),
            ],
        )
        self.hps = ParamBundle(
            "p3d_head",
            [
                fspec("chop", 7.0, "Head slice drop (in)"),
                fspec("hmin", 10.0, "Min head area (in^2)"),
                fspec("hecc", 4.0, "Max head elongation"),
                fspec("w0", 5.0, "Min head width (in)"),
                fspec("w1", 13.0, "Max head width (in)"),
                fspec("edn", 6.5, "Eyeline from top (in)"),
                fspec("margin", 2.0, "Min dist from edge (in)"),
                ispec("pcnt", 20, "Points in height peak"),
            ],
        )
        self.sps = ParamBundle(
            "p3d_shoulder",
            [
                fspec("shdn", 10.0, "Shoulder slice drop (in)"),
                fspec("smin", 40.0, "Min shoulder area (in^2)"),
                fspec("secc", 8.0, "Max shoulder elongation"),
                fspec("sw0", 8.0, "Min shoulder width (in)"),
                fspec("wrel", 1.05, "Min shoulder width wrt head"),
                fspec("arel", 10.0, "Max area wrt head"),
                fspec("ring", 75.0, "Max distance from origin (in)"),
            ],
        )
        self.aps = ParamBundle(
            "p3d_arm",
            [
                fspec("alev", 30.0, "Arm height cutoff (in)"),
                fspec("sm2", 1.5, "Smoothing scale (in)"),
                ispec("sth2", 180, "Smooth fill threshold"),
                fspec("arm0", 10.0, "Min arm area (in^2)"),
                ispec("ret", 0, "Attempt to reattach arms"),
                fspec("agrab", 20.0, "Arm claim radius (in)"),
                fspec("arm1", 50.0, "Max extra arm area (in^2)"),
            ],
        )
        self.gps = ParamBundle(
            "p3d_hand",
            [
                ispec("ssm", 11, "Radial smoothing (degs)"),
                fspec("afall", 0.1, "Arm peak falloff"),
                fspec("fsz", 2.0, "Fingertip region (in)"),
                fspec("fpct", 0.9, "Z histogram percentile"),
                fspec("foff", 12.0, "Min hand XY offset (in)"),
                fspec("ext0", 16.0, "Min arm 3D length (in)"),
                fspec("ext1", 40.0, "Max arm 3D length (in)"),
                fspec("back", 0.0, "Max mid-back shift (in)"),
            ],
        )
        self.eps = ParamBundle(
            "p3d_aim",
            [
                fspec("flen", 0.0, "Hand length (in)"),
                fspec("fecc", 1.0, "Min elongation"),
                fspec("flat", 15.0, "Max flatness"),
                fspec("dip", 4.0, "Reduce Z angle (deg)"),
                fspec("plen", 22.0, "Min point extension (in)"),
            ],
        )

        self.z0 = 20.0
        self.z1 = 90.0
        self.ipp = 0.5
        self.rot = 0.0
        self.x0 = 0.0
        self.y0 = 0.0
        self.mw = 0
        self.mh = 0

        self.raw: list[RawPerson] = []
        self.star = np.zeros((RMAX, STAR_BINS), dtype=np.int64)
        self.lpk = np.full(RMAX, -1, dtype=np.int32)
        self.rpk = np.full(RMAX, -1, dtype=np.int32)
        self.cc = np.zeros((1, 1), dtype=np.uint16)
        self.cc2 = np.zeros((1, 1), dtype=np.uint16)
        self.box = BBoxTable(2 * RMAX)
        self.box2 = BBoxTable(2 * RMAX)

    # ------------------------------------------------------------------ config

    def _bundles(self) -> list[ParamBundle]:
        return [self.bps, self.hps, self.sps, self.aps, self.gps, self.eps]

    def defaults(self, path: str | Path | None = None) -> int:
        return load_all(self._bundles(), path)

    def save_vals(self, path: str | Path) -> int:
        return save_all(self._bundles(), path)

    def map_size(self, w: int, h: int) -> None:
        self.mw = int(w)
        self.mh = int(h)

    def set_scale(self, lo: float = 20.0, hi: float = 90.0, sc: float = 0.5) -> None:
        """Heights for map values 1 and 252 plus inches per map pixel."""

        self.z0 = float(lo)
        self.z1 = float(hi)
        self.ipp = float(sc)

    def set_view(self, ang: float = 0.0, xref: float = 0.0, yref: float = 0.0) -> None:
        """Rotate the map by `ang` about its bottom middle then shift by (xref, yref)."""

        self.rot = float(ang)
        self.x0 = float(xref)
        self.y0 = float(yref)

    def num_raw(self) -> int:
        return len(self.raw)

    # -------------------------------------------------------------- geometry

    def ht2pel(self, ht: float) -> int:
        return int(height_to_pel(ht, self.z0, self.z1))

    def pel2ht(self, pel: int) -> float:
        return float(pel_to_height(pel, self.z0, self.z1))

    def m2w(self, ix: float, iy: float, z: float = 0.0) -> np.ndarray:
        r = math.radians(self.rot)
        c, s = math.cos(r), math.sin(r)
        px = ix - 0.5 * self.mw
        rx = c * px - s * iy + 0.5 * self.mw
        ry = s * px + c * iy
        return np.array([rx * self.ipp - self.x0, ry * self.ipp - self.y0, z])

    def w2m(self, wx: float, wy: float) -> tuple[float, float]:
        r = math.radians(self.rot)
        c, s = math.cos(r), math.sin(r)
        rx = (wx + self.x0) / self.ipp - 0.5 * self.mw
        ry = (wy + self.y0) / self.ipp
        return c * rx + s * ry + 0.5 * self.mw, -s * rx + c * ry

    def _label_at(self, labels: np.ndarray, wx: float, wy: float) -> int:
        fx, fy = self.w2m(wx, wy)
        ix, iy = int(round(fx)), int(round(fy))
        if not (0 <= ix < labels.shape[1] and 0 <= iy < labels.shape[0]):
            return -1
        return int(labels[iy, ix])

    # ----------------------------------------------------------- main calls

    def find_people(self, hmap: MapImage) -> list[RawPerson]:
        """Detect heads and hands in an overhead map; returns the raw list."""

        if hmap.ndim != 2 or hmap.dtype != np.uint8 or self.z1 <= self.z0 or self.ipp <= 0.0:
            logger.error("Bad input to Parse3D.find_people")
            return []
        if hmap.shape != (self.mh, self.mw):
            self.map_size(hmap.shape[1], hmap.shape[0])

        floor = hmap.copy()
        floor[floor > self.ht2pel(self.bps.wall)] = 0
        heads = self._find_heads(floor)
        self.raw = self._find_arms(floor, heads)
        logger.debug("Parse3D: %d raw people", len(self.raw))
        return self.raw

    def person_blob(self, wx: float, wy: float) -> bool:
        """True if a viable person blob of plausible height covers (wx, wy)."""

        bnum = self._label_at(self.cc, wx, wy)
        if bnum <= 0 or bnum >= self.box.valid or self.box.status[bnum] <= 0:
            return False
        h = self.box.aux[bnum]
        return self.bps.h0 <= h <= self.bps.h1

    def blob_at(self, wx: float, wy: float) -> int:
        """Arm blob label at a world point: 0 for none, -1 for outside the map."""

        return self._label_at(self.cc2, wx, wy)

    # ----------------------------------------------------------- head finding

    def _find_heads(self, ohd: np.ndarray) -> list[_Head]:
        b, ipp2 = self.bps, self.ipp * self.ipp
        ism = _odd(b.sm / self.ipp)

        chest = imgops.threshold(ohd, max(0, self.ht2pel(b.ch)) - 1)
        chest = imgops.box_avg(chest, ism)
        self.cc = _ccomps(chest, int(round(b.amin / ipp2)), b.sth)
        self.box.find_bbox(self.cc)
        self.box.area_thresh(0, int(round(b.amax / ipp2)))

        heads: list[_Head] = []
        for i in range(1, self.box.valid):
            if self.box.status[i] <= 0:
                continue
            area = self.box.get_roi(i)
            h = self._find_max(ohd, self.cc, i, area)
            self.box.aux[i] = h
            if h < b.h0 or h > b.h1:
                continue

            area.pad(ism, ism).clip_roi(ohd.shape[1], ohd.shape[0])
            hd = self._chk_head(h, ohd, self.cc, i, area)
            if hd is None:
                continue
            if self.sps.ring > 0.0 and math.hypot(hd.pos[0], hd.pos[1]) > self.sps.ring:
                continue
            if not self._chk_shoulder(hd, ohd, self.cc, i, area):
                continue
            heads.append(hd)
            if len(heads) >= RMAX:
                break
        return heads

    def _find_max(self, val: np.ndarray, comp: np.ndarray, i: int, area: Roi) -> float:
        sl = area.slices()
        vals = val[sl][comp[sl] == i]
        hist = np.bincount(vals.ravel(), minlength=256)
        return self.pel2ht(max_bin_n(hist, self.hps.pcnt))

    def _slice_within(self, view: np.ndarray, comp: np.ndarray, i: int, area: Roi, ht: float) -> np.ndarray:
        sl = area.slices()
        hit = (comp[sl] == i) & (view[sl] >= self.ht2pel(ht))
        return np.where(hit, 255, 0).astype(np.uint8)

    @staticmethod
    def _centroid(tab: BlobTable, j: int, rows: int) -> tuple[float, float]:
        # blob table centroids count y up from the bottom row
        return float(tab.cx[j]), float(rows - 1 - tab.cy[j])

    def _chk_head(self, h: float, view: np.ndarray, comp: np.ndarray, i: int, area: Roi) -> _Head | None:
        hp, ipp2 = self.hps, self.ipp * self.ipp
        mid = self._slice_within(view, comp, i, area, h - hp.chop)
        mid = imgops.box_avg(mid, _odd(self.bps.sm / self.ipp))
        cc0 = _ccomps(mid, int(round(hp.hmin / ipp2)), self.bps.sth)
        blob = BlobTable(RMAX)
        if blob.find_params(cc0) <= 1:
            return None

        # nearest head shaped blob to the middle of the person
        ax, ay = 0.5 * (area.w - 1), 0.5 * (area.h - 1)
        best, win = -1.0, 0
        for j in range(1, blob.valid):
            if blob.status[j] <= 0 or blob.elongation(j) > hp.hecc:
                continue
            if blob.major[j] < hp.w0 / self.ipp or blob.major[j] > hp.w1 / self.ipp:
                continue
            cx, cy = self._centroid(blob, j, cc0.shape[0])
            d2 = (cx - ax) ** 2 + (cy - ay) ** 2
            if win <= 0 or d2 < best:
                best, win = d2, j
        if win <= 0:
            return None

        sub = Roi(0, 0, cc0.shape[1], cc0.shape[0])
        h2 = self._find_max(view[area.slices()], cc0, win, sub)
        if h2 < self.bps.h0:
            return None

        cx, cy = self._centroid(blob, win, cc0.shape[0])
        pos = self.m2w(cx + area.x, cy + area.y, h2 - hp.edn)
        ys, xs = np.nonzero((view[area.slices()] > 0) & (cc0 == win))
        link = (int(xs[0]), int(ys[0])) if xs.size else (int(round(cx)), int(round(cy)))
        return _Head(pos, cx + area.x, cy + area.y, float(blob.pixels[win]), float(blob.major[win]), link)

    def _chk_shoulder(self, hd: _Head, view: np.ndarray, comp: np.ndarray, i: int, area: Roi) -> bool:
        sp = self.sps
        mid = self._slice_within(view, comp, i, area, hd.pos[2] - sp.shdn)
        mid = imgops.box_thresh(mid, _odd(self.bps.sm / self.ipp), self.bps.sth)
        cc0 = _ccomps(mid, int(round(sp.smin / (self.ipp * self.ipp))), 128)
        blob2 = BlobTable(RMAX)
        if blob2.find_params(cc0) <= 1:
            return False

        j = int(cc0[hd.link[1], hd.link[0]])
        if j <= 0 or blob2.status[j] <= 0:
            return False
        if (
            blob2.elongation(j) > sp.secc
            or blob2.major[j] < sp.sw0 / self.ipp
            or blob2.major[j] < sp.wrel * hd.length
            or blob2.pixels[j] > sp.arel * hd.area
        ):
            return False

        sx, sy = self._centroid(blob2, j, cc0.shape[0])
        self._mid_back(hd, sx + area.x, sy + area.y, float(blob2.pixels[j]), float(blob2.minor[j]))
        return True

    def _mid_back(self, hd: _Head, sx: float, sy: float, sa: float, swid: float) -> None:
        """Middle of the back, the center for the radial arm search."""

        if sa <= hd.area:
            hd.mx, hd.my = int(round(hd.cx)), int(round(hd.cy))
            return
        mx = (sa * sx - hd.area * hd.cx) / (sa - hd.area)
        my = (sa * sy - hd.area * hd.cy) / (sa - hd.area)
        dx, dy = mx - hd.cx, my - hd.cy
        ln = math.hypot(dx, dy)
        wlen = self.ipp * ln
        if wlen > self.gps.back:
            hd.mx, hd.my = int(round(hd.cx)), int(round(hd.cy))
        elif wlen < 1.0:
            hd.mx, hd.my = int(round(mx)), int(round(my))
        else:
            f = 0.5 * swid / ln
            hd.mx, hd.my = int(round(mx + f * dx)), int(round(my + f * dy))

    # ------------------------------------------------------------ hand finding

    def _find_arms(self, ohd: np.ndarray, heads: list[_Head]) -> list[RawPerson]:
        a, ipp2 = self.aps, self.ipp * self.ipp
        arm = imgops.threshold(ohd, max(0, self.ht2pel(a.alev)) - 1)
        arm = imgops.box_avg(arm, _odd(a.sm2 / self.ipp))
        self.cc2 = _ccomps(arm, int(round(a.arm0 / ipp2)), a.sth2)
        self.box2.find_bbox(self.cc2)

        found: list[RawPerson] = []
        for n, hd in enumerate(heads):
            item = RawPerson(float(hd.pos[0]), float(hd.pos[1]), float(hd.pos[2]))
            found.append(item)
            bnum = self._label_at(self.cc2, item.x, item.y)
            item.blob = max(0, bnum)
            self.lpk[n] = self.rpk[n] = -1
            if bnum <= 0:
                continue

            alt = self._arm_peaks(hd.mx, hd.my, bnum, n)
            item.alt = alt
            body = self.box2.get_roi(bnum)
            if alt > 0:
                body.absorb(self.box2.get_roi(alt))

            for side in (0, 1):
                pk = int(self.rpk[n] if side > 0 else self.lpk[n])
                if pk < 0:
                    continue
                tip = self._finger_area(hd.mx, hd.my, self.star[n], pk).intersect(body)
                loc = self._finger_loc(hd.mx, hd.my, ohd, bnum, alt, tip)
                if loc is None:
                    continue
                ix, iy, iz = loc
                hoff = self._arm_coords(item, ix, iy, iz, hd.mx, hd.my)
                if hoff is None:
                    continue
                hand = item.hands[side]
                hand.offset = hoff
                d = self._est_ray(hand, ohd, ix, iy, iz, bnum, alt, body)
                if d is not None:
                    hand.direction = d
                    hand.valid = True
            self._swap_arms(item, n)
        return found

    def _radial_plot(self, plot: np.ndarray, hx: int, hy: int, i: int) -> None:
        sl = self.box2.get_roi(i).slices()
        ys, xs = np.nonzero(self.cc2[sl] == i)
        if xs.size == 0:
            return
        dx = xs + sl[1].start - hx
        dy = ys + sl[0].start - hy
        dist = np.sqrt(dx * dx + dy * dy)
        ang = -90.0 - np.degrees(np.arctan2(dy, dx))
        ang = np.where(ang < 0.0, ang + 360.0, ang)
        n = np.rint(ang * (len(plot) / 360.0)).astype(np.int64) % len(plot)
        np.maximum.at(plot, n, np.rint(100.0 * dist).astype(np.int64))

    def _grab_arm(self, hx: int, hy: int, bnum: int) -> int:
        """Biggest unclaimed blob near the head, possibly a detached arm."""

        a, ppi2 = self.aps, 1.0 / (self.ipp * self.ipp)
        r = int(round(a.agrab / self.ipp))
        a0, a1 = int(round(ppi2 * a.arm0)), int(round(ppi2 * a.arm1))
        area = Roi().set_center(hx, hy, 2 * r + 1).clip_roi(self.cc2.shape[1], self.cc2.shape[0])
        sl = area.slices()
        ys, xs = np.mgrid[sl]
        lab = self.cc2[sl].astype(np.int64)
        near = ((xs - hx) ** 2 + (ys - hy) ** 2) <= r * r
        win, best = -1, 0
        for c in np.unique(lab[near & (lab != 0) & (lab != bnum)]):
            c = int(c)
            if c >= self.box2.valid or self.box2.status[c] >= 2:
                continue
            pels = int(self.box2.pixels[c])
            if pels > best and a0 <= pels <= a1:
                win, best = c, pels
        return win

    def _arm_peaks(self, hx: int, hy: int, bnum: int, n: int) -> int:
        star0 = np.zeros(STAR_BINS, dtype=np.int64)
        self._radial_plot(star0, hx, hy, bnum)
        alt = -1
        if self.aps.ret > 0:
            alt = self._grab_arm(hx, hy, bnum)
            if alt > 0:
                self.box2.status[alt] = 2
                self._radial_plot(star0, hx, hy, alt)
        plot = boxcar(star0, self.gps.ssm)
        self.star[n] = plot

        # biggest peak is taken as the right hand
        self.lpk[n] = -1
        self.rpk[n] = true_max(plot, 0, len(plot) - 1, 1)
        if self.rpk[n] >= 0:
            bnd = cyc_bounds(plot, int(self.rpk[n]), self.gps.afall)
            if bnd is not None:
                lo, hi = bnd
                self.lpk[n] = true_max(plot, hi, lo)
        return alt

    def _finger_area(self, hx: int, hy: int, plot: np.ndarray, pk: int) -> Roi:
        rads = math.radians(-90.0 - pk)
        dist = 0.01 * plot[pk]
        tsz = max(_odd(self.gps.fsz / self.ipp), 3)
        return Roi().set_center(round(hx + dist * math.cos(rads)), round(hy + dist * math.sin(rads)), tsz)

    def _finger_loc(
        self, hx: int, hy: int, hmap: np.ndarray, bnum: int, alt: int, area: Roi
    ) -> tuple[int, int, int] | None:
        """Farthest person pixel from (hx, hy) in `area` plus a robust height pel."""

        h, w = hmap.shape
        area = area.copy_roi().clip_roi(w, h)
        while True:
            sl = area.slices()
            lab = self.cc2[sl].astype(np.int64)
            ok = (hmap[sl] > 0) & ((lab == bnum) | (lab == alt))
            ys, xs = np.nonzero(ok)
            if xs.size:
                d2 = (xs + area.x - hx) ** 2 + (ys + area.y - hy) ** 2
                k = int(np.argmax(d2))
                if d2[k] > 0:
                    hist = np.bincount(hmap[sl][ok].ravel(), minlength=256)
                    return int(xs[k] + area.x), int(ys[k] + area.y), percentile_bin(hist, self.gps.fpct)
            if area.x <= 0 and area.y <= 0 and area.x2 >= w and area.y2 >= h:
                return None
            area.pad(2, 2).clip_roi(w, h)

    def _arm_coords(self, item: RawPerson, ix: int, iy: int, iz: int, mx: int, my: int) -> np.ndarray | None:
        """Hand offset from the head if the arm has a plausible reach, else None."""

        g = self.gps
        fi = self.m2w(ix, iy, self.pel2ht(iz))
        mid = self.m2w(mx, my, item.z - self.sps.shdn)
        diff = fi - mid
        len2 = float(np.dot(diff, diff))
        dist2 = len2 - diff[2] * diff[2]
        if dist2 < g.foff * g.foff:
            return None
        if len2 < g.ext0 * g.ext0 or len2 > g.ext1 * g.ext1:
            return None
        return fi - item.pos

    def _swap_arms(self, item: RawPerson, n: int) -> bool:
        """Put the hands in left/right order if their peaks are reversed."""

        if not (item.hands[0].valid and item.hands[1].valid):
            return False
        diff = int(self.rpk[n] - self.lpk[n])
        if diff < -STAR_BINS // 2:
            diff += STAR_BINS
        elif diff > STAR_BINS // 2:
            diff -= STAR_BINS
        if diff >= 0:
            return False
        self.lpk[n], self.rpk[n] = self.rpk[n], self.lpk[n]
        item.hands.reverse()
        return True

    # ------------------------------------------------------- pointing direction

    def _est_ray(
        self, hand: RawHand, hmap: np.ndarray, ix: int, iy: int, iz: int, bnum: int, alt: int, body: Roi
    ) -> np.ndarray | None:
        """Pointing direction of a hand, or None if it does not look like one."""

        e = self.eps
        if e.flen <= 0.0:
            n = float(np.linalg.norm(hand.offset))
            return hand.offset / n if n > 0.0 else None

        sz = 2 * int(round(e.flen / self.ipp)) + 1
        end = Roi().set_center(ix, iy, sz).intersect(body)
        pts = self._area_pts(hmap, ix, iy, iz, bnum, alt, end)
        if pts.shape[0] < 20:
            return None
        axis = self._find_axis(pts)
        if axis is None:
            return None

        r = math.radians(self.rot)
        c, s = math.cos(r), math.sin(r)
        d = np.array([c * axis[0] - s * axis[1], s * axis[0] + c * axis[1], axis[2]])
        if np.dot(d, hand.offset) < 0.0:
            d = -d

        # tip the ray down a little
        rp = math.hypot(d[0], d[1])
        zang = math.atan2(d[2], rp) - math.radians(e.dip)
        d[2] = rp * math.tan(zang)
        return d / np.linalg.norm(d)

    def _area_pts(self, hmap: np.ndarray, ix: int, iy: int, iz: int, bnum: int, alt: int, area: Roi) -> np.ndarray:
        """Person pixels within a hand length of the fingertip, in map pixel units."""

        z2p = (self.z1 - self.z0) / (251.0 * self.ipp)
        max2 = (self.eps.flen / self.ipp) ** 2
        area = area.copy_roi().clip_roi(hmap.shape[1], hmap.shape[0])
        sl = area.slices()
        lab = self.cc2[sl].astype(np.int64)
        vals = hmap[sl]
        ys, xs = np.nonzero((vals > 0) & ((lab == bnum) | (lab == alt)))
        z = np.rint((vals[ys, xs].astype(np.float64) - 1.0) * z2p)
        fz = round((iz - 1) * z2p)
        x = xs.astype(np.float64)
        y = ys.astype(np.float64)
        d2 = (x - (ix - area.x)) ** 2 + (y - (iy - area.y)) ** 2 + (z - fz) ** 2
        keep = d2 <= max2
        return np.stack([x[keep], y[keep], z[keep]], axis=1)

    def _find_axis(self, pts: np.ndarray) -> np.ndarray | None:
        """Principal axis of a point cloud if it is elongated but not flat."""

        cov = np.cov(pts, rowvar=False, bias=True)
        evals, evecs = np.linalg.eigh(cov)
        ev3, ev2, ev1 = evals
        e = self.eps
        if ev1 < e.fecc * e.fecc * ev2 or ev1 > e.flat * e.flat * ev3:
            return None
        return evecs[:, 2]
