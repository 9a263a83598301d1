"""Robot-centred occupancy map built from a single depth sensor.

The map stays centred on the robot: odometry moves an offset (rx, ry, raim)
and whole pixel shifts are applied to the maps as they accumulate. Each
refinement projects the depth image, fits the floor and classifies cells as
floor, obstacle or missing (seen through to nothing). Classifications fade
unless re-observed, and a spin of rotated views gives the free travel
distance at a fan of headings around the robot.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import cv2
import numpy as np

from depthscene.core import imgops
from depthscene.core.config.params import ParamBundle, fspec, ispec, load_all, save_all
from depthscene.core.depth.overhead import Overhead3D
from depthscene.core.types import DepthImage, MapImage

logger = logging.getLogger(__name__)

# occupancy values
OBST = 255
TEMP = 200
MISS = 128
FLOOR = 50
UNKNOWN = 0

# floor band of the deviation image
DEV_LO = 78
DEV_HI = 178


class LocalOcc(Overhead3D):
    """Occupancy and confidence maps around a moving robot.

    Heading 0 points along +y of the map and angles grow counter-clockwise.
    `dist` holds free travel in inches for 2 * ndir headings, index i being
    heading (i - ndir) * step; negative entries mean the robot footprint
    itself would collide at that heading.
    """

    def __init__(self) -> None:
        self.eps = ParamBundle(
            "occ_env",
            [
                fspec("dej", 96.0, "Max obstacle distance (in)"),
                fspec("ipp", 0.3, "Map resolution (in)"),
                fspec("hat", 4.0, "Head clearance above sensor (in)"),
                fspec("zhi", 4.0, "Max height wrt floor (in)"),
                fspec("zlo", -4.0, "Min height wrt floor (in)"),
                fspec("fbump", 2.5, "Floor deviation band (in)"),
                ispec("drop", 100, "Min obstacle area (pel)"),
                ispec("hole", 500, "Max hole to fill (pel)"),
            ],
        )
        self.gps = ParamBundle(
            "occ_geom",
            [
                fspec("rside", 8.0, "Robot half width (in)"),
                fspec("rfwd", 14.0, "Robot front from centre (in)"),
                fspec("rback", 14.0, "Robot back from centre (in)"),
                fspec("pad", 1.5, "Clearance padding (in)"),
                fspec("fade", 30.0, "Map memory (sec)"),
                fspec("temp", 5.0, "Temporary obstacle memory (sec)"),
            ],
        )
        self.nps = ParamBundle(
            "occ_nav",
            [
                fspec("veer", 15.0, "Heading resolution (deg)"),
                fspec("lead", 18.0, "Max path look ahead (in)"),
                ispec("free", 1, "Allow blocked turn range"),
                fspec("wmat", 36.0, "Doormat width (in)"),
                fspec("hmat", 24.0, "Doormat depth (in)"),
                fspec("tmat", 5.0, "Doormat freshness (sec)"),
                fspec("glide", 12.0, "Min travel to keep heading (in)"),
                fspec("orient", 60.0, "Max swerve (deg)"),
            ],
        )
        self.rate = 30.0
        self.obst = np.zeros((1, 1), dtype=np.uint8)
        self.conf = np.zeros((1, 1), dtype=np.uint8)
        self.dev = np.zeros((1, 1), dtype=np.uint8)
        self.bad = np.zeros((1, 1), dtype=np.uint8)
        self.dist = np.zeros(0)
        self.ndir = 0
        self.ssz = 0
        super().__init__(1, name="occ")
        self.set_fit(4.0, 10000, 2.0, 3.0, 4.0, 2.0)

    # ------------------------------------------------------------------ config

    def defaults(self, path: str | Path | None = None) -> int:
        ok = super().defaults(path)
        ok &= load_all([self.eps, self.gps, self.nps], path)
        return ok

    def save_vals(self, path: str | Path, geom: int = 0) -> int:
        ok = super().save_vals(path, geom)
        ok &= save_all([self.eps, self.gps, self.nps], path)
        return ok

    def set_rate(self, fps: float) -> None:
        """Expected refinement rate, which sets how fast confidence decays."""

        self.rate = max(1.0, float(fps))

    # ------------------------------------------------------------ main calls

    def reset(self) -> None:
        """Forget everything and put the robot back at the map centre."""

        if not hasattr(self, "nps"):
            super().reset()
            return
        e, g = self.eps, self.gps
        self.set_map(2.0 * e.dej, 2.0 * e.dej, e.dej, e.dej, e.zlo, e.zhi, e.ipp, 0.0)
        super().reset()
        shape = self.map.shape
        self.obst = np.zeros(shape, dtype=np.uint8)
        self.conf = np.zeros(shape, dtype=np.uint8)
        self.dev = np.zeros(shape, dtype=np.uint8)
        self.bad = np.zeros(shape, dtype=np.uint8)

        # confidence drops by one every cwait refinements
        self.cwait = max(1, int(round(self.rate * g.fade / 255.0)))
        self.cmax = min(255, int(round(self.rate * g.fade / self.cwait)))
        self.ctmp = min(255, int(round(self.rate * g.temp / self.cwait)))
        self.ccnt = 0
        self.rx = self.ry = self.raim = 0.0
        self._set_spin(self.nps.veer)
        self.dist = np.zeros(2 * self.ndir)
        self.rt0 = -self.ndir
        self.lf1 = self.ndir - 1
        self.known = 0.0

    def _set_spin(self, veer: float) -> None:
        g = self.gps
        s = g.rside + g.pad
        f = max(g.rfwd, g.rback) + self.nps.lead + g.pad
        self.ssz = int(round(2.0 * math.hypot(s, f) / self.eps.ipp)) + 3
        nd = int(round(180.0 / max(veer, 1.0))) & ~1
        self.ndir = max(2, min(nd, 18))

    def adjust_maps(self, fwd: float, lf: float, dr: float) -> int:
        """Account for robot motion since the last call.

        `fwd` and `lf` are inches along and left of the old heading, `dr`
        the heading change in degrees. Returns 1 if the maps were shifted.
        """

        self.ccnt += 1
        if self.ccnt >= self.cwait:
            self.conf = imgops.offset(self.conf, -1)
            self.obst[self.conf == 0] = UNKNOWN
            self.ccnt = 0

        rads = math.radians(self.raim + 90.0)
        c, s = math.cos(rads), math.sin(rads)
        self.rx += c * fwd - s * lf
        self.ry += s * fwd + c * lf
        self.raim += dr

        ipp = self.mps.ipp
        shx, shy = int(-self.rx / ipp), int(-self.ry / ipp)
        if shx == 0 and shy == 0:
            return 0
        self.obst = imgops.shift(self.obst, shx, shy)
        self.conf = imgops.shift(self.conf, shx, shy)
        self.rx += ipp * shx
        self.ry += ipp * shy
        return 1

    def refine_maps(self, d16: DepthImage, pos: np.ndarray, dir: np.ndarray) -> int:
        """Fold one depth view into the occupancy map.

        `pos` is the sensor (x, y, z) and `dir` its (pan, tilt, roll), both
        with respect to the robot centre with heading 0 along +y. Returns 1
        if the floor plane was found, 0 if only tall things were marked and
        -1 for bad input.
        """

        if d16.ndim != 2 or d16.dtype != np.uint16 or len(pos) < 3 or len(dir) < 3:
            logger.error("Bad input to LocalOcc.refine_maps")
            return -1
        rads = math.radians(self.raim)
        c, s = math.cos(rads), math.sin(rads)
        cam = self.cams[0]
        cam.x = c * pos[0] - s * pos[1] + self.rx
        cam.y = s * pos[0] + c * pos[1] + self.ry
        cam.z = float(pos[2])
        cam.pan, cam.tilt, cam.roll = float(dir[0]) + self.raim, float(dir[1]), float(dir[2])
        cam.rmax = 1.2 * self.eps.dej

        self.adj_geometry(0)
        self.map.fill(0)
        self._beam_fill(self.map, 1)
        if self.reproject(self.map, d16, self.mps.zlo, self.mps.zhi, 0, cam.z + self.eps.hat, 0) <= 0:
            return -1

        fb = self.eps.fbump
        hts = np.where(self.map > 1, self.map, 0).astype(np.uint8)
        fit = self.plane_dev(self.dev, hts, fb, 2.0 * fb)
        if fit <= 0:
            # only things too tall to measure are trusted
            self.dev = np.minimum(self.map, 2).astype(np.uint8)
            self.bad = imgops.threshold(self.map, 251)
        else:
            self.dev[self.map == 1] = 1
            d = self.dev
            self.bad = np.where((d > DEV_HI) | ((d > 1) & (d < DEV_LO)), 255, 0).astype(np.uint8)
        self.bad, _ = imgops.rem_small(self.bad, 0.0, self.eps.drop)
        self._mixin()
        return fit

    def _beam_fill(self, dest: MapImage, val: int) -> None:
        """Mark unset floor cells inside the sensor's view and range."""

        h, w = dest.shape
        ipp = self.mps.ipp
        ys, xs = np.mgrid[0:h, 0:w]
        wx = (xs.ravel() + 0.5) * ipp - self.mps.x0
        wy = (ys.ravel() + 0.5) * ipp - self.mps.y0
        pts = np.stack([wx, wy, np.full(wx.shape, self.ztab)])
        cam = self.rot.T @ (pts - self.org[:, None])
        d = -cam[2]
        front = d > 1.0
        dn = np.where(front, d, 1.0)
        ix = 0.5 * (self.iw - 1) + self.kf * cam[0] / dn
        yup = 0.5 * (self.ih - 1) + self.kf * cam[1] / dn
        c = self.cams[0]
        ok = front & (ix >= 0) & (ix < self.iw) & (yup >= 0) & (yup < self.ih)
        ok &= np.hypot(wx - c.x, wy - c.y) <= c.rmax
        flat = dest.reshape(-1)
        flat[ok & (flat == 0)] = val

    def _mixin(self) -> None:
        """Update occupancy from the latest deviation and obstacle images."""

        d, m, c = self.dev, self.obst, self.conf
        floor = (d >= DEV_LO) & (d <= DEV_HI)
        miss = ~floor & (d == 1)
        obs = ~floor & ~miss & (self.bad > 0)
        seen = ~floor & ~miss & ~obs & (d > 1)

        was = (c > 0) & ((m == FLOOR) | (m == TEMP))
        lost = miss & ((c == 0) | (m <= 1))
        tmp = obs & was
        hard = obs & ~was

        m[floor] = FLOOR
        c[floor] = self.cmax
        m[lost] = MISS
        c[lost] = self.cmax
        m[tmp] = TEMP
        c[tmp] = np.minimum(c[tmp], self.ctmp)
        m[hard] = OBST
        c[hard] = self.cmax
        c[seen] = self.cmax

    # ------------------------------------------------------------- paths

    def robot_pel(self) -> tuple[float, float]:
        """Map pixel position of the robot centre."""

        ipp = self.mps.ipp
        return (self.rx + self.mps.x0) / ipp, (self.ry + self.mps.y0) / ipp

    def compute_paths(self) -> None:
        """Find free travel at all headings from the current maps."""

        self._block_bot()
        big, _ = imgops.rem_small(self.obst, 0.0, self.eps.drop, 100)
        self.obst[(self.obst > 100) & (big == 0)] = UNKNOWN
        self._build_spin()
        self.known = self._known_ahead()
        logger.debug("LocalOcc: ahead %4.1f behind %4.1f turns %d to %d", self.ahead(), self.behind(), self.rt0, self.lf1)

    def _block_bot(self) -> None:
        """Mark the space the robot occupies (at a few headings) as floor."""

        g, ipp = self.gps, self.mps.ipp
        ln = (g.rfwd + g.rback + 2.0 * g.pad) / ipp + 2.0
        wd = 2.0 * (g.rside + g.pad) / ipp + 2.0
        px, py = self.robot_pel()
        # centre of the footprint is not the rotation point
        off = 0.5 * (g.rfwd - g.rback) / ipp
        step = self.step()
        pad = np.zeros_like(self.obst)
        for k in (-1, 0, 1):
            ang = self.raim + k * step + 90.0
            rads = math.radians(ang)
            box = ((px + off * math.cos(rads), py + off * math.sin(rads)), (ln, wd), ang)
            cv2.fillPoly(pad, [np.round(cv2.boxPoints(box)).astype(np.int32)], 255)
        inside = pad > 0
        self.obst[inside] = FLOOR
        self.conf[inside] = self.cmax

    def _rigid(self, src: MapImage, px: float, py: float, aim: float, w: int, h: int) -> MapImage:
        """Patch of `src` centred on (px, py) turned so heading `aim` points up the rows."""

        rads = -math.radians(aim)
        c, s = math.cos(rads), math.sin(rads)
        cx, cy = 0.5 * (w - 1), 0.5 * (h - 1)
        m = np.array([[c, s, px - cx * c - cy * s], [-s, c, py + cx * s - cy * c]], dtype=np.float64)
        return cv2.warpAffine(
            src, m, (w, h), flags=cv2.INTER_NEAREST | cv2.WARP_INVERSE_MAP, borderMode=cv2.BORDER_CONSTANT, borderValue=0
        )

    def _build_spin(self) -> None:
        nd = self.ndir
        nd2 = 2 * nd
        step = self.step()
        px, py = self.robot_pel()
        dist = np.zeros(nd2)
        for dev in range(-(nd // 2), nd // 2):
            view = self._rigid(self.obst, px, py, self.raim + dev * step, self.ssz, self.ssz)
            f, r = self._clr_paths(view)
            dist[nd + dev] = f
            dist[(nd2 + dev) % nd2] = r
        dist[nd] = max(0.0, dist[nd])
        dist[0] = max(0.0, dist[0])
        self.dist = dist

        if self.nps.free > 0:
            self.dist = np.maximum(dist, 0.0)
            self.rt0, self.lf1 = -nd, nd - 1
            return
        rt0 = -1
        while rt0 >= -nd and dist[nd + rt0] >= 0.0 and dist[nd2 + rt0] >= 0.0:
            rt0 -= 1
        lf1 = 1
        while lf1 < nd and dist[nd + lf1] >= 0.0 and dist[lf1] >= 0.0:
            lf1 += 1
        self.rt0, self.lf1 = rt0 + 1, lf1 - 1

    def _clr_paths(self, view: MapImage) -> tuple[float, float]:
        """Free travel forward and backward in a robot-aligned view."""

        g, ipp = self.gps, self.mps.ipp
        h, w = view.shape
        cx, cy = 0.5 * (w - 1), 0.5 * (h - 1)
        scan = self.nps.lead / ipp
        rs = (g.rside + g.pad) / ipp
        rf = (g.rfwd + g.pad) / ipp
        rb = (g.rback + g.pad) / ipp
        xlf = max(0, int(math.floor(cx - rs)))
        xrt = min(w - 1, int(math.ceil(cx + rs)))
        ymid = int(round(cy))
        yfwd = min(h - 1, int(math.ceil(cy + rf + scan)))
        yrev = max(0, int(math.floor(cy - rb - scan)))

        lane = view[:, xlf : xrt + 1] != FLOOR
        ahead = np.any(lane[ymid : yfwd + 1], axis=1)
        yb = ymid + int(np.argmax(ahead)) if ahead.any() else yfwd
        fwd = min((yb - (cy + rf)) * ipp, self.nps.lead)
        back = np.any(lane[yrev:ymid][::-1], axis=1)
        yb = ymid - 1 - int(np.argmax(back)) if back.any() else yrev
        rev = min(((cy - rb) - yb) * ipp, self.nps.lead)
        return float(fwd), float(rev)

    def _known_ahead(self) -> float:
        """Fraction of the doormat in front of the robot that was seen recently."""

        n, ipp = self.nps, self.mps.ipp
        w = max(1, int(round(n.wmat / ipp)))
        h = max(1, int(round(n.hmat / ipp)))
        off = (self.gps.rfwd + 0.5 * n.hmat) / ipp
        rads = math.radians(self.raim + 90.0)
        px, py = self.robot_pel()
        mat = self._rigid(self.conf, px + off * math.cos(rads), py + off * math.sin(rads), self.raim, w, h)
        th = int(round(self.rate * n.tmat / self.cwait))
        return float(np.count_nonzero(mat >= th)) / float(w * h)

    # -------------------------------------------------------------- results

    def num_dir(self) -> int:
        return self.ndir

    def step(self) -> float:
        """Degrees between adjacent headings."""

        return 180.0 / self.ndir

    def path(self, dev: int, fwd: int = 1) -> float:
        """Free travel at heading `dev` steps, forward or (fwd <= 0) backward."""

        nd = self.ndir
        if not -nd <= dev < nd:
            return 0.0
        if fwd > 0:
            return float(self.dist[nd + dev])
        return float(self.dist[(2 * nd + dev) % (2 * nd)])

    def ahead(self, stop: float = 0.0) -> float:
        return max(0.0, float(self.dist[self.ndir]) - stop) if self.dist.size else 0.0

    def behind(self, stop: float = 0.0) -> float:
        return max(0.0, float(self.dist[0]) - stop) if self.dist.size else 0.0

    def max_rt(self) -> float:
        return self.rt0 * self.step()

    def max_lf(self) -> float:
        return self.lf1 * self.step()

    def turn_limit(self, desired: float, margin: float = 0.0) -> float:
        """Clip a turn (degrees, left positive) to the unblocked range."""

        lo = self.max_rt() - margin
        hi = self.max_lf() + margin
        return min(max(desired, lo), hi)

    def move_limit(self, desired: float, stop: float = 0.0) -> float:
        """Clip a move (inches, forward positive) to the free travel."""

        if desired >= 0.0:
            return min(desired, self.ahead(stop))
        return -min(-desired, self.behind(stop))

    def local_map(self, conf: int = 0) -> MapImage:
        """Occupancy (or confidence) turned so the robot faces up the rows."""

        px, py = self.robot_pel()
        src = self.conf if conf > 0 else self.obst
        h, w = src.shape
        return self._rigid(src, px, py, self.raim, w, h)
