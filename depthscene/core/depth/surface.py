"""Depth camera projection onto a floor-aligned overhead height map.

Image coordinates are (column, row) with row 0 at the top of the picture.
World coordinates are inches with x right, y forward and z up. A camera with
pan 90 looks along +y, pan 0 along +x, and negative tilt looks down.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from depthscene.core.roi import Roi
from depthscene.core.types import DEPTH_MAX, DEPTH_MIN, DepthImage, MapImage

logger = logging.getLogger(__name__)

PEL_LO = 1
PEL_HI = 252


def height_to_pel(z: np.ndarray | float, lo: float, hi: float) -> np.ndarray | int:
    """Map encoding: [lo, hi] inches -> [1, 252], clipped to that range."""

    pel = 1.0 + np.rint(251.0 * (np.asarray(z, dtype=np.float64) - lo) / (hi - lo))
    pel = np.clip(pel, PEL_LO, PEL_HI)
    if np.ndim(pel) == 0:
        return int(pel)
    return pel.astype(np.uint8)


def pel_to_height(pel: np.ndarray | int, lo: float, hi: float) -> np.ndarray | float:
    """Inverse of `height_to_pel` (0 pixels are unobserved and decode to `lo`)."""

    p = np.maximum(np.asarray(pel, dtype=np.float64), 1.0)
    z = lo + (p - 1.0) * (hi - lo) / 251.0
    if np.ndim(z) == 0:
        return float(z)
    return z


def _rot_x(deg: float) -> np.ndarray:
    r = math.radians(deg)
    c, s = math.cos(r), math.sin(r)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def _rot_z(deg: float) -> np.ndarray:
    r = math.radians(deg)
    c, s = math.cos(r), math.sin(r)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


@dataclass
class PlaneEst:
    """Least-squares plane z = a * x + b * y + c over selected points."""

    a: float = 0.0
    b: float = 0.0
    c: float = 0.0
    rms: float = -1.0
    pts: int = 0

    def fit(self, x: np.ndarray, y: np.ndarray, z: np.ndarray) -> float:
        self.pts = int(x.size)
        if self.pts < 3:
            self.a = self.b = self.c = 0.0
            self.rms = -1.0
            return self.rms
        m = np.column_stack([x, y, np.ones_like(x)])
        coef, _, rank, _ = np.linalg.lstsq(m, z, rcond=None)
        if rank < 3:
            self.rms = -1.0
            return self.rms
        self.a, self.b, self.c = (float(v) for v in coef)
        res = z - m @ coef
        self.rms = float(math.sqrt(float(np.mean(res * res))))
        return self.rms


class Surface3D:
    """Camera pose, optics and projection of depth pixels into world space."""

    def __init__(self) -> None:
        self.iw = 640
        self.ih = 480
        self.cx = 0.0
        self.cy = 0.0
        self.cz = 100.5
        self.p0 = 90.0
        self.t0 = -20.0
        self.r0 = 0.0
        self.kf = 525.0
        self.ksc = 0.9659
        # projection limits: lo/hi map to pels 1/252, nothing at or above cut
        self.z0 = 36.0
        self.z1 = 78.0
        self.zmax = 84.0
        self.ipp = 0.3
        self.dmax = 240.0
        # map corner in world coordinates is (-ox, -oy)
        self.ox = 0.0
        self.oy = 0.0
        self.est = PlaneEst()
        self.rot = np.eye(3)
        self.org = np.zeros(3)

    # --------------------------------------------------------- configuration

    def set_size(self, width: int, height: int) -> None:
        self.iw = int(width)
        self.ih = int(height)

    def set_camera(self, x: float = 0.0, y: float = 0.0, z: float = 100.5) -> None:
        self.cx, self.cy, self.cz = float(x), float(y), float(z)

    def set_view(self, pan: float = 90.0, tilt: float = -20.0, roll: float = 0.0) -> None:
        self.p0, self.t0, self.r0 = float(pan), float(tilt), float(roll)

    def set_optics(self, focal: float = 525.0, scale: float = 0.9659) -> None:
        self.kf, self.ksc = float(focal), float(scale)

    def set_project(self, lo: float = 36.0, hi: float = 78.0, cut: float = 84.0, ipp: float = 0.3, rng: float = 240.0) -> None:
        self.z0, self.z1, self.zmax, self.ipp, self.dmax = float(lo), float(hi), float(cut), float(ipp), float(rng)

    @property
    def dsc(self) -> float:
        """Inches per raw depth unit (raw is 4 x mm)."""

        return self.ksc / 101.6

    def build_matrices(
        self,
        pan: float | None = None,
        tilt: float | None = None,
        roll: float | None = None,
        x: float | None = None,
        y: float | None = None,
        z: float | None = None,
    ) -> None:
        """Camera to world rotation and translation for the given (or current) pose."""

        pan = self.p0 if pan is None else pan
        tilt = self.t0 if tilt is None else tilt
        roll = self.r0 if roll is None else roll
        self.rot = _rot_z(pan - 90.0) @ _rot_x(tilt + 90.0) @ _rot_z(roll)
        self.org = np.array(
            [self.cx if x is None else x, self.cy if y is None else y, self.cz if z is None else z], dtype=np.float64
        )

    # -------------------------------------------------------- coordinates

    def _cam_pts(self, ix: np.ndarray, iy: np.ndarray, iz: np.ndarray) -> np.ndarray:
        d = self.dsc * iz
        yup = (self.ih - 1) - iy
        u = (ix - 0.5 * (self.iw - 1)) / self.kf
        v = (yup - 0.5 * (self.ih - 1)) / self.kf
        return np.stack([d * u, d * v, -d], axis=0)

    def world_pts(self, ix: np.ndarray, iy: np.ndarray, iz: np.ndarray) -> np.ndarray:
        """World points (3 x N) for image columns, rows and raw depths."""

        cam = self._cam_pts(np.asarray(ix, dtype=np.float64), np.asarray(iy, dtype=np.float64), np.asarray(iz, dtype=np.float64))
        return self.rot @ cam.reshape(3, -1) + self.org[:, None]

    def world_pt(self, ix: float, iy: float, iz: float, sc: float = 1.0) -> tuple[float, float, float]:
        """World point for a pixel in an image `sc` times the depth size."""

        w = self.world_pts(np.array([ix / sc]), np.array([iy / sc]), np.array([iz]))
        return float(w[0, 0]), float(w[1, 0]), float(w[2, 0])

    def img_pt_z(self, wx: float, wy: float, wz: float, sc: float = 1.0) -> tuple[float, float, float]:
        """Image column, row and raw depth of a world point (depth <= 0 if behind)."""

        cam = self.rot.T @ (np.array([wx, wy, wz], dtype=np.float64) - self.org)
        d = -cam[2]
        if d <= 0.0:
            return -1.0, -1.0, 0.0
        ix = 0.5 * (self.iw - 1) + self.kf * cam[0] / d
        yup = 0.5 * (self.ih - 1) + self.kf * cam[1] / d
        return sc * ix, sc * ((self.ih - 1) - yup), d / self.dsc

    def img_pt(self, wx: float, wy: float, wz: float, sc: float = 1.0) -> tuple[float, float, bool]:
        ix, iy, z = self.img_pt_z(wx, wy, wz, sc)
        inside = z > 0.0 and 0.0 <= ix < sc * self.iw and 0.0 <= iy < sc * self.ih
        return ix, iy, inside

    def img_sphere(self, wx: float, wy: float, wz: float, diam: float, sc: float = 1.0) -> tuple[Roi, bool]:
        """Image box around a sphere; flag says whether all of it is visible."""

        dx, dy, dz = wx - self.cx, wy - self.cy, wz - self.cz
        r = 0.5 * diam
        dist = math.sqrt(dx * dx + dy * dy + dz * dz)
        dr = math.sqrt(dx * dx + dy * dy)
        if dist <= 0.0 or dr <= 0.0:
            return Roi(), False

        # horizontal perpendicular across the sphere
        rcp, rsp = r * dx / dr, r * dy / dr
        lf, _, _ = self.img_pt(wx - rsp, wy + rcp, wz, sc)
        rt, _, _ = self.img_pt(wx + rsp, wy - rcp, wz, sc)

        # vertical perpendicular across the sphere
        ct, st = dr / dist, dz / dist
        _, top, _ = self.img_pt(wx - rcp * st, wy - rsp * st, wz + r * ct, sc)
        _, bot, _ = self.img_pt(wx + rcp * st, wy + rsp * st, wz - r * ct, sc)

        x0, x1 = sorted((lf, rt))
        y0, y1 = sorted((top, bot))
        box = Roi().set_roi(x0, y0, x1 - x0, y1 - y0)
        inside = x0 >= 0 and y0 >= 0 and x1 < sc * self.iw and y1 < sc * self.ih
        return box, inside

    def img_cylinder(self, wx: float, wy: float, wz: float, diam: float, zsz: float, sc: float = 1.0) -> tuple[Roi, bool]:
        """Image box around an upright cylinder centred on the point."""

        dx, dy = wx - self.cx, wy - self.cy
        r, hz = 0.5 * diam, 0.5 * zsz
        dr = math.sqrt(dx * dx + dy * dy)
        if dr <= 0.0:
            return Roi(), False
        rcp, rsp = r * dx / dr, r * dy / dr
        lf, _, _ = self.img_pt(wx - rsp, wy + rcp, wz, sc)
        rt, _, _ = self.img_pt(wx + rsp, wy - rcp, wz, sc)
        rows = [
            self.img_pt(wx + sx * rcp, wy + sx * rsp, wz + sz * hz, sc)[1]
            for sx in (-1.0, 1.0)
            for sz in (-1.0, 1.0)
        ]
        x0, x1 = sorted((lf, rt))
        y0, y1 = min(rows), max(rows)
        box = Roi().set_roi(x0, y0, x1 - x0, y1 - y0)
        inside = x0 >= 0 and y0 >= 0 and x1 < sc * self.iw and y1 < sc * self.ih
        return box, inside

    def img_scale(self, wx: float, wy: float, wz: float, sc: float = 1.0, test: float = 10.0) -> float:
        """Approximate image pixels per inch around a world point."""

        box, _ = self.img_sphere(wx, wy, wz, test, sc)
        return box.w / test

    def beam_coords(self, pt: np.ndarray) -> np.ndarray:
        """Convert inches from the map corner into world coordinates."""

        return np.asarray(pt, dtype=np.float64) - np.array([self.ox, self.oy, 0.0])

    def inv_beam_coords(self, pt: np.ndarray) -> np.ndarray:
        return np.asarray(pt, dtype=np.float64) + np.array([self.ox, self.oy, 0.0])

    # --------------------------------------------------------- overhead map

    def floor_ht(self, pel: int) -> float:
        if pel <= 0:
            return 0.0
        return float(pel_to_height(pel, self.z0, self.z1))

    def floor_pel(self, ht: float) -> int:
        if ht < self.z0:
            return 0
        return int(height_to_pel(ht, self.z0, self.z1))

    def floor_map(self, dest: MapImage, d16: DepthImage, clr: int = 1) -> int:
        """Plot a depth image as a height surface into `dest` (max merge).

        Uses the current pose; call `build_matrices` first. Pixel values follow
        the [z0, z1] -> [1, 252] encoding and points at or above `zmax` are
        dropped. Returns 1, or 0 for bad images.
        """

        if dest.ndim != 2 or dest.dtype != np.uint8 or d16.ndim != 2 or d16.dtype != np.uint16:
            logger.error("Bad images to Surface3D.floor_map")
            return 0
        if d16.shape != (self.ih, self.iw):
            logger.error("Bad images to Surface3D.floor_map")
            return 0
        if clr > 0:
            dest.fill(0)

        zlim = min(int(round(self.dmax / self.dsc)), DEPTH_MAX)
        rows, cols = np.nonzero((d16 >= DEPTH_MIN) & (d16 <= zlim))
        if rows.size == 0:
            return 1
        w = self.world_pts(cols, rows, d16[rows, cols])
        mx = np.floor((w[0] + self.ox) / self.ipp).astype(np.int64)
        my = np.floor((w[1] + self.oy) / self.ipp).astype(np.int64)
        step = (self.z1 - self.z0) / 251.0
        dh, dw = dest.shape
        ok = (w[2] >= self.z0 - 0.5 * step) & (w[2] < self.zmax)
        ok &= (mx >= 0) & (mx < dw) & (my >= 0) & (my < dh)
        if not ok.any():
            return 1
        pel = height_to_pel(w[2, ok], self.z0, self.z1)
        flat = dest.reshape(-1)
        np.maximum.at(flat, my[ok] * dw + mx[ok], np.atleast_1d(pel))
        return 1

    # ------------------------------------------------------ plane estimation

    def cam_calib(
        self,
        hts: MapImage,
        z0: float,
        ztol: float,
        zlo: float,
        zhi: float,
        ipp: float,
        xoff: float = 0.0,
        yoff: float = 0.0,
    ) -> tuple[float, float, float, float]:
        """Fit a horizontal plane to an overhead height map.

        `hts` uses the [zlo, zhi] encoding; only cells within +/- ztol of `z0`
        are used. The camera sits at (cx + xoff, cy + yoff) inches from the map
        corner. Returns (tilt, roll, height) corrections plus the rms fit error,
        which is negative when too few points were found.
        """

        lo = int(height_to_pel(z0 - ztol, zlo, zhi))
        hi = int(height_to_pel(z0 + ztol, zlo, zhi))
        ys, xs = np.nonzero((hts >= lo) & (hts <= hi))
        wz = pel_to_height(hts[ys, xs], zlo, zhi)
        rms = self.est.fit(xs * ipp, ys * ipp, np.asarray(wz, dtype=np.float64))
        if rms < 0.0:
            return 0.0, 0.0, 0.0, rms
        a, b, c = self.est.a, self.est.b, self.est.c

        # plane height under the camera
        tz = a * (self.cx + xoff) + b * (self.cy + yoff) + c
        h = z0 - tz

        # resolve slope along and across the viewing direction
        rads = math.radians(self.p0)
        cp, sp = math.cos(rads), math.sin(rads)
        t = -math.degrees(math.atan(a * cp + b * sp))
        r = math.degrees(math.atan(-a * sp + b * cp))
        return t, r, h, rms
