"""Fusion of several calibrated depth sensors into one overhead height map.

Each camera has a pose (position in inches, pan/tilt/roll in degrees), a
maximum plotting range and a device number (negative means absent). The map is
indexed [iy, ix] with ix = (wx + x0) / ipp and iy = (wy + y0) / ipp, and its
pixels encode height over [ztab + zlo, ztab + zhi] as 1..252 (0 = unseen).
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import cv2
import numpy as np

from depthscene.core import imgops
from depthscene.core.config.params import ParamBundle, fspec, ispec
from depthscene.core.depth.surface import Surface3D, pel_to_height
from depthscene.core.types import DepthImage, MapImage, PlanePose

logger = logging.getLogger(__name__)

MAX_CAMS = 12


@dataclass
class CameraRecord:
    x: float = -66.0
    y: float = 0.0
    z: float = 90.0
    pan: float = 0.0
    tilt: float = -18.0
    roll: float = 180.0
    rmax: float = 192.0
    dev: int = -1
    # image corners of the plane estimation polygon
    rx: list[int] = field(default_factory=lambda: [-1] * 4)
    ry: list[int] = field(default_factory=lambda: [-1] * 4)
    used: int = 0

    def cam_bundle(self, tag: str) -> ParamBundle:
        return ParamBundle(
            tag,
            [
                fspec("x", self.x, "X position (in)"),
                fspec("y", self.y, "Y position (in)"),
                fspec("z", self.z, "Height above floor (in)"),
                fspec("pan", self.pan, "Pan wrt X axis (deg)"),
                fspec("tilt", self.tilt, "Tilt wrt ceiling (deg)"),
                fspec("roll", self.roll, "Roll wrt floor (deg)"),
                fspec("rmax", self.rmax, "Max range to plot (in)"),
                ispec("dev", self.dev, "Device number"),
            ],
        )

    def flat_bundle(self, tag: str) -> ParamBundle:
        specs = []
        for i in range(4):
            specs.append(ispec(f"x{i}", self.rx[i], f"X{i} corner (pel)"))
            specs.append(ispec(f"y{i}", self.ry[i], f"Y{i} corner (pel)"))
        return ParamBundle(tag, specs)

    def take_cam(self, ps: ParamBundle) -> None:
        for k in ("x", "y", "z", "pan", "tilt", "roll", "rmax", "dev"):
            setattr(self, k, getattr(ps, k))

    def take_flat(self, ps: ParamBundle) -> None:
        self.rx = [getattr(ps, f"x{i}") for i in range(4)]
        self.ry = [getattr(ps, f"y{i}") for i in range(4)]


def _excise(path: str | Path, tag: str) -> None:
    p = Path(path)
    if not p.exists():
        return
    try:
        lines = [ln for ln in p.read_text(encoding="utf-8").splitlines() if not ln.split()[:1] == [tag]]
        p.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    except OSError:
        logger.exception("Could not remove %s from %s", tag, p)


class Overhead3D(Surface3D):
    """Combines depth sensors into an overhead height map."""

    def __init__(self, ncam: int = 1, name: str = "ov3") -> None:
        super().__init__()
        self.name = name
        self.cams: list[CameraRecord] = []
        self.mps = ParamBundle(
            f"{name}_map",
            [
                fspec("mw", 144.0, "Full map width (in)"),
                fspec("mh", 144.0, "Full map height (in)"),
                fspec("x0", 72.0, "X zero offset (in)"),
                fspec("y0", 72.0, "Y zero offset (in)"),
                fspec("zlo", 0.0, "Lowest Z wrt surface (in)"),
                fspec("zhi", 8.0, "Highest Z wrt surface (in)"),
                fspec("ipp", 0.2, "Map pixel resolution (in)"),
                fspec("ztab", 42.0, "Expected surface ht (in)"),
            ],
        )
        self.pps = ParamBundle(
            f"{name}_plane",
            [
                fspec("srng", 4.0, "Surface search range (in)"),
                ispec("npts", 10000, "Min points in estimate"),
                fspec("rough", 2.0, "Max surface std dev (in)"),
                fspec("dt", 3.0, "Max surface tilt (deg)"),
                fspec("dr", 4.0, "Max surface roll (deg)"),
                fspec("dh", 2.0, "Max surface offset (in)"),
            ],
        )
        self.hfov = 0.0
        self.vfov = 0.0
        self.ztab = self.mps.ztab
        self.rasa = 1
        # encoding range of the current map contents
        self.mlo = 0.0
        self.mhi = 1.0
        self.map = np.zeros((1, 1), dtype=np.uint8)
        self.map2 = np.zeros((1, 1), dtype=np.uint8)
        # last plane fit adjustments
        self.fit = 0
        self.efit = self.tfit = self.rfit = self.hfit = 0.0
        self.alloc_cams(ncam)
        self.src_size()
        self.reset()

    # -------------------------------------------------------- map geometry

    @property
    def mw(self) -> float:
        return self.mps.mw

    @property
    def mh(self) -> float:
        return self.mps.mh

    @property
    def x0(self) -> float:
        return self.mps.x0

    @property
    def y0(self) -> float:
        return self.mps.y0

    @property
    def zlo(self) -> float:
        return self.mps.zlo

    @property
    def zhi(self) -> float:
        return self.mps.zhi

    @property
    def map_ipp(self) -> float:
        return self.mps.ipp

    def pels(self, ins: float) -> int:
        return int(round(ins / self.mps.ipp))

    def i2p(self, ins: float) -> float:
        return ins / self.mps.ipp

    def p2i(self, pels: float) -> float:
        return pels * self.mps.ipp

    def world_to_map(self, wx: float, wy: float) -> tuple[float, float]:
        return (wx + self.mps.x0) / self.mps.ipp, (wy + self.mps.y0) / self.mps.ipp

    def map_to_world(self, ix: float, iy: float) -> tuple[float, float]:
        return ix * self.mps.ipp - self.mps.x0, iy * self.mps.ipp - self.mps.y0

    def map_ht(self, pel: int) -> float:
        """World height of a pixel value in the current map."""

        return float(pel_to_height(pel, self.mlo, self.mhi))

    # ------------------------------------------------------- configuration

    def num_cams(self) -> int:
        return len(self.cams)

    def alloc_cams(self, ncam: int) -> None:
        n = max(1, min(int(ncam), MAX_CAMS))
        if n == len(self.cams):
            return
        self.cams = [CameraRecord(dev=-i) for i in range(n)]

    def set_map(
        self,
        w: float = 144.0,
        h: float = 144.0,
        x: float = 72.0,
        y: float = 72.0,
        lo: float = 0.0,
        hi: float = 8.0,
        pel: float = 0.2,
        ht: float = 42.0,
    ) -> None:
        self.mps.set_defaults(mw=w, mh=h, x0=x, y0=y, zlo=lo, zhi=hi, ipp=pel, ztab=ht)
        self.ztab = ht

    def set_fit(self, d: float = 4.0, n: int = 10000, e: float = 2.0, t: float = 3.0, r: float = 4.0, h: float = 2.0) -> None:
        self.pps.set_defaults(srng=d, npts=n, rough=e, dt=t, dr=r, dh=h)

    def set_cam(
        self,
        n: int,
        x: float,
        y: float,
        z: float,
        pan: float,
        tilt: float,
        roll: float = 0.0,
        rng: float = 180.0,
        dnum: int = 0,
    ) -> None:
        if not 0 <= n < len(self.cams):
            return
        c = self.cams[n]
        c.x, c.y, c.z, c.pan, c.tilt, c.roll, c.rmax, c.dev = x, y, z, pan, tilt, roll, rng, dnum
        logger.info("Camera %d at (%3.1f %3.1f %3.1f) pan %3.1f tilt %3.1f roll %3.1f", n, x, y, z, pan, tilt, roll)

    def defaults(self, path: str | Path | None = None) -> int:
        ok = self.load_cfg(path)
        ok &= self.pps.load_defs(path)
        return ok

    def load_cfg(self, path: str | Path | None = None) -> int:
        ok = 1
        for c in self.cams:
            c.dev = -1
            c.rx[0] = -1
        for i, c in enumerate(self.cams):
            ps = c.cam_bundle(f"{self.name}_cam{i}")
            ps.load_defs(path)
            c.take_cam(ps)
        for i, c in enumerate(self.cams):
            ps = c.flat_bundle(f"{self.name}_flat{i}")
            ok &= ps.load_defs(path)
            c.take_flat(ps)
        ok &= self.mps.load_defs(path)
        self.ztab = self.mps.ztab
        return ok

    def save_vals(self, path: str | Path, geom: int = 0) -> int:
        ok = self.save_cfg(path, geom)
        ok &= self.pps.save_vals(path)
        return ok

    def save_cfg(self, path: str | Path, geom: int = 0) -> int:
        """Save the map bundle and, if `geom > 0`, the geometry of present cameras."""

        ok = 1
        if geom > 0:
            for i, c in enumerate(self.cams):
                tag = f"{self.name}_cam{i}"
                if c.dev >= 0:
                    ok &= c.cam_bundle(tag).save_vals(path)
                else:
                    _excise(path, tag)
            for i, c in enumerate(self.cams):
                tag = f"{self.name}_flat{i}"
                if c.dev >= 0 and self.restricted(i):
                    ok &= c.flat_bundle(tag).save_vals(path)
                else:
                    _excise(path, tag)
        ok &= self.mps.save_vals(path)
        return ok

    # ---------------------------------------------------- camera utilities

    def _cam(self, cam: int) -> CameraRecord:
        return self.cams[max(0, min(cam, len(self.cams) - 1))]

    def copy_cams(self, ref: Overhead3D) -> None:
        for c, r in zip(self.cams, ref.cams):
            c.x, c.y, c.z, c.pan, c.tilt, c.roll, c.rmax, c.dev = r.x, r.y, r.z, r.pan, r.tilt, r.roll, r.rmax, r.dev
            c.rx, c.ry = list(r.rx), list(r.ry)

    def dump_loc(self, cam: int = 0) -> np.ndarray | None:
        if not 0 <= cam < len(self.cams):
            logger.error("Bad input to Overhead3D.dump_loc")
            return None
        c = self.cams[cam]
        return np.array([c.x, c.y, c.z])

    def load_loc(self, cam: int, loc: Sequence[float]) -> int:
        if not 0 <= cam < len(self.cams) or len(loc) != 3:
            logger.error("Bad input to Overhead3D.load_loc")
            return 0
        c = self.cams[cam]
        c.x, c.y, c.z = (float(v) for v in loc)
        return 1

    def dump_pose(self, cam: int = 0) -> np.ndarray | None:
        if not 0 <= cam < len(self.cams):
            logger.error("Bad input to Overhead3D.dump_pose")
            return None
        c = self.cams[cam]
        return np.array([c.x, c.y, c.z, c.pan, c.tilt, c.roll])

    def load_pose(self, cam: int, pose: Sequence[float]) -> int:
        if not 0 <= cam < len(self.cams) or len(pose) != 6:
            logger.error("Bad input to Overhead3D.load_pose")
            return 0
        c = self.cams[cam]
        c.x, c.y, c.z, c.pan, c.tilt, c.roll = (float(v) for v in pose)
        return 1

    def active_cams(self) -> int:
        return sum(1 for c in self.cams if c.dev >= 0)

    def first_cam(self) -> int:
        return next((i for i, c in enumerate(self.cams) if c.dev >= 0), 0)

    def last_cam(self) -> int:
        n = 0
        for i, c in enumerate(self.cams):
            if c.dev >= 0:
                n = i
        return n

    def cam_ok(self, cam: int) -> bool:
        return 0 <= cam < len(self.cams) and self.cams[cam].dev >= 0

    # ------------------------------------------------- image normalization

    def sideways(self, cam: int = 0) -> bool:
        """Sensor is in portrait rather than landscape orientation."""

        if not 0 <= cam < len(self.cams):
            return False
        return 45.0 < abs(self.cams[cam].roll) <= 135.0

    def upside_down(self, cam: int = 0) -> bool:
        return 0 <= cam < len(self.cams) and abs(self.cams[cam].roll) > 135.0

    def img_roll(self, cam: int = 0) -> float:
        """Residual roll once sideways and upside down images are corrected."""

        roll = self._cam(cam).roll
        if roll > 135.0:
            roll -= 180.0
        elif roll >= 45.0:
            roll -= 90.0
        elif roll < -135.0:
            roll += 180.0
        elif roll <= -45.0:
            roll += 90.0
        return roll

    def already_ok(self, ref: np.ndarray, cam: int = 0, big: int = 0) -> bool:
        if not (big > 0 or ref.shape[0] <= 600):
            return False
        if not 0 <= cam < len(self.cams):
            return True
        c = self.cams[cam]
        # newer sensors flip their own images
        return abs(c.roll) <= 45.0 or (c.dev >= 20 and abs(c.roll) > 135.0)

    def roll_size(self, ref: np.ndarray, cam: int = 0, big: int = 0) -> tuple[int, int]:
        """Width and height of the corrected version of `ref`."""

        h, w = ref.shape[:2]
        if big <= 0 and h > 600:
            w //= 2
            h //= 2
        if big < 0:
            w //= 2
            h //= 2
        if self.sideways(cam):
            return h, w
        return w, h

    def correct(self, src: np.ndarray, cam: int = 0, big: int = 0) -> np.ndarray:
        """Copy of `src` resized as needed and rotated to undo camera roll."""

        valid = 0 <= cam < len(self.cams)
        roll = self.cams[cam].roll if valid else 0.0
        kin = self.cams[cam].dev if valid else 0
        w, h = self.roll_size(src, cam, big)
        interp = cv2.INTER_NEAREST if src.dtype == np.uint16 else cv2.INTER_AREA

        if abs(roll) <= 45.0:
            return cv2.resize(src, (w, h), interpolation=interp)
        if roll > 135.0 or roll < -135.0:
            dest = cv2.resize(src, (w, h), interpolation=interp)
            if kin < 20:
                dest = cv2.rotate(dest, cv2.ROTATE_180)
            return dest

        # resize first then rotate for sideways
        tmp = cv2.resize(src, (h, w), interpolation=interp)
        if 45.0 < roll <= 135.0:
            return cv2.rotate(tmp, cv2.ROTATE_90_CLOCKWISE)
        return cv2.rotate(tmp, cv2.ROTATE_90_COUNTERCLOCKWISE)

    # ------------------------------------------------------ main functions

    def src_size(self, w: int = 640, h: int = 480, f: float = 525.0, sc: float = 0.9659) -> None:
        """Configure for depth images of the given size and optics."""

        self.set_optics(f, sc)
        self.set_size(w, h)
        self.hfov = 2.0 * math.degrees(math.atan2(0.5 * w, f))
        self.vfov = 2.0 * math.degrees(math.atan2(0.5 * h, f))

        # second generation depth is narrower than color
        if h > 500:
            self.hfov *= 0.78
        if self.sideways():
            self.set_size(h, w)
            self.hfov, self.vfov = self.vfov, self.hfov

    def reset(self) -> None:
        """Start a new frame sequence, resizing the maps if needed."""

        shape = (self.pels(self.mps.mh), self.pels(self.mps.mw))
        if self.map.shape != shape:
            self.map = np.zeros(shape, dtype=np.uint8)
            self.map2 = np.zeros(shape, dtype=np.uint8)
        self.ztab = self.mps.ztab
        self.ox, self.oy = self.mps.x0, self.mps.y0
        self.rasa = 1

    def adj_geometry(self, cam: int = 0) -> None:
        """Set up the projection of some camera for coordinate queries."""

        c = self._cam(cam)
        self.set_camera(c.x, c.y, c.z)
        self.set_view(c.pan, c.tilt, self.img_roll(cam))
        self.ox, self.oy = self.mps.x0, self.mps.y0
        self.build_matrices()

    def _project(self, dest: MapImage, d16: DepthImage, bot: float, top: float, cam: int, zlim: float, clr: int) -> int:
        n = max(0, min(cam, len(self.cams) - 1))
        zcut = zlim if zlim > 0.0 else 84.0
        self.adj_geometry(n)
        self.set_project(self.ztab + bot, self.ztab + top, zcut, self.mps.ipp, self.cams[n].rmax)
        self.mlo, self.mhi = self.ztab + bot, self.ztab + top
        return self.floor_map(dest, d16, clr)

    def ingest(
        self,
        d16: DepthImage,
        bot: float | None = None,
        top: float | None = None,
        cam: int = 0,
        zlim: float = 0.0,
    ) -> int:
        """Add a rightway-up depth image to the accumulated map.

        Heights between ztab + bot and ztab + top are encoded and points at or
        above `zlim` (default 84 in) are ignored. The map is cleared by the
        first ingest after `reset`.
        """

        if d16.ndim != 2 or d16.dtype != np.uint16:
            logger.error("Bad input to Overhead3D.ingest")
            return 0
        bot = self.mps.zlo if bot is None else bot
        top = self.mps.zhi if top is None else top
        n = max(0, min(cam, len(self.cams) - 1))
        if self._project(self.map, d16, bot, top, n, zlim, self.rasa) <= 0:
            return 0
        if self.rasa > 0:
            for c in self.cams:
                c.used = 0
            self.rasa = 0
        self.cams[n].used = 1
        return 1

    def reproject(
        self,
        dest: MapImage,
        d16: DepthImage,
        bot: float | None = None,
        top: float | None = None,
        cam: int = 0,
        zlim: float = 0.0,
        clr: int = 1,
    ) -> int:
        """Like `ingest` but writes one sensor's view into its own map image."""

        if d16.ndim != 2 or d16.dtype != np.uint16 or dest.shape != self.map.shape:
            logger.error("Bad input to Overhead3D.reproject")
            return 0
        bot = self.mps.zlo if bot is None else bot
        top = self.mps.zhi if top is None else top
        n = max(0, min(cam, len(self.cams) - 1))
        if self._project(dest, d16, bot, top, n, zlim, clr) <= 0:
            return 0
        for c in self.cams:
            c.used = 0
        self.cams[n].used = 1
        self.rasa = 0
        return 1

    def interpolate(self, sc: int = 9, pmin: int = 3) -> MapImage:
        """Fill unseen map cells from nearby maxima into `map2`."""

        self.map2 = imgops.nz_box_max(self.map, sc, pmin)
        return self.map2

    # -------------------------------------------------------- plane fitting

    def restricted(self, cam: int) -> bool:
        c = self._cam(cam)
        return all(x >= 0 for x in c.rx) and all(y >= 0 for y in c.ry)

    def set_restrict(self, cam: int, corners: Sequence[tuple[int, int]] | None) -> None:
        """Polygon (4 image corners) limiting plane estimation; None clears it."""

        if not 0 <= cam < len(self.cams):
            return
        c = self.cams[cam]
        if corners is None or len(corners) != 4:
            c.rx, c.ry = [-1] * 4, [-1] * 4
            return
        c.rx = [int(p[0]) for p in corners]
        c.ry = [int(p[1]) for p in corners]

    def est_pose(self, d16: DepthImage, cam: int = 0, ztol: float = 4.0) -> PlanePose | None:
        """Tilt, roll and height corrections for a camera from the floor.

        Only the restriction polygon (if any) is used. Returns None when no
        plane could be fitted.
        """

        c = self._cam(cam)
        src = d16
        if self.restricted(cam):
            mask = np.zeros(d16.shape, dtype=np.uint8)
            poly = np.array(list(zip(c.rx, c.ry)), dtype=np.int32)
            cv2.fillPoly(mask, [poly], 255)
            src = imgops.over_gate(d16, mask, 128)

        self.rasa = 1
        if self.ingest(src, -ztol, ztol, cam) <= 0:
            return None
        self.interpolate()
        t, r, h, err = self.cam_calib(
            self.map2, self.ztab, ztol, self.ztab - ztol, self.ztab + ztol, self.mps.ipp, self.mps.x0, self.mps.y0
        )
        self.efit, self.tfit, self.rfit, self.hfit = err, t, r, h
        self.fit = 1 if err >= 0.0 else 0
        if err < 0.0:
            return None
        return PlanePose(t, r, h, err)

    def est_dev(self, devs: MapImage, dmax: float = 2.0, ztol: float = 4.0) -> int:
        """Deviations from the plane found by the last `est_pose`."""

        if devs.shape != self.map.shape:
            logger.error("Bad images to Overhead3D.est_dev")
            return 0
        devs.fill(0)
        return self._surf_err(devs, self.map2, dmax, self.ztab - ztol, self.ztab + ztol)

    def plane_dev(self, devs: MapImage, hts: MapImage, dmax: float = 2.0, search: float = 0.0) -> int:
        """Fit the table plane in `hts` and write per-cell deviations to `devs`.

        The fit must use at least `npts` cells, have an rms error of at most
        `rough` and differ from the expected plane by less than `dt`, `dr` and
        `dh`. Returns 1 if successful, 0 for a bad fit.
        """

        if devs.shape != self.map.shape or hts.shape != self.map.shape:
            logger.error("Bad images to Overhead3D.plane_dev")
            return 0
        devs.fill(0)
        sdev = search if search > 0.0 else self.pps.srng
        lo, hi = self.ztab + self.mps.zlo, self.ztab + self.mps.zhi
        t, r, h, err = self.cam_calib(hts, self.ztab, sdev, lo, hi, self.mps.ipp, self.mps.x0, self.mps.y0)
        p = self.pps
        if self.est.pts < p.npts or err < 0.0 or err > p.rough or abs(t) > p.dt or abs(r) > p.dr or abs(h) > p.dh:
            logger.warning("Plane fit rejected: n %d, err %4.2f, t %3.1f, r %3.1f, h %3.1f", self.est.pts, err, t, r, h)
            return 0
        return self._surf_err(devs, hts, dmax, lo, hi)

    def _surf_err(self, devs: MapImage, hts: MapImage, dmax: float, lo: float, hi: float) -> int:
        """dev = k * (wz - (a * wx + b * wy + c)) + 128 with k = 100 / dmax."""

        k = 100.0 / dmax
        ipp = self.mps.ipp
        ys, xs = np.nonzero(hts > 0)
        wz = pel_to_height(hts[ys, xs], lo, hi)
        est = self.est
        d = k * (wz - (est.a * xs * ipp + est.b * ys * ipp + est.c)) + 128.0
        devs[ys, xs] = np.clip(np.rint(d), 1, 255).astype(np.uint8)
        return 1
