"""Gaze direction from the offset of a detected face relative to the head centre.

Each color view is searched around every tracked head; the 3D face centre
(from the matching depth image) minus the head middle gives one direction
estimate per camera, which the tracker folds into a smoothed gaze.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import numpy as np

from depthscene.core.analytics.frontal import CMAX, PMAX, Frontal
from depthscene.core.analytics.stare import Stare3D
from depthscene.core.config.params import ParamBundle, fspec, load_all, save_all
from depthscene.core.config.settings import SceneSettings
from depthscene.core.detectors.faces import CascadeFaceFinder, FaceFinder
from depthscene.core.roi import Roi
from depthscene.core.types import DepthImage

logger = logging.getLogger(__name__)

# Depth values at or above this are treated as unreliable near a face.
FACE_DEPTH_MAX = 40000


def _pan(v: np.ndarray) -> float:
    return math.degrees(math.atan2(v[1], v[0]))


def _tilt(v: np.ndarray) -> float:
    return math.degrees(math.atan2(v[2], math.hypot(v[0], v[1])))


def pan_diff(a: np.ndarray, b: np.ndarray) -> float:
    """Signed pan angle of `a` minus that of `b`, wrapped to [-180, 180)."""

    d = _pan(a) - _pan(b)
    return (d + 180.0) % 360.0 - 180.0


def tilt_diff(a: np.ndarray, b: np.ndarray) -> float:
    return _tilt(a) - _tilt(b)


class HeadGaze(Frontal):
    """Face probes bound to a `Stare3D` person finder, plus attention counting."""

    def __init__(self, stare: Stare3D | None = None, finder: FaceFinder | None = None) -> None:
        super().__init__(finder)
        self.s3 = stare
        self.vps = ParamBundle(
            "gaze_vals",
            [
                fspec("hadj", 0.0, "Eye height adjust (in)"),
                fspec("dadj", 0.0, "Head depth adjust (in)"),
                fspec("diam", 14.0, "Face search diameter (in)"),
                fspec("fwid", 6.0, "Min face width (in)"),
                fspec("ptol", 20.0, "Attn pan tolerance (deg)"),
                fspec("ttol", 10.0, "Attn tilt tolerance (deg)"),
            ],
        )
        self.zps = ParamBundle(
            "gaze_attn",
            [
                fspec("xme", 0.0, "Attention point X (in)"),
                fspec("yme", 64.0, "Attention point Y (in)"),
                fspec("zme", 96.0, "Attention point Z (in)"),
            ],
        )
        self.gcnt = np.zeros(PMAX, dtype=np.int32)
        self.reset()

    @classmethod
    def from_settings(cls, stare: Stare3D, settings: SceneSettings) -> HeadGaze:
        """Probe heads of `stare` with the cascade named in `settings` (OpenCV default if unset)."""

        hg = cls(stare, CascadeFaceFinder(settings.face_cascade))
        if settings.param_file:
            hg.defaults(settings.param_file)
        return hg

    def bind(self, stare: Stare3D) -> None:
        self.s3 = stare

    def set_gaze(self, dz: float, dr: float, s: float, fw: float, pt: float, tt: float) -> None:
        self.vps.set_defaults(hadj=dz, dadj=dr, diam=s, fwid=fw, ptol=pt, ttol=tt)

    def set_attn(self, x: float, y: float, z: float) -> None:
        self.zps.set_defaults(xme=x, yme=y, zme=z)

    # ------------------------------------------------------------------ config

    def defaults(self, path: str | Path | None = None) -> int:
        ok = super().defaults(path)
        ok &= load_all([self.vps, self.zps], path)
        return ok

    def load_cfg(self, path: str | Path | None = None) -> int:
        return self.zps.load_defs(path)

    def save_vals(self, path: str | Path, geom: int = 0) -> int:
        ok = super().save_vals(path)
        ok &= save_all([self.vps, self.zps], path)
        return ok

    def save_cfg(self, path: str | Path) -> int:
        return self.zps.save_vals(path)

    # ------------------------------------------------------------ main calls

    def reset(self) -> None:
        if hasattr(self, "gcnt"):
            self.gcnt[:] = 0
        super().reset()

    def scan_rgb(self, src: np.ndarray, d16: DepthImage, cam: int = 0, trk: int = 1) -> int:
        """Probe every tracked head seen by camera `cam` for a face.

        Assumes the depth images were ingested and the map analyzed. Returns
        the number of gaze estimates added, or -1 on bad input.
        """

        if self.s3 is None:
            logger.error("Unbound person detector in HeadGaze.scan_rgb")
            return -1
        if not 0 <= cam < CMAX or src.ndim not in (2, 3) or d16.ndim != 2:
            logger.error("Bad input to HeadGaze.scan_rgb")
            return -1
        s3 = self.s3
        sc = 2.0 if src.shape[0] > 640 else 1.0
        s3.adj_geometry(cam)
        cnt = 0
        for p in range(min(s3.person_lim(trk), PMAX)):
            if not s3.person_ok(p, trk):
                continue
            guy = s3.get_person(p, trk)
            mid = self._head_mid(guy.pos, cam)
            area = self._search_area(mid, src, sc)
            if area is None:
                continue
            probe, rot = area
            if self.face_chk(p, src, probe, rot, cam) < 0:
                continue
            fmid = self.face_mid(p, cam)
            if fmid is None:
                continue
            fc = self._face_pt(fmid[0], fmid[1], d16, sc)
            if fc is None:
                continue
            guy.gaze_est(fc - mid)
            cnt += 1
        logger.debug("HeadGaze: %d gaze estimates from camera %d", cnt, cam)
        return cnt

    def _head_mid(self, head: np.ndarray, cam: int) -> np.ndarray:
        """Head centre pushed `dadj` away from the camera and raised `hadj` to eye level."""

        kin = self.s3.dump_loc(cam)
        v = head - kin
        d = float(np.linalg.norm(v))
        mid = head.copy() if d <= 0.0 else kin + v * ((d + self.vps.dadj) / d)
        mid[2] += self.vps.hadj
        return mid

    def _search_area(self, mid: np.ndarray, src: np.ndarray, sc: float) -> tuple[Roi, float] | None:
        """Square image area for the face plus the head's image rotation in degrees."""

        s3 = self.s3
        sz = self.vps.diam * s3.img_scale(mid[0], mid[1], mid[2], sc)
        if sz < 20.0 or sz > 500.0:
            return None
        ix, iy, _ = s3.img_pt(mid[0], mid[1], mid[2], sc)
        probe = Roi().set_center(ix, iy, sz)
        full = Roi(0, 0, src.shape[1], src.shape[0])
        if full.overlap(probe) < 0.75 * probe.area:
            return None

        # image direction of a point straight above the head (rows grow down)
        ix2, iy2, _ = s3.img_pt(mid[0], mid[1], mid[2] + 12.0, sc)
        rot = math.degrees(math.atan2(iy - iy2, ix2 - ix)) - 90.0
        return probe, rot

    def _face_pt(self, fx: float, fy: float, d16: DepthImage, sc: float) -> np.ndarray | None:
        """World position of a face centre using the local depth."""

        samp = Roi().set_center(fx / sc, fy / sc, 5.0).clip_roi(d16.shape[1], d16.shape[0])
        if samp.empty():
            return None
        patch = d16[samp.slices()]
        if np.any(patch >= FACE_DEPTH_MAX):
            return None
        good = patch[patch > 0]
        if good.size == 0:
            return None
        wx, wy, wz = self.s3.world_pt(fx, fy, float(good.mean()), sc)
        return np.array([wx, wy, wz])

    def done_rgb(self, trk: int = 1) -> None:
        """Blend in this cycle's gaze estimates once every color view was scanned."""

        if self.s3 is None:
            return
        self.done_chk()
        for i in range(self.s3.person_lim(trk)):
            guy = self.s3.get_person(i, trk)
            if guy is not None:
                guy.update_gaze(trk)
        self._attn_hits(trk)

    def _attn_hits(self, trk: int) -> None:
        me = np.array([self.zps.xme, self.zps.yme, self.zps.zme])
        for i in range(PMAX):
            g0 = int(self.gcnt[i])
            self.gcnt[i] = 0
            guy = self.s3.get_person(i, trk)
            if guy is None or guy.id <= 0 or guy.gok <= 0:
                continue
            rel = me - guy.pos
            if abs(pan_diff(rel, guy.gaze.pos)) <= self.vps.ptol and abs(tilt_diff(rel, guy.gaze.pos)) <= self.vps.ttol:
                self.gcnt[i] = g0 + 1

    # -------------------------------------------------------------- results

    def gaze_max(self) -> int:
        """Longest run of frames anyone has been looking at the attention point."""

        return int(self.gcnt.max())

    def any_gaze(self, th: int = 1) -> int:
        return 1 if self.gaze_max() >= th else 0

    def gaze_id(self, pid: int, trk: int = 1) -> int:
        """Frames the person with a given ID has looked at the spot, -1 if unknown."""

        if pid < 0 or self.s3 is None:
            return -1
        for i in range(PMAX):
            if self.s3.person_id(i, trk) == pid:
                return int(self.gcnt[i])
        return -1

    def gaze_new(self, trk: int = 1, gmin: int = 1) -> int:
        """Index of the person who most recently started looking at the spot."""

        if self.s3 is None:
            return -1
        win, best = -1, 0
        for i in range(PMAX):
            n = int(self.gcnt[i])
            if self.s3.person_ok(i, trk) and n >= gmin and (win < 0 or n < best):
                win, best = i, n
        return win

    def gaze_new_id(self, trk: int = 1, gmin: int = 1) -> int:
        return 0 if self.s3 is None else self.s3.person_id(self.gaze_new(trk, gmin), trk)

    def front_new_id(self, cam: int = 0, fmin: int = 1) -> int:
        return 0 if self.s3 is None else self.s3.person_id(self.front_new(cam, fmin))
