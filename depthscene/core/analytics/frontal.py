"""Face checks inside head regions, with frontal-view counting.

Person numbers are tracker slot indices, not unique IDs. A face is "frontal"
when its centre lies close to where the head centre projects in the probe,
which is a cheap proxy for someone looking straight at the camera.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np

from depthscene.core import imgops
from depthscene.core.config.params import ParamBundle, fspec, load_all, save_all
from depthscene.core.detectors.faces import CascadeFaceFinder, FaceFinder
from depthscene.core.roi import Roi

logger = logging.getLogger(__name__)

PMAX = 50
CMAX = 8


class Frontal:
    """Rotated face probes per person and camera with consecutive frontal counts.

    `tried` is 1 for probes made during the current cycle, -1 for ones made
    during the last finished cycle and 0 otherwise. `fcnt` is -1 for no face,
    0 for a non-frontal face, else the number of consecutive frontal views.
    """

    def __init__(self, finder: FaceFinder | None = None) -> None:
        self.ff: FaceFinder = finder if finder is not None else CascadeFaceFinder()
        self.dps = ParamBundle(
            "face_front",
            [
                fspec("fsz", 0.3, "Min face wrt search"),
                fspec("xoff", 0.5, "X center wrt search"),
                fspec("yoff", 0.5, "Y center wrt search"),
                fspec("xsh", 0.2, "Max X shift wrt face"),
                fspec("ysh", 0.1, "Max Y shift wrt face"),
            ],
        )
        shape = (PMAX, CMAX)
        self.cx = np.zeros(shape)
        self.cy = np.zeros(shape)
        self.rot = np.zeros(shape)
        self.fdx = np.zeros(shape)
        self.fdy = np.zeros(shape)
        self.tried = np.zeros(shape, dtype=np.int32)
        self.fcnt = np.full(shape, -1, dtype=np.int32)
        self.seen = np.zeros(shape, dtype=np.int32)
        self.crop: list[list[np.ndarray | None]] = [[None] * CMAX for _ in range(PMAX)]
        self.warp: list[list[np.ndarray | None]] = [[None] * CMAX for _ in range(PMAX)]
        self.face = [[Roi() for _ in range(CMAX)] for _ in range(PMAX)]
        self.reset()

    def set_front(self, sz: float, xc: float, yc: float, dx: float, dy: float) -> None:
        self.dps.set_defaults(fsz=sz, xoff=xc, yoff=yc, xsh=dx, ysh=dy)

    def defaults(self, path: str | Path | None = None) -> int:
        return load_all([self.dps], path)

    def save_vals(self, path: str | Path) -> int:
        return save_all([self.dps], path)

    # ------------------------------------------------------------ main calls

    def reset(self) -> None:
        self.tried[:] = 0
        self.fcnt[:] = -1
        self.seen[:] = 0

    def face_chk(self, p: int, src: np.ndarray, area: Roi, ang: float = 0.0, cam: int = 0) -> int:
        """Look for a face in a rotated patch of `src` covering `area`.

        Returns -1 for no face, 0 for a non-frontal face, else the frontal count.
        """

        if not self._ok_idx(p, cam) or src.ndim not in (2, 3) or area.empty():
            logger.error("Bad input to Frontal.face_chk")
            return -1
        ps = self.dps
        midx, midy = area.center()
        self.cx[p, cam], self.cy[p, cam], self.rot[p, cam] = midx, midy, ang
        self.tried[p, cam] = 1
        n = max(0, int(self.fcnt[p, cam]))
        self.fcnt[p, cam] = -1

        clip, m = imgops.rotate_patch(src, midx, midy, area.w, area.h, ang)
        mid = Roi().center_within(0.5, 0.5, 0.5, 0.5, area.w, area.h)
        clip = imgops.enhance(clip, mid, 4.0)
        self.crop[p][cam] = clip
        self.warp[p][cam] = m

        det = self.ff.find_within(clip, ps.fsz)
        if det is None or det.empty():
            return -1
        self.face[p][cam] = det
        fx, fy = det.center()
        # offsets measured with y pointing up
        self.fdx[p, cam] = (fx - ps.xoff * area.w) / det.w
        self.fdy[p, cam] = ((1.0 - ps.yoff) * area.h - fy) / det.h
        self.fcnt[p, cam] = 0
        if abs(self.fdx[p, cam]) <= ps.xsh and abs(self.fdy[p, cam]) <= ps.ysh:
            self.fcnt[p, cam] = n + 1
            self.seen[p, cam] += 1
        return int(self.fcnt[p, cam])

    def done_chk(self) -> int:
        """Close the cycle after all camera views are in.

        Entries not probed this cycle lose their counts. Returns the number of
        faces (frontal or not) found on this cycle.
        """

        fresh = self.tried > 0
        stale = ~fresh
        self.tried[stale] = 0
        self.fcnt[stale] = -1
        self.seen[stale] = 0
        self.tried[fresh] = -1
        return int(np.count_nonzero(fresh & (self.fcnt >= 0)))

    # -------------------------------------------------------------- results

    def _ok_idx(self, p: int, cam: int) -> bool:
        return 0 <= p < PMAX and 0 <= cam < CMAX

    def checked(self, p: int, cam: int = 0) -> bool:
        return self._ok_idx(p, cam) and self.tried[p, cam] != 0

    def frontal(self, p: int, cam: int = 0, fmin: int = 1) -> bool:
        """Whether the frontal count reaches `fmin` (0 accepts any face)."""

        return self._ok_idx(p, cam) and self.fcnt[p, cam] >= fmin

    def found(self, p: int, cam: int = 0) -> bool:
        return self.frontal(p, cam, 0)

    def front_cnt(self, p: int, cam: int = -1) -> int:
        """Consecutive frontal count for a person, over all cameras if `cam < 0`."""

        if not 0 <= p < PMAX or cam >= CMAX:
            logger.error("Bad input to Frontal.front_cnt")
            return -1
        if cam >= 0:
            return int(self.fcnt[p, cam])
        return int(self.fcnt[p].max())

    def front_max(self) -> int:
        return int(self.fcnt.max())

    def front_new(self, cam: int = 0, fmin: int = 1) -> int:
        """Person whose face was found most recently (smallest count at least `fmin`)."""

        win, best = -1, 0
        for p in range(PMAX):
            n = self.front_cnt(p, cam)
            if n >= fmin and (win < 0 or n < best):
                win, best = p, n
        return win

    def front_best(self, p: int, fmin: int = 1) -> tuple[int, Roi | None]:
        """Camera with the biggest qualifying face box for a person, or (-1, None)."""

        if not 0 <= p < PMAX:
            logger.error("Bad input to Frontal.front_best")
            return -1, None
        win, best = -1, 0
        for c in range(CMAX):
            if self.fcnt[p, c] >= fmin and self.face[p][c].area > best:
                win, best = c, self.face[p][c].area
        if win < 0:
            return -1, None
        return win, self.face[p][win].copy_roi()

    def face_cnt(self, p: int, cam: int = -1) -> int:
        """Total frontal sightings of a person, summed over cameras if `cam < 0`."""

        if not 0 <= p < PMAX or cam >= CMAX:
            logger.error("Bad input to Frontal.face_cnt")
            return 0
        if cam >= 0:
            return int(self.seen[p, cam])
        return int(self.seen[p].sum())

    def face_mid(self, p: int, cam: int = 0, sc: float = 1.0) -> tuple[float, float] | None:
        """Centre of the detected face in source image coordinates, times `sc`."""

        if not self._ok_idx(p, cam):
            logger.error("Bad input to Frontal.face_mid")
            return None
        m = self.warp[p][cam]
        if self.fcnt[p, cam] < 0 or m is None:
            return None
        fx, fy = self.face[p][cam].center()
        inv = cv2.invertAffineTransform(m)
        sx = inv[0, 0] * fx + inv[0, 1] * fy + inv[0, 2]
        sy = inv[1, 0] * fx + inv[1, 1] * fy + inv[1, 2]
        return sc * float(sx), sc * float(sy)

    def get_crop(self, p: int, cam: int = 0) -> np.ndarray | None:
        return self.crop[p][cam] if self.found(p, cam) else None

    def get_face(self, p: int, cam: int = 0) -> Roi | None:
        return self.face[p][cam] if self.found(p, cam) else None

    def get_size(self, p: int, cam: int = 0) -> int:
        return self.face[p][cam].w if self.found(p, cam) else 0

    def get_angle(self, p: int, cam: int = 0) -> float:
        return float(self.rot[p, cam]) if self.found(p, cam) else 0.0

    def shift_x(self, p: int, cam: int = 0) -> float:
        return float(self.fdx[p, cam]) if self.found(p, cam) else 0.0

    def shift_y(self, p: int, cam: int = 0) -> float:
        return float(self.fdy[p, cam]) if self.found(p, cam) else 0.0

    def pct_x(self, p: int, cam: int = 0) -> int:
        return int(round(100.0 * self.shift_x(p, cam)))

    def pct_y(self, p: int, cam: int = 0) -> int:
        return int(round(100.0 * self.shift_y(p, cam)))

    def probe_pose(self, p: int, cam: int = 0, sc: float = 1.0) -> tuple[float, float, float] | None:
        """Centre and rotation of the last probe for a person, if any."""

        if not self.checked(p, cam):
            return None
        return sc * float(self.cx[p, cam]), sc * float(self.cy[p, cam]), float(self.rot[p, cam])
