"""Tracked state for one person: head, two hands and gaze."""

from __future__ import annotations

from typing import Any

import numpy as np

from depthscene.core.trackers.kalman import KalVec
from depthscene.core.types import RawPerson

# Default length of pointing and gaze rays with no surface hit (20 feet).
RAY_LEN = 240.0

# Measurement noise: 1 inch for positions, about 10 and 5 degrees for
# pointing and gaze directions (as radians on the unit sphere).
POS_NOISE = 1.0
HAND_ANG = 0.175
GAZE_ANG = 0.087


def _unit(v: np.ndarray) -> np.ndarray:
    n = float(np.linalg.norm(v))
    if n <= 0.0:
        return np.zeros(3)
    return v / n


def dir_diff(a: np.ndarray, b: np.ndarray) -> float:
    """Angle in degrees between two direction vectors (0 if either is null)."""

    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na <= 0.0 or nb <= 0.0:
        return 0.0
    c = float(np.dot(a, b)) / (na * nb)
    return float(np.degrees(np.arccos(max(-1.0, min(c, 1.0)))))


class BodyData:
    """One slot of the person tracker.

    `id < 0` marks a free slot, `id == 0` a tentative track and `id > 0` a
    confirmed person. Hands use `hok` in the same way (-1 none, 0 speculative,
    1 solid) and `gok` tracks the smoothed gaze.
    """

    def __init__(self) -> None:
        self.head = KalVec(3)
        self.vel = KalVec(3)
        self.hoff = [KalVec(3), KalVec(3)]
        self.hdir = [KalVec(3), KalVec(3)]
        self.hvel = [KalVec(3), KalVec(3)]
        self.gaze = KalVec(3)
        self.gest = np.zeros(3)
        self.gn = 0

        self.tag = ""
        self.node: Any = None
        self.vis = 1
        self.id = -1
        self.bnum = -1
        self.alt = -1

        self.hok = [-1, -1]
        self.stable = [0, 0]
        self.busy = [0, 0]
        self.sep = [-1.0, -1.0]
        self.gok = -1

        self.set_track()
        self.set_mix()

    # ---------------------------------------------------------------- config

    def set_track(
        self,
        hit0: int = 5,
        miss0: int = 15,
        hit: int = 5,
        miss: int = 5,
        hit2: int = 5,
        miss2: int = 5,
        dt: float = 0.033,
    ) -> None:
        self.hit0, self.miss0 = int(hit0), int(miss0)
        self.hit, self.miss = int(hit), int(miss)
        self.hit2, self.miss2 = int(hit2), int(miss2)
        self.dt = float(dt)

    def set_mix(self, pmix0: float = 0.9, pmix: float = 0.9, dmix: float = 0.9) -> None:
        self.pmix0 = float(pmix0)
        self.pmix = float(pmix)
        self.dmix = float(dmix)

    # --------------------------------------------------------------- queries

    @property
    def pos(self) -> np.ndarray:
        return self.head.pos

    @property
    def x(self) -> float:
        return self.head.x

    @property
    def y(self) -> float:
        return self.head.y

    @property
    def z(self) -> float:
        return self.head.z

    def hand_ok(self, side: int) -> bool:
        return self.id > 0 and self.hok[_sn(side)] > 0

    def hand_pos(self, side: int) -> np.ndarray | None:
        """Full position of one hand, or None if it is not solidly tracked."""

        if not self.hand_ok(side):
            return None
        return self.head.pos + self.hoff[_sn(side)].pos

    def _ray(self, side: int, axis: int, level: float) -> tuple[int, np.ndarray | None]:
        hand = self.hand_pos(side)
        if hand is None:
            return 0, None
        d = self.hdir[_sn(side)].pos
        r, hit = RAY_LEN, 1
        if d[axis] != 0.0:
            dist = (level - hand[axis]) / d[axis]
            if dist > 0.0:
                r, hit = dist, 2
        return hit, hand + r * d

    def ray_hit(self, side: int, zlev: float = 0.0) -> tuple[int, np.ndarray | None]:
        """Where the pointing ray of a hand meets the plane z = `zlev`.

        Returns (2, point) on a forward hit, (1, point) for the end of a
        default length ray and (0, None) if the hand is not valid.
        """

        return self._ray(side, 2, zlev)

    def ray_hit_y(self, side: int, yoff: float = 0.0) -> tuple[int, np.ndarray | None]:
        return self._ray(side, 1, yoff)

    def ray_hit_x(self, side: int, xoff: float = 0.0) -> tuple[int, np.ndarray | None]:
        return self._ray(side, 0, xoff)

    def ray_back(self, side: int, dist: float) -> np.ndarray | None:
        """Rough elbow point `dist` inches back along the pointing ray."""

        hand = self.hand_pos(side)
        if hand is None:
            return None
        return hand - dist * self.hdir[_sn(side)].pos

    def eyes_hit(self, zlev: float = 0.0) -> tuple[int, np.ndarray | None]:
        """Where the gaze ray from the head meets the plane z = `zlev`."""

        if self.id <= 0:
            return 0, None
        g = self.gaze.pos
        r, hit = RAY_LEN, 1
        if g[2] != 0.0:
            dist = (zlev - self.z) / g[2]
            if dist > 0.0:
                r, hit = dist, 2
        return hit, self.head.pos + r * g

    # -------------------------------------------------------------- updating

    def copy_from(self, other: BodyData) -> None:
        for mine, theirs in (
            (self.head, other.head),
            (self.vel, other.vel),
            (self.gaze, other.gaze),
            *zip(self.hoff, other.hoff),
            *zip(self.hdir, other.hdir),
            *zip(self.hvel, other.hvel),
        ):
            mine.copy_from(theirs)
        self.gest = other.gest.copy()
        self.gn = other.gn
        self.tag, self.node, self.vis, self.id = other.tag, other.node, other.vis, other.id
        self.bnum, self.alt = other.bnum, other.alt
        self.hok = list(other.hok)
        self.stable = list(other.stable)
        self.busy = list(other.busy)
        self.sep = list(other.sep)
        self.gok = other.gok

    def init_all(self, det: RawPerson, suggest: int) -> int:
        """Start a new track from a raw detection. Returns the next free id."""

        self.head.clear()
        self.vel.clear()
        self.gaze.clear()
        self.gest[:] = 0.0
        self.gn = 0
        self.tag = ""
        self.node = None
        self.gok = -1
        for i in (0, 1):
            self._clr_hand(i)
        self.id = 0
        nxt = self.update_head(det, suggest)
        self.update_hand(0, det, 0)
        self.update_hand(1, det, 1)
        return nxt

    def update_head(self, det: RawPerson, suggest: int) -> int:
        """Mix in a matched head detection.

        Returns `suggest` unchanged, or one more if it was used as the id of a
        newly confirmed person.
        """

        nxt = suggest
        self.bnum = det.blob
        self.alt = det.alt
        self.vis = 1
        prev = self.head.pos.copy()
        if self.head.update(det.pos, self.pmix0, POS_NOISE) >= self.hit0 and self.id <= 0:
            self.id = nxt
            nxt += 1
        self.vel.update(self.head.pos - prev, self.pmix0, POS_NOISE, self.dt)
        return nxt

    def update_hand(self, side: int, det: RawPerson, dside: int, mth: float = 2.0, ath: float = 2.0) -> None:
        """Mix detected hand `dside` into tracked hand `side`."""

        i, j = _sn(side), _sn(dside)
        raw = det.hands[j]
        if self.id <= 0 or not raw.valid:
            return
        self.hok[i] = max(0, self.hok[i])

        prev = self.hoff[i].pos.copy()
        if self.hoff[i].update(raw.offset, self.pmix, POS_NOISE) >= self.hit:
            self.hok[i] = 1
        diff = self.hoff[i].pos - prev
        self.hvel[i].update(diff, self.pmix, POS_NOISE, self.dt)
        mv = float(np.linalg.norm(diff))

        old = self.hdir[i].pos.copy()
        self.hdir[i].update(raw.direction, self.dmix, HAND_ANG)
        self.hdir[i].pos[:] = _unit(self.hdir[i].pos)
        ang = dir_diff(old, self.hdir[i].pos)

        if self.stable[i] >= 0:
            if mv > mth or ang > ath:
                self.stable[i] = 0
            else:
                self.stable[i] += 1
        self.busy[i] = 0

    def gaze_est(self, direction: np.ndarray) -> None:
        """Accumulate one camera's gaze estimate for this frame."""

        self.gest += _unit(np.asarray(direction, dtype=np.float64)[:3])
        self.gn += 1

    def update_gaze(self, trk: int = 1) -> None:
        """Fold this frame's gaze estimates into the smoothed gaze."""

        if self.id <= 0:
            return
        if self.gn <= 0:
            if trk <= 0:
                self.gok = -1
            else:
                self.penalize_gaze()
            return

        est = _unit(self.gest)
        if trk <= 0:
            self.gok = 1
            self.gaze.pos[:] = est
        else:
            self.gok = max(0, self.gok)
            if self.gaze.update(est, self.dmix, GAZE_ANG) >= self.hit2:
                self.gok = 1
        self.gest[:] = 0.0
        self.gn = 0

    def penalize_all(self) -> None:
        """Note a frame with no matching detection; may free the slot."""

        self.bnum = -1
        self.alt = -1
        if self.vis <= 0 or self.id < 0:
            return
        if self.head.skip() >= self.miss0:
            self.id = -1
            self.tag = ""
        self.penalize_hand(0)
        self.penalize_hand(1)
        self.penalize_gaze()

    def penalize_hand(self, side: int) -> None:
        i = _sn(side)
        if self.hok[i] >= 0 and self.hoff[i].skip() >= self.miss:
            self._clr_hand(i)

    def penalize_gaze(self) -> None:
        if self.gok >= 0 and self.gaze.skip() >= self.miss2:
            self.gaze.clear()
            self.gok = -1

    def _clr_hand(self, i: int) -> None:
        self.hoff[i].clear()
        self.hdir[i].clear()
        self.hvel[i].clear()
        self.hok[i] = -1
        self.stable[i] = 0
        self.busy[i] = 0
        self.sep[i] = -1.0


def _sn(side: int) -> int:
    return 1 if side > 0 else 0
