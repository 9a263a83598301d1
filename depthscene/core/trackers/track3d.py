"""Multi-person head and hand tracker over overhead maps.

Each frame the raw detections are paired with existing tracks by a greedy
smallest-distance matcher, first for confirmed tracks and then for tentative
ones. Hit and miss counters in `BodyData` promote new tracks and retire lost
ones; the hands of every matched person are paired the same way.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from depthscene.core.config.params import ParamBundle, fspec, ispec, load_all, save_all
from depthscene.core.detectors.parse3d import RMAX, Parse3D
from depthscene.core.trackers.body import BodyData, dir_diff
from depthscene.core.types import MapImage, RawPerson

logger = logging.getLogger(__name__)

TMAX = 200

# Eyeline offset used when the detector does not report its own.
EDN_DEFAULT = 6.5


class PersonDetector(Protocol):
    """Raw person finder consumed by `Track3D`."""

    def find_people(self, hmap: MapImage) -> list[RawPerson]:
        """Return the people visible in an overhead map."""

    def person_blob(self, wx: float, wy: float) -> bool:
        """Whether a viable person blob covers a world point."""

    def blob_at(self, wx: float, wy: float) -> int:
        """Body blob label at a world point (0 none, -1 outside)."""


def raw_body(det: RawPerson, idx: int) -> BodyData:
    """Wrap a single-frame detection as a (confirmed) body record."""

    b = BodyData()
    b.head.pos[:] = det.pos
    b.head.cnt = 1
    b.id = idx + 1
    b.bnum, b.alt = det.blob, det.alt
    for side, hand in enumerate(det.hands[:2]):
        if hand.valid:
            b.hoff[side].pos[:] = hand.offset
            b.hdir[side].pos[:] = hand.direction
            b.hok[side] = 1
        else:
            b.hok[side] = 0
    return b


class Track3D:
    """Keeps up to `TMAX` people tracks across frames.

    Index based queries take `trk=1` for smoothed tracks and `trk=0` for the
    raw detections of the last frame.
    """

    def __init__(self, detector: PersonDetector | None = None) -> None:
        """Create a tracker; detections come from a `Parse3D` unless injected."""

        self.detector: PersonDetector = detector or Parse3D()
        self.tps = ParamBundle(
            "t3d_htrk",
            [
                fspec("dmax0", 18.0, "Max match distance (in)"),
                fspec("pmix0", 0.9, "Position update rate"),
                ispec("hit0", 5, "Hits to add person"),
                ispec("miss0", 15, "Misses to remove person"),
                ispec("anchor", 1, "No penalty if person blob"),
                ispec("hit2", 5, "Hits to add gaze"),
                ispec("miss2", 5, "Misses to remove gaze"),
            ],
        )
        self.tps2 = ParamBundle(
            "t3d_atrk",
            [
                fspec("dmax", 12.0, "Max match distance (in)"),
                fspec("awt", 10.0, "Angle mismatch wt (deg/in)"),
                fspec("pmix", 0.9, "Position update rate"),
                fspec("dmix", 0.9, "Direction update rate"),
                ispec("hit", 5, "Hits to add hand"),
                ispec("miss", 5, "Misses to remove hand"),
                fspec("mth", 2.0, "Stable hand movement (in)"),
                fspec("ath", 2.0, "Stable angle change (deg)"),
            ],
        )
        self.dude = [BodyData() for _ in range(TMAX)]
        self.raw: list[BodyData] = []
        self.last_id = 0
        self.nt = 0
        self.reset()

    # ------------------------------------------------------------------ config

    def _bundles(self) -> list[ParamBundle]:
        return [self.tps, self.tps2]

    def defaults(self, path: str | Path | None = None) -> int:
        ok = 1
        if isinstance(self.detector, Parse3D):
            ok &= self.detector.defaults(path)
        ok &= load_all(self._bundles(), path)
        return ok

    def save_vals(self, path: str | Path) -> int:
        ok = 1
        if isinstance(self.detector, Parse3D):
            ok &= self.detector.save_vals(path)
        ok &= save_all(self._bundles(), path)
        return ok

    @property
    def edn(self) -> float:
        if isinstance(self.detector, Parse3D):
            return self.detector.hps.edn
        return EDN_DEFAULT

    def reset(self, dt: float = 0.033) -> None:
        """Forget all tracks and push current parameters into every slot."""

        t, a = self.tps, self.tps2
        for guy in self.dude:
            guy.set_track(t.hit0, t.miss0, a.hit, a.miss, t.hit2, t.miss2, dt)
            guy.set_mix(t.pmix0, a.pmix, a.dmix)
            guy.id = -1
        self.raw = []
        self.last_id = 0
        self.nt = 0

    # -------------------------------------------------------------- tracking

    def track_people(self, hmap: MapImage) -> int:
        """Update tracks from one overhead map. Returns the slot index limit."""

        dets = self.detector.find_people(hmap)[:RMAX]
        self.raw = [raw_body(d, i) for i, d in enumerate(dets)]
        m = len(dets)

        mate = np.full((self.nt, m), np.inf)
        for i in range(self.nt):
            if self.dude[i].id >= 0:
                for j, d in enumerate(dets):
                    diff = self.dude[i].pos - d.pos
                    mate[i, j] = float(np.dot(diff, diff))
        fwd = np.full(self.nt, -1, dtype=np.int32)
        back = np.full(m, -1, dtype=np.int32)

        # sure tracks get first pick
        for th in (1, 0):
            while True:
                pair = self._best_match(mate, fwd, back, th)
                if pair is None:
                    break
                i, j = pair
                self.last_id = self.dude[i].update_head(dets[j], self.last_id + 1) - 1
                self._match_hands(self.dude[i], dets[j])

        anchor = self.tps.anchor
        for i in range(self.nt):
            guy = self.dude[i]
            if fwd[i] >= 0 or guy.id < 0:
                continue
            if anchor > 0 and guy.id != 0 and self.detector.person_blob(guy.x, guy.y):
                continue
            guy.penalize_all()

        while self.nt > 0 and self.dude[self.nt - 1].id < 0:
            self.nt -= 1

        for j, d in enumerate(dets):
            if back[j] >= 0:
                continue
            i = self._first_open()
            if i < 0:
                logger.warning("Track3D: no free slots for new person")
                break
            self.last_id = self.dude[i].init_all(d, self.last_id + 1) - 1

        logger.debug("Track3D: %d raw, %d slots, %d tracked", m, self.nt, self.cnt_tracked())
        return self.nt

    def _best_match(self, mate: np.ndarray, fwd: np.ndarray, back: np.ndarray, th: int) -> tuple[int, int] | None:
        if mate.size == 0:
            return None
        rows = np.array([self.dude[i].id >= th and fwd[i] < 0 for i in range(self.nt)], dtype=bool)
        cols = back < 0
        if not rows.any() or not cols.any():
            return None
        sub = np.where(rows[:, None] & cols[None, :], mate, np.inf)
        i, j = divmod(int(sub.argmin()), sub.shape[1])
        if not np.isfinite(sub[i, j]) or sub[i, j] > self.tps.dmax0**2:
            return None
        fwd[i] = j
        back[j] = i
        return i, j

    def _first_open(self) -> int:
        for i in range(self.nt):
            if self.dude[i].id < 0:
                return i
        if self.nt >= TMAX:
            return -1
        self.nt += 1
        return self.nt - 1

    def _match_hands(self, trk: BodyData, det: RawPerson) -> None:
        if trk.id <= 0:
            return
        a = self.tps2
        dh = np.full((2, 2), np.inf)
        for i in (0, 1):
            if trk.hok[i] < 0:
                continue
            for j in (0, 1):
                if det.hands[j].valid:
                    err = float(np.linalg.norm(trk.hoff[i].pos - det.hands[j].offset))
                    err += dir_diff(trk.hdir[i].pos, det.hands[j].direction) / a.awt
                    dh[i, j] = err

        fh = [-1, -1]
        bh = [-1, -1]
        for th in (1, 0):
            while True:
                best, win = np.inf, None
                for i in (0, 1):
                    if trk.hok[i] < th or fh[i] >= 0:
                        continue
                    for j in (0, 1):
                        if bh[j] < 0 and det.hands[j].valid and dh[i, j] < best:
                            best, win = dh[i, j], (i, j)
                if win is None or best > a.dmax:
                    break
                i, j = win
                fh[i], bh[j] = j, i
                trk.update_hand(i, det, j, a.mth, a.ath)

        for i in (0, 1):
            if fh[i] < 0:
                trk.penalize_hand(i)

        # keep the original side for a lone new hand when possible
        for j in (0, 1):
            if bh[j] >= 0 or not det.hands[j].valid:
                continue
            if trk.hok[j] < 0:
                trk.update_hand(j, det, j, a.mth, a.ath)
            elif trk.hok[1 - j] < 0:
                trk.update_hand(1 - j, det, j, a.mth, a.ath)

    # --------------------------------------------------------------- queries

    def _items(self, trk: int) -> list[BodyData]:
        return self.dude if trk > 0 else self.raw

    def num_raw(self) -> int:
        return len(self.raw)

    def num_potential(self) -> int:
        return self.nt

    def person_lim(self, trk: int = 1) -> int:
        """Iteration limit over person records (not a count of people)."""

        return self.nt if trk > 0 else len(self.raw)

    def cnt_tracked(self) -> int:
        return sum(1 for guy in self.dude[: self.nt] if guy.id > 0)

    def get_person(self, i: int, trk: int = 1) -> BodyData | None:
        if i < 0 or i >= self.person_lim(trk):
            return None
        return self._items(trk)[i]

    def get_id(self, pid: int, trk: int = 1) -> BodyData | None:
        i = self.track_index(pid, trk)
        return None if i < 0 else self._items(trk)[i]

    def track_index(self, pid: int, trk: int = 1) -> int:
        """Slot index of the person with id `pid`, or -1 if absent."""

        if pid < 0:
            return -1
        items = self._items(trk)
        for i in range(self.person_lim(trk)):
            if items[i].id == pid:
                return i
        return -1

    def person_ok(self, i: int, trk: int = 1) -> bool:
        guy = self.get_person(i, trk)
        return guy is not None and guy.id > 0

    def height(self, i: int, trk: int = 1) -> float:
        """Estimated standing height of a person in inches, negative if invalid."""

        guy = self.get_person(i, trk)
        if guy is None:
            return -1.0
        return guy.z + self.edn

    def hand_over(self, i: int, rt: int = 1, trk: int = 1) -> float:
        """Height of a hand above the surface below it, -1 if unknown."""

        guy = self.get_person(i, trk)
        if guy is None:
            return -1.0
        return guy.sep[1 if rt > 0 else 0]

    def target(self, i: int, rt: int = 1, trk: int = 1, zlev: float = 0.0) -> tuple[int, np.ndarray | None]:
        guy = self.get_person(i, trk)
        if guy is None:
            return 0, None
        return guy.ray_hit(rt, zlev)

    def target_y(self, i: int, rt: int = 1, trk: int = 1, yoff: float = 0.0) -> tuple[int, np.ndarray | None]:
        guy = self.get_person(i, trk)
        if guy is None:
            return 0, None
        return guy.ray_hit_y(rt, yoff)

    def target_x(self, i: int, rt: int = 1, trk: int = 1, xoff: float = 0.0) -> tuple[int, np.ndarray | None]:
        guy = self.get_person(i, trk)
        if guy is None:
            return 0, None
        return guy.ray_hit_x(rt, xoff)

    def person_touch(self, wx: float, wy: float, trk: int = 1) -> int:
        """Id of the person whose body covers (wx, wy), marking the nearer hand busy.

        Returns 0 if no one is there.
        """

        tag = self.detector.blob_at(wx, wy)
        if tag <= 0:
            return 0
        items = self._items(trk)
        guy = next((p for p in items[: self.person_lim(trk)] if tag in (p.bnum, p.alt)), None)
        if guy is None:
            return 0

        ref = np.array([wx, wy, 0.0])
        dist = []
        for side in (0, 1):
            pos = guy.hand_pos(side)
            dist.append(-1.0 if pos is None else float(np.linalg.norm(ref - pos)))
        d0, d1 = dist
        if d0 >= 0.0 and (d1 < 0.0 or d1 >= d0):
            guy.busy[0] = 1
        elif d1 >= 0.0 and (d0 < 0.0 or d0 > d1):
            guy.busy[1] = 1
        return guy.id

    def closest(self, trk: int = 1) -> int:
        """Index (not id) of the valid person nearest the map origin, -1 if none."""

        win, best = -1, 0.0
        for i in range(self.person_lim(trk)):
            if not self.person_ok(i, trk):
                continue
            d2 = float(np.dot(self._items(trk)[i].pos, self._items(trk)[i].pos))
            if win < 0 or d2 < best:
                win, best = i, d2
        return win

    # ---------------------------------------------------------------- naming

    def get_name(self, pid: int, trk: int = 1) -> str | None:
        guy = self.get_id(pid, trk)
        return None if guy is None else guy.tag

    def set_name(self, pid: int, name: str | None, trk: int = 1) -> int:
        """Tag a person, clearing the same tag from anyone else.

        Returns 1 if set, 0 for an unknown id and -1 for a missing name.
        """

        if name is None:
            return -1
        guy = self.get_id(pid, trk)
        if guy is None:
            return 0
        for p in self._items(trk)[: self.person_lim(trk)]:
            if p.id > 0 and p.tag.lower() == name.lower():
                p.tag = ""
        guy.tag = name
        return 1

    def get_node(self, pid: int, trk: int = 1) -> Any:
        guy = self.get_id(pid, trk)
        return None if guy is None else guy.node

    def set_node(self, node: Any, pid: int, trk: int = 1) -> int:
        guy = self.get_id(pid, trk)
        if guy is None:
            return 0
        guy.node = node
        return 1

    def node_id(self, node: Any, trk: int = 1) -> int:
        """Id of the person linked to an external node, 0 if none."""

        if node is None:
            return 0
        for p in self._items(trk)[: self.person_lim(trk)]:
            if p.node is node:
                return p.id
        return 0
