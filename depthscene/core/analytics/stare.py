"""Fused multi-sensor people finder.

`Stare3D` projects every active depth sensor into one overhead map, fills
small gaps and then runs the person tracker on the result.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np

from depthscene.core.config.settings import SceneSettings, sensor_from_settings
from depthscene.core.depth.overhead import Overhead3D
from depthscene.core.detectors.parse3d import Parse3D
from depthscene.core.roi import Roi
from depthscene.core.trackers.body import BodyData
from depthscene.core.trackers.track3d import PersonDetector, Track3D

# Size of the cylinder drawn around a head when boxing it in a camera image.
HEAD_SZ = 8.0


class Stare3D(Overhead3D):
    """Overhead map of a room plus tracked heads, hands and gaze."""

    def __init__(self, ncam: int = 1, detector: PersonDetector | None = None) -> None:
        """Create a finder for `ncam` sensors; the head finder is injectable."""

        super().__init__(ncam, name="s3d")
        self.set_map(192.0, 192.0, 96.0, 0.0, 0.0, 96.0, 0.5, 0.0)
        self.trk = Track3D(detector)
        self.reset()

    @classmethod
    def from_settings(cls, settings: SceneSettings, detector: PersonDetector | None = None) -> Stare3D:
        """Build a finder for the deployment described by `settings`.

        Tuned values come from `param_file` first; the map geometry and sensor
        optics in `settings` then take precedence.
        """

        s3 = cls(settings.num_cams, detector)
        if settings.param_file:
            s3.defaults(settings.param_file)
        s3.set_map(
            settings.map_width,
            settings.map_height,
            settings.map_x0,
            settings.map_y0,
            0.0,
            96.0,
            settings.map_ipp,
            settings.table_height,
        )
        optics = sensor_from_settings(settings)
        s3.src_size(optics.width, optics.height, optics.focal, optics.scale)
        s3.reset()
        return s3

    # ------------------------------------------------------------------ config

    def defaults(self, path: str | Path | None = None) -> int:
        ok = super().defaults(path)
        ok &= self.trk.defaults(path)
        return ok

    def save_vals(self, path: str | Path, geom: int = 0) -> int:
        ok = super().save_vals(path, geom)
        ok &= self.trk.save_vals(path)
        return ok

    def reset(self, dt: float = 0.033) -> None:
        """Start a new sequence and match the head finder to the map geometry."""

        super().reset()
        if not hasattr(self, "trk"):
            return
        self.trk.reset(dt)
        det = self.trk.detector
        if isinstance(det, Parse3D):
            det.set_scale(self.ztab + self.mps.zlo, self.ztab + self.mps.zhi, self.mps.ipp)
            det.set_view(0.0, self.mps.x0, self.mps.y0)
            det.map_size(self.map.shape[1], self.map.shape[0])

    # ------------------------------------------------------------ main calls

    def analyze(self, sm: int = 7, pmin: int = 10) -> int:
        """Fill map gaps then find and track people.

        Returns the slot index limit for tracked people, not a count.
        """

        self.interpolate(sm, pmin)
        return self.trk.track_people(self.map2)

    # --------------------------------------------------------------- people

    def cnt_valid(self, trk: int = 1) -> int:
        if trk > 0:
            return self.trk.cnt_tracked()
        return self.trk.num_raw()

    def person_lim(self, trk: int = 1) -> int:
        return self.trk.person_lim(trk)

    def person_ok(self, i: int, trk: int = 1) -> bool:
        return self.trk.person_ok(i, trk)

    def person_id(self, i: int, trk: int = 1) -> int:
        guy = self.trk.get_person(i, trk)
        return -1 if guy is None else guy.id

    def named(self, i: int, trk: int = 1) -> bool:
        guy = self.trk.get_person(i, trk)
        return guy is not None and guy.tag != ""

    def get_person(self, i: int, trk: int = 1) -> BodyData | None:
        return self.trk.get_person(i, trk)

    def get_id(self, pid: int, trk: int = 1) -> BodyData | None:
        return self.trk.get_id(pid, trk)

    def track_index(self, pid: int, trk: int = 1) -> int:
        return self.trk.track_index(pid, trk)

    def person_touch(self, wx: float, wy: float, trk: int = 1) -> int:
        return self.trk.person_touch(wx, wy, trk)

    def closest(self, trk: int = 1) -> int:
        return self.trk.closest(trk)

    def head(self, i: int, trk: int = 1) -> np.ndarray | None:
        """Center of a person's head in world coordinates."""

        guy = self.trk.get_person(i, trk)
        return None if guy is None else guy.pos.copy()

    def height(self, i: int, trk: int = 1) -> float:
        return self.trk.height(i, trk)

    def hand(self, i: int, rt: int = 1, trk: int = 1) -> np.ndarray | None:
        guy = self.trk.get_person(i, trk)
        return None if guy is None else guy.hand_pos(rt)

    def hand_over(self, i: int, rt: int = 1, trk: int = 1) -> float:
        return self.trk.hand_over(i, rt, trk)

    def target(self, i: int, rt: int = 1, trk: int = 1, zlev: float = 0.0) -> tuple[int, np.ndarray | None]:
        return self.trk.target(i, rt, trk, zlev)

    def target_y(self, i: int, rt: int = 1, trk: int = 1, yoff: float = 0.0) -> tuple[int, np.ndarray | None]:
        return self.trk.target_y(i, rt, trk, yoff)

    def target_x(self, i: int, rt: int = 1, trk: int = 1, xoff: float = 0.0) -> tuple[int, np.ndarray | None]:
        return self.trk.target_x(i, rt, trk, xoff)

    # ---------------------------------------------------------------- names

    def get_name(self, pid: int, trk: int = 1) -> str | None:
        return self.trk.get_name(pid, trk)

    def set_name(self, pid: int, name: str | None, trk: int = 1) -> int:
        return self.trk.set_name(pid, name, trk)

    def get_node(self, pid: int, trk: int = 1) -> Any:
        return self.trk.get_node(pid, trk)

    def set_node(self, node: Any, pid: int, trk: int = 1) -> int:
        return self.trk.set_node(node, pid, trk)

    def node_id(self, node: Any, trk: int = 1) -> int:
        return self.trk.node_id(node, trk)

    # -------------------------------------------------------------- cameras

    def head_box_cam(self, i: int, cam: int = 0, trk: int = 1, sc: float = 1.0) -> Roi | None:
        """Image box around a person's head as seen by camera `cam`."""

        guy = self.trk.get_person(i, trk)
        if guy is None:
            return None
        self.adj_geometry(cam)
        box, _ = self.img_cylinder(guy.x, guy.y, guy.z, HEAD_SZ, HEAD_SZ, sc)
        return box
