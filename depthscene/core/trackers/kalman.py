"""Per-axis Kalman smoothing of small vectors with hit/miss bookkeeping."""

from __future__ import annotations

import numpy as np


class KalVec:
    """Smoothed position with an independent variance per axis.

    `cnt` is positive while consecutive updates arrive and negative while
    consecutive frames are skipped, so callers can promote or drop a track
    from the returned counts alone.
    """

    def __init__(self, n: int = 3) -> None:
        self.n = int(n)
        self.pos = np.zeros(self.n, dtype=np.float64)
        self.var = np.zeros(self.n, dtype=np.float64)
        self.cnt = 0
        self.diff = 0.0

    def clear(self) -> None:
        self.pos[:] = 0.0
        self.var[:] = 0.0
        self.cnt = 0
        self.diff = 0.0

    def copy_from(self, other: KalVec) -> None:
        self.pos[:] = other.pos
        self.var[:] = other.var
        self.cnt = other.cnt
        self.diff = other.diff

    def update(self, raw: np.ndarray, mix: float, noise: float, dt: float = 0.0) -> int:
        """Blend in a new observation. Returns the current hit count.

        `mix` weights the squared innovation against the previous variance and
        `noise` is the expected measurement deviation in the same units as
        `raw`. With `dt > 0` the innovation is treated as a rate.
        """

        raw = np.asarray(raw, dtype=np.float64)[: self.n]
        n2 = noise * noise
        if self.cnt == 0:
            self.pos[:] = raw
            self.var[:] = n2
            self.diff = 0.0
            self.cnt = 1
            return 1

        if self.cnt < 0:
            self.cnt = 0
        self.cnt += 1
        d = raw - self.pos
        if dt > 0.0:
            d = d / dt
        vm = mix * d * d + (1.0 - mix) * self.var
        k = vm / (vm + n2)
        self.var = (1.0 - k) * vm
        step = k * d
        self.pos += step
        self.diff = float(np.sqrt(np.dot(step, step)))
        return self.cnt

    def skip(self) -> int:
        """Note a frame without an observation. Returns the miss count."""

        if self.cnt > 0:
            self.cnt = 0
        self.cnt -= 1
        return -self.cnt

    @property
    def x(self) -> float:
        return float(self.pos[0])

    @property
    def y(self) -> float:
        return float(self.pos[1])

    @property
    def z(self) -> float:
        return float(self.pos[2])
