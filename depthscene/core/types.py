"""Shared type definitions used across the depth/scene core.

This module centralizes small, stable types (image aliases, 3D vectors, plane
poses and raw person detections) so the fitter, projector, tracker and
background code can stay strongly typed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

Frame = np.ndarray
DepthImage = np.ndarray
MapImage = np.ndarray

Vec3 = tuple[float, float, float]
Corner = tuple[float, float]

# Depth images hold 4 x millimetres in 16 bits.
DEPTH_MIN = 1760
DEPTH_MAX = 40000


@dataclass
class PlanePose:
    """Result of a plane fit: camera tilt/roll and plane distance.

    `err` is the orthogonal standard deviation of the fit (inches) or -1 when
    no consistent set of bands was found.
    """

    tilt: float = 0.0
    roll: float = 0.0
    height: float = 0.0
    err: float = -1.0

    @property
    def ok(self) -> bool:
        return self.err >= 0.0


@dataclass
class RawHand:
    """One hand found by the overhead parser, relative to its head."""

    offset: np.ndarray = field(default_factory=lambda: np.zeros(3))
    direction: np.ndarray = field(default_factory=lambda: np.zeros(3))
    valid: bool = False


@dataclass
class RawPerson:
    """Raw head (and optional hands) found in a single overhead map."""

    x: float
    y: float
    z: float
    hands: list[RawHand] = field(default_factory=lambda: [RawHand(), RawHand()])
    blob: int = 0
    alt: int = -1

    @property
    def pos(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)
