"""Face finders used to probe head regions.

The frontal check only needs a single best face inside a small crop, so the
interface is one call returning a box or None.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import cv2
import numpy as np

from depthscene.core.roi import Roi

logger = logging.getLogger(__name__)

DEFAULT_CASCADE = "haarcascade_frontalface_default.xml"


class FaceFinder(Protocol):
    """Anything that can locate one face in a small image."""

    def find_within(self, img: np.ndarray, fsz: float) -> Roi | None:
        """Return the biggest face at least `fsz` of the image width, or None."""


def resolve_cascade(path: str | Path | None) -> str:
    """Resolve a cascade file name, falling back to the copy bundled with OpenCV."""

    if path:
        return str(path)
    return str(Path(cv2.data.haarcascades) / DEFAULT_CASCADE)


class CascadeFaceFinder:
    """Face finder wrapper around an OpenCV Haar cascade.

    A missing or unreadable cascade file is reported once and then every search
    simply finds nothing.
    """

    def __init__(self, cascade: str | Path | None = None, scale: float = 1.1, neighbors: int = 3):
        """Create a finder.

        Args:
            cascade: Cascade XML path; defaults to the frontal face model
                shipped in `cv2.data.haarcascades`.
            scale: Image pyramid step passed to `detectMultiScale`.
            neighbors: Minimum neighbouring hits for a detection to count.
        """

        self.path = resolve_cascade(cascade)
        self.scale = float(scale)
        self.neighbors = int(neighbors)
        self.clf = cv2.CascadeClassifier(self.path)
        if self.clf.empty():
            logger.warning("Face cascade not loaded from %s", self.path)

    def ok(self) -> bool:
        return not self.clf.empty()

    def find_within(self, img: np.ndarray, fsz: float) -> Roi | None:
        if not self.ok() or img.size == 0:
            return None
        gray = img if img.ndim == 2 else cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        side = max(1, int(round(fsz * min(gray.shape[:2]))))
        hits = self.clf.detectMultiScale(gray, scaleFactor=self.scale, minNeighbors=self.neighbors, minSize=(side, side))
        if len(hits) == 0:
            return None
        x, y, w, h = max(hits, key=lambda b: int(b[2]) * int(b[3]))
        return Roi(int(x), int(y), int(w), int(h))
