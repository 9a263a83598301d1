"""Region-of-interest rectangles and ROI-carrying images.

Every compound image operation works on the intersection of the ROIs of all
its operands and leaves pixels outside that window untouched.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np


def _clamp(v: float, lo: float, hi: float) -> float:
    return lo if v < lo else hi if v > hi else v


def line_bytes(width: int, fields: int = 1) -> int:
    """Row length in bytes padded to a 4 byte boundary."""

    raw = width * fields
    return (raw + 3) & ~3


@dataclass
class Roi:
    x: int = 0
    y: int = 0
    w: int = 0
    h: int = 0

    @property
    def area(self) -> int:
        return max(0, self.w) * max(0, self.h)

    @property
    def x2(self) -> int:
        return self.x + self.w

    @property
    def y2(self) -> int:
        return self.y + self.h

    def empty(self) -> bool:
        return self.w <= 0 or self.h <= 0

    def copy_roi(self) -> Roi:
        return Roi(self.x, self.y, self.w, self.h)

    def set_roi(self, x: float, y: float, w: float, h: float) -> Roi:
        self.x, self.y = int(round(x)), int(round(y))
        self.w, self.h = max(0, int(round(w))), max(0, int(round(h)))
        return self

    def clip_roi(self, width: int, height: int) -> Roi:
        """Restrict to an image of the given size."""

        x1 = int(_clamp(self.x, 0, width))
        y1 = int(_clamp(self.y, 0, height))
        x2 = int(_clamp(self.x2, 0, width))
        y2 = int(_clamp(self.y2, 0, height))
        self.x, self.y = x1, y1
        self.w, self.h = max(0, x2 - x1), max(0, y2 - y1)
        return self

    def intersect(self, other: Roi) -> Roi:
        x1 = max(self.x, other.x)
        y1 = max(self.y, other.y)
        x2 = min(self.x2, other.x2)
        y2 = min(self.y2, other.y2)
        return Roi(x1, y1, max(0, x2 - x1), max(0, y2 - y1))

    def absorb(self, other: Roi) -> Roi:
        """Grow to the bounding box of both rectangles (in place)."""

        if other.empty():
            return self
        if self.empty():
            self.x, self.y, self.w, self.h = other.x, other.y, other.w, other.h
            return self
        x1 = min(self.x, other.x)
        y1 = min(self.y, other.y)
        x2 = max(self.x2, other.x2)
        y2 = max(self.y2, other.y2)
        self.x, self.y, self.w, self.h = x1, y1, x2 - x1, y2 - y1
        return self

    def pad(self, dx: int, dy: int | None = None) -> Roi:
        dy = dx if dy is None else dy
        self.x -= dx
        self.y -= dy
        self.w = max(0, self.w + 2 * dx)
        self.h = max(0, self.h + 2 * dy)
        return self

    def center(self) -> tuple[float, float]:
        return (self.x + 0.5 * self.w, self.y + 0.5 * self.h)

    def set_center(self, cx: float, cy: float, w: float, h: float | None = None) -> Roi:
        h = w if h is None else h
        return self.set_roi(cx - 0.5 * w, cy - 0.5 * h, w, h)

    def center_within(self, fx: float, fy: float, fw: float, fh: float, width: int, height: int) -> Roi:
        """Box of fractional size (fw, fh) centered at fraction (fx, fy) of an image."""

        w, h = fw * width, fh * height
        return self.set_center(fx * width, fy * height, w, h)

    def scale(self, f: float) -> Roi:
        self.x = int(round(self.x * f))
        self.y = int(round(self.y * f))
        self.w = int(round(self.w * f))
        self.h = int(round(self.h * f))
        return self

    def frac_roi(self, lf: float, rt: float, bot: float, top: float, width: int, height: int) -> Roi:
        """Set each side as a fraction of the image (bottom and top measured upward)."""

        x1 = int(round(_clamp(lf, 0.0, 1.0) * width))
        x2 = int(round(_clamp(rt, 0.0, 1.0) * width))
        yb = int(round(_clamp(bot, 0.0, 1.0) * height))
        yt = int(round(_clamp(top, 0.0, 1.0) * height))
        # array rows count down from the top edge
        self.x, self.w = x1, max(0, x2 - x1)
        self.y, self.h = height - yt, max(0, yt - yb)
        return self

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x < self.x2 and self.y <= y < self.y2

    def overlap(self, other: Roi) -> int:
        return self.intersect(other).area

    def slices(self) -> tuple[slice, slice]:
        return (slice(self.y, self.y2), slice(self.x, self.x2))


class Image:
    """A pixel buffer with a region of interest.

    `fields` is 1 (monochrome bytes), 2 (16 bit depth or labels) or 3 (BGR).
    """

    def __init__(self, width: int = 0, height: int = 0, fields: int = 1) -> None:
        self.pix = np.zeros((0, 0), dtype=np.uint8)
        self.roi = Roi()
        self.fields = 1
        self.set_size(width, height, fields)

    @classmethod
    def wrap(cls, pix: np.ndarray) -> Image:
        img = cls()
        img.pix = pix
        img.fields = 3 if pix.ndim == 3 else (2 if pix.dtype == np.uint16 else 1)
        img.max_roi()
        return img

    @property
    def width(self) -> int:
        return int(self.pix.shape[1]) if self.pix.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pix.shape[0]) if self.pix.ndim >= 2 else 0

    def line(self) -> int:
        return line_bytes(self.width, self.fields)

    def valid(self) -> bool:
        return self.width > 0 and self.height > 0

    def set_size(self, width: int, height: int, fields: int = 1) -> Image:
        """Allocate only when the format actually changes."""

        if self.valid() and self.width == width and self.height == height and self.fields == fields:
            return self
        self.fields = fields
        if fields == 3:
            self.pix = np.zeros((height, width, 3), dtype=np.uint8)
        elif fields == 2:
            self.pix = np.zeros((height, width), dtype=np.uint16)
        else:
            self.pix = np.zeros((height, width), dtype=np.uint8)
        self.max_roi()
        return self

    def max_roi(self) -> Image:
        self.roi = Roi(0, 0, self.width, self.height)
        return self

    def set_roi(self, roi: Roi) -> Image:
        self.roi = roi.copy_roi().clip_roi(self.width, self.height)
        return self

    def same_format(self, other: Image) -> bool:
        return self.same_size(other) and self.fields == other.fields

    def same_size(self, other: Image) -> bool:
        return self.width == other.width and self.height == other.height

    def fill_arr(self, val: int = 0) -> Image:
        self.pix[...] = val
        return self

    def copy_arr(self, src: Image) -> Image:
        if not self.same_format(src):
            self.set_size(src.width, src.height, src.fields)
        self.pix[...] = src.pix
        return self

    def roi_view(self) -> np.ndarray:
        return self.pix[self.roi.slices()]

    def combine(self, op: Callable[..., np.ndarray], *others: Image) -> Roi:
        """Apply a pixelwise `op` over the common ROI of self and `others`.

        The result is written into self; pixels outside the window keep their
        values. Returns the window actually used.
        """

        win = self.roi.copy_roi()
        for o in others:
            win = win.intersect(o.roi)
        if win.empty():
            return win
        sl = win.slices()
        res = op(*[o.pix[sl] for o in others])
        self.pix[sl] = np.asarray(res).astype(self.pix.dtype, copy=False)
        return win
