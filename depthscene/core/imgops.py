"""Low-level image toolkit used by the depth, people and background modules.

Thin numpy/OpenCV wrappers with the conventions the rest of the package relies
on: binary masks are 0/255 `uint8`, "over" means strictly greater than a
threshold, "under" strictly less, and all results are saturated to 8 bits
unless stated otherwise.
"""

from __future__ import annotations

import cv2
import numpy as np

from depthscene.core.roi import Roi


def _u8(a: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(a), 0, 255).astype(np.uint8)


def threshold(src: np.ndarray, th: float, val: int = 255) -> np.ndarray:
    return np.where(src > th, val, 0).astype(np.uint8)


def in_range(src: np.ndarray, lo: float, hi: float) -> np.ndarray:
    return np.where((src >= lo) & (src <= hi), 255, 0).astype(np.uint8)


def match_key(src: np.ndarray, val: int) -> np.ndarray:
    return np.where(src == val, 255, 0).astype(np.uint8)


def box_avg(src: np.ndarray, w: int, h: int | None = None, sc: float = 1.0) -> np.ndarray:
    """Box filter of size w x h, optionally scaled, saturated to 8 bits."""

    h = w if h is None else h
    if w <= 1 and h <= 1:
        return _u8(src.astype(np.float32) * sc)
    avg = cv2.boxFilter(src.astype(np.float32), -1, (int(w), int(h)), borderType=cv2.BORDER_REPLICATE)
    return _u8(avg * sc)


def box_thresh(src: np.ndarray, sc: int, th: float) -> np.ndarray:
    return threshold(box_avg(src, sc), th)


def nz_box_max(src: np.ndarray, sc: int, pmin: int) -> np.ndarray:
    """Fill zero pixels with the max of an sc x sc box holding at least pmin non-zeros.

    Non-zero pixels are never altered.
    """

    kernel = np.ones((int(sc), int(sc)), np.uint8)
    big = cv2.dilate(src, kernel, borderType=cv2.BORDER_CONSTANT, borderValue=0)
    cnt = cv2.boxFilter(
        (src > 0).astype(np.float32), -1, (int(sc), int(sc)), normalize=False, borderType=cv2.BORDER_CONSTANT
    )
    out = src.copy()
    fill = (src == 0) & (cnt >= pmin - 0.5)
    out[fill] = big[fill]
    return out


def over_gate(src: np.ndarray, gate: np.ndarray, th: float, val: int = 0) -> np.ndarray:
    """Keep `src` where `gate` is over `th`, else `val`."""

    return np.where(gate > th, src, val).astype(src.dtype)


def under_gate(src: np.ndarray, gate: np.ndarray, th: float, val: int = 0) -> np.ndarray:
    """Keep `src` where `gate` is under `th`, else `val`."""

    return np.where(gate < th, src, val).astype(src.dtype)


def subst_over(dest: np.ndarray, src: np.ndarray, gate: np.ndarray, th: float) -> None:
    """Copy `src` into `dest` (in place) wherever `gate` is over `th`."""

    sel = gate > th
    dest[sel] = src[sel]


def clip_sum(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.minimum(a.astype(np.int32) + b.astype(np.int32), 255).astype(np.uint8)


def abs_diff(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return cv2.absdiff(a, b)


def offset(src: np.ndarray, inc: int) -> np.ndarray:
    return np.clip(src.astype(np.int32) + inc, 0, 255).astype(np.uint8)


def frac_over(src: np.ndarray, th: float = 128) -> float:
    if src.size == 0:
        return 0.0
    return float(np.count_nonzero(src > th)) / float(src.size)


def border(src: np.ndarray, n: int, val: int = 0) -> None:
    """Set an n pixel frame around the image (in place)."""

    if n <= 0:
        return
    src[:n, ...] = val
    src[-n:, ...] = val
    src[:, :n, ...] = val
    src[:, -n:, ...] = val


def mono(src: np.ndarray, rn: float = 1.0 / 3.0, gn: float = 1.0 / 3.0, bn: float = 1.0 / 3.0) -> np.ndarray:
    """Weighted monochrome projection of a BGR image (plain copy for mono)."""

    if src.ndim == 2:
        return src.copy()
    f = src.astype(np.float32)
    return _u8(bn * f[..., 0] + gn * f[..., 1] + rn * f[..., 2])


def wtd_ssd_rgb(a: np.ndarray, b: np.ndarray, rsc: float, gsc: float, bsc: float) -> np.ndarray:
    """Root of the weighted sum of squared channel differences (BGR order)."""

    d = a.astype(np.float32) - b.astype(np.float32)
    if d.ndim == 2:
        return _u8(np.abs(d) * gsc)
    ssd = (bsc * d[..., 0]) ** 2 + (gsc * d[..., 1]) ** 2 + (rsc * d[..., 2]) ** 2
    return _u8(np.sqrt(ssd))


def triple_edge(gray: np.ndarray) -> np.ndarray:
    """Three orthogonal edge responses (x, y, cross) stacked as channels."""

    g = gray.astype(np.float32)
    ex = cv2.Sobel(g, cv2.CV_32F, 1, 0, ksize=3)
    ey = cv2.Sobel(g, cv2.CV_32F, 0, 1, ksize=3)
    exy = cv2.Sobel(g, cv2.CV_32F, 1, 1, ksize=3)
    return np.dstack([ex, ey, exy])


def sobel_edge(gray: np.ndarray, sc: float = 1.0) -> np.ndarray:
    g = gray.astype(np.float32)
    ex = cv2.Sobel(g, cv2.CV_32F, 1, 0, ksize=3)
    ey = cv2.Sobel(g, cv2.CV_32F, 0, 1, ksize=3)
    return _u8(sc * 0.25 * np.sqrt(ex * ex + ey * ey))


def ccomps4(mask: np.ndarray, th: float = 128) -> tuple[np.ndarray, int]:
    """Label 4-connected components of pixels over `th`.

    Returns (labels, n) where labels is uint16 and n is one more than the
    highest label (label 0 is background), matching table sizes.
    """

    n, labels = cv2.connectedComponents((mask > th).astype(np.uint8), connectivity=4, ltype=cv2.CV_32S)
    return labels.astype(np.uint16), int(n)


def rem_small(src: np.ndarray, afrac: float, amin: int, th: float = 128) -> tuple[np.ndarray, int]:
    """Drop components smaller than `amin` or `afrac` of the biggest.

    Returns the cleaned binary mask and the biggest component area.
    """

    labels, n = ccomps4(src, th)
    if n <= 1:
        return np.zeros_like(src, dtype=np.uint8), 0
    areas = np.bincount(labels.ravel(), minlength=n)
    areas[0] = 0
    big = int(areas.max())
    lim = max(float(amin), afrac * big)
    keep = areas >= lim
    keep[0] = False
    return np.where(keep[labels], 255, 0).astype(np.uint8), big


def fill_holes(src: np.ndarray, hmax: int, th: float = 128) -> np.ndarray:
    """Fill background regions not touching the border with area up to `hmax`."""

    out = np.where(src > th, 255, 0).astype(np.uint8)
    if hmax <= 0:
        return out
    labels, n = ccomps4(255 - out, 128)
    if n <= 1:
        return out
    areas = np.bincount(labels.ravel(), minlength=n)
    edge = np.unique(np.concatenate([labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]]))
    fill = areas <= hmax
    fill[0] = False
    fill[edge] = False
    out[fill[labels]] = 255
    return out


def convexify(src: np.ndarray, gap: int, th: float = 128) -> np.ndarray:
    """Close concavities of each component narrower than `gap` pixels."""

    out = np.where(src > th, 255, 0).astype(np.uint8)
    if gap <= 0:
        return out
    k = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (2 * gap + 1, 2 * gap + 1))
    closed = cv2.morphologyEx(out, cv2.MORPH_CLOSE, k)
    contours, _ = cv2.findContours(out, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    hulls = np.zeros_like(out)
    for c in contours:
        cv2.fillPoly(hulls, [cv2.convexHull(c)], 255)
    return np.maximum(out, np.minimum(closed, hulls))


def mix_toward(cur: np.ndarray, target: np.ndarray, f: float, dmin: int = 1) -> np.ndarray:
    """Move `cur` a fraction `f` of the way to `target`, at least `dmin` per step."""

    c = cur.astype(np.int32)
    d = target.astype(np.int32) - c
    step = np.rint(f * d).astype(np.int32)
    lim = np.minimum(np.abs(d), dmin)
    step = np.where(np.abs(step) < lim, np.sign(d) * lim, step)
    return np.clip(c + step, 0, 255).astype(np.uint8)


def shift(src: np.ndarray, dx: int, dy: int, fill: int = 0) -> np.ndarray:
    """Integral translation by (dx, dy) columns and rows with constant fill."""

    out = np.full_like(src, fill)
    h, w = src.shape[:2]
    if abs(dx) >= w or abs(dy) >= h:
        return out
    sx = slice(max(0, -dx), w - max(0, dx))
    sy = slice(max(0, -dy), h - max(0, dy))
    tx = slice(max(0, dx), w - max(0, -dx))
    ty = slice(max(0, dy), h - max(0, -dy))
    out[ty, tx] = src[sy, sx]
    return out


def frac_shift(src: np.ndarray, dx: float, dy: float) -> np.ndarray:
    """Sub-pixel translation with edge replication."""

    if dx == 0.0 and dy == 0.0:
        return src.copy()
    h, w = src.shape[:2]
    m = np.float32([[1.0, 0.0, dx], [0.0, 1.0, dy]])
    return cv2.warpAffine(src, m, (w, h), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)


def sample(src: np.ndarray, w: int, h: int) -> np.ndarray:
    """Resize (area averaging when shrinking) to exactly w x h."""

    if src.shape[1] == w and src.shape[0] == h:
        return src.copy()
    interp = cv2.INTER_AREA if src.shape[1] > w else cv2.INTER_LINEAR
    return cv2.resize(src, (int(w), int(h)), interpolation=interp)


def rotate_patch(src: np.ndarray, cx: float, cy: float, w: int, h: int, ang: float) -> tuple[np.ndarray, np.ndarray]:
    """Cut a w x h patch centred on (cx, cy) whose up direction is `ang` degrees CCW of image up.

    Returns the patch and the 2 x 3 affine matrix from source to patch pixels.
    """

    m = cv2.getRotationMatrix2D((float(cx), float(cy)), -float(ang), 1.0)
    m[0, 2] += 0.5 * (w - 1) - cx
    m[1, 2] += 0.5 * (h - 1) - cy
    patch = cv2.warpAffine(src, m, (int(w), int(h)), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)
    return patch, m


def enhance(src: np.ndarray, roi: Roi | None = None, gmax: float = 4.0, pct: float = 2.0) -> np.ndarray:
    """Linear contrast stretch set by the percentile range inside `roi`, gain at most `gmax`."""

    area = src if roi is None else src[roi.slices()]
    if area.size == 0:
        return src.copy()
    lo, hi = np.percentile(mono(area), [pct, 100.0 - pct])
    gain = min(gmax, 255.0 / max(1.0, float(hi - lo)))
    return _u8((src.astype(np.float32) - float(lo)) * gain)
