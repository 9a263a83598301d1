"""Gain, white balance and sensor noise estimation against a background image.

Gains are kept as an overall intensity factor plus per-channel corrections
relative to it, so `fix_agc` multiplies channel c by `g[0] * g[c]`. Noise is
tracked per channel by slowly moving knobs; the reciprocal of each is used as
a "quiet" weight when channels are combined.
"""

from __future__ import annotations

import logging

import numpy as np

from depthscene.core import imgops
from depthscene.core.config.params import ParamBundle, fspec, ispec

logger = logging.getLogger(__name__)

NBINS = 256


def _smooth_hist(h: np.ndarray, n: int) -> np.ndarray:
    if n <= 0:
        return h.astype(np.float64)
    k = np.ones(2 * n + 1) / (2 * n + 1)
    return np.convolve(h.astype(np.float64), k, mode="same")


class Knob:
    """Scalar that moves a fraction of the way toward each new observation."""

    def __init__(self, vdef: float = 10.0, vmin: float = 0.0, vmax: float = 255.0, frac: float = 0.1) -> None:
        self.vdef = vdef
        self.vmin = vmin
        self.vmax = vmax
        self.frac = frac
        self.val = vdef

    def limits(self, vmin: float, vmax: float, frac: float) -> None:
        self.vmin, self.vmax, self.frac = vmin, vmax, frac

    def reset(self) -> None:
        self.val = min(max(self.vdef, self.vmin), self.vmax)

    def force(self, v: float) -> None:
        self.val = min(max(v, self.vmin), self.vmax)

    def update(self, v: float) -> float:
        v = min(max(v, self.vmin), self.vmax)
        self.val += self.frac * (v - self.val)
        return self.val

    def ival(self) -> int:
        return int(round(self.val))

    def recip(self) -> float:
        return 1.0 / max(self.val, 1e-6)


class GainControl:
    """Automatic gain control and per-channel noise tracking.

    Estimates only look at pixels that are not masked off (mask at or below
    128) and whose values are inside the trusted intensity band.
    """

    def __init__(self) -> None:
        self.gps = ParamBundle(
            "agc_gain",
            [
                fspec("agc1", 2.0, "Max intensity gain"),
                fspec("agc0", 0.5, "Min intensity gain"),
                fspec("awb1", 1.5, "Max color balance gain"),
                ispec("ihi", 240, "Max valid intensity"),
                ispec("ilo", 50, "Min valid intensity"),
                ispec("hagc", 90, "Estimation image height"),
                fspec("gfrac", 0.1, "Min valid fraction for gain"),
                fspec("gmix", 0.5, "Gain update rate"),
            ],
        )
        self.nps = ParamBundle(
            "agc_noise",
            [
                ispec("bmax", 80, "Max blue noise"),
                ispec("rgmax", 30, "Max red/green noise"),
                ispec("vmin", 5, "Min noise"),
                ispec("vdef", 10, "Default noise"),
                ispec("nsm", 8, "Histogram smoothing"),
                fspec("ndrop", 0.1, "Peak fall fraction"),
                fspec("nfrac", 0.1, "Min valid fraction for noise"),
                fspec("nmix", 0.05, "Noise update rate"),
            ],
        )
        self.rn = Knob()
        self.gn = Knob()
        self.bn = Knob()
        self.g = np.ones(4)
        self.nf = 3
        self.hw = 0
        self.hh = 0
        self.gref: np.ndarray | None = None
        self.noise_defaults(self.nps.vdef, self.nps.vdef, self.nps.vdef)
        self.reset_agc()

    # ------------------------------------------------------------- set up

    def set_size_agc(self, w: int, h: int, f: int = 3) -> None:
        self.nf = f
        self.hh = max(1, min(int(self.gps.hagc), int(h)))
        self.hw = max(1, int(round(w * self.hh / float(max(1, h)))))

    def set_gain_ref(self, truth: np.ndarray) -> None:
        """Remember a reduced copy of the image that gains are measured against."""

        if self.hw <= 0:
            self.set_size_agc(truth.shape[1], truth.shape[0], 1 if truth.ndim == 2 else truth.shape[2])
        self.gref = imgops.sample(truth, self.hw, self.hh)

    def noise_defaults(self, rn: float = 0.0, gn: float = 0.0, bn: float = 0.0) -> None:
        """Starting noise levels used on the next reset; zero keeps the current one."""

        for knob, v in ((self.rn, rn), (self.gn, gn), (self.bn, bn)):
            if v > 0:
                knob.vdef = float(v)

    def reset_agc(self) -> None:
        self.reset_gains()
        self.reset_noise()

    def reset_gains(self) -> None:
        self.g[:] = 1.0

    def reset_noise(self) -> None:
        ps = self.nps
        self.rn.limits(ps.vmin, ps.rgmax, ps.nmix)
        self.gn.limits(ps.vmin, ps.rgmax, ps.nmix)
        self.bn.limits(ps.vmin, ps.bmax, ps.nmix)
        for knob in (self.rn, self.gn, self.bn):
            knob.reset()

    def decay_gains(self, f: float = 0.1) -> None:
        """Relax all gains a fraction `f` of the way back to unity."""

        self.g += f * (1.0 - self.g)

    # -------------------------------------------------------------- results

    def gains(self) -> tuple[float, float, float, float]:
        """Intensity gain followed by the red, green and blue corrections."""

        return float(self.g[0]), float(self.g[3]), float(self.g[2]), float(self.g[1])

    def noise(self) -> tuple[float, float, float]:
        return self.rn.val, self.gn.val, self.bn.val

    def quiet(self) -> tuple[float, float, float]:
        return self.rn.recip(), self.gn.recip(), self.bn.recip()

    def channel_wts(self) -> tuple[float, float, float]:
        """Red, green and blue weights proportional to quietness, summing to one."""

        r, g, b = self.quiet()
        norm = 1.0 / (r + g + b)
        return r * norm, g * norm, b * norm

    def mono_noise(self) -> float:
        """Noise of the quietness weighted monochrome projection."""

        if self.nf == 1:
            return self.gn.val
        wr, wg, wb = self.channel_wts()
        return float(np.sqrt((wr * self.rn.val) ** 2 + (wg * self.gn.val) ** 2 + (wb * self.bn.val) ** 2))

    def gain_status(self) -> int:
        """-1 if the intensity gain is pinned at a limit, else 1."""

        ps = self.gps
        if self.g[0] <= ps.agc0 + 1e-6 or self.g[0] >= ps.agc1 - 1e-6:
            return -1
        return 1

    # ---------------------------------------------------------- correction

    def _chan_gain(self) -> np.ndarray:
        if self.nf == 1:
            return np.array([self.g[0]])
        return self.g[0] * self.g[1:4]

    def fix_agc(self, src: np.ndarray) -> np.ndarray:
        """Apply the current gains to an image."""

        gc = self._chan_gain()
        if np.allclose(gc, 1.0):
            return src.copy()
        f = src.astype(np.float32)
        f = f * (gc[0] if src.ndim == 2 else gc.astype(np.float32))
        return np.clip(np.rint(f), 0, 255).astype(np.uint8)

    def limit_agc(self, ref: np.ndarray) -> np.ndarray:
        """Clip a reference image to what a gain corrected input can reach."""

        gc = self._chan_gain()
        top = np.minimum(255.0, 255.0 * gc)
        if ref.ndim == 2:
            return np.minimum(ref, np.uint8(top[0]))
        return np.minimum(ref, top.astype(np.uint8)).astype(np.uint8)

    # ---------------------------------------------------------- estimation

    def _valid(self, f: np.ndarray, b: np.ndarray, mask: np.ndarray | None) -> np.ndarray:
        lo, hi = self.gps.ilo, self.gps.ihi
        ok = (f >= lo) & (f <= hi) & (b >= lo) & (b <= hi)
        if ok.ndim == 3:
            ok = ok.all(axis=2)
        if mask is not None:
            ok &= imgops.sample(mask, ok.shape[1], ok.shape[0]) <= 128
        return ok

    def _ratio_mode(self, f: np.ndarray, b: np.ndarray, gmax: float) -> float:
        step = gmax / NBINS
        rats = b.astype(np.float64) / np.maximum(1.0, f.astype(np.float64))
        # bins centred on multiples of the step so unity gain is exact
        hist, _ = np.histogram(rats, bins=NBINS, range=(-0.5 * step, gmax - 0.5 * step))
        hist[0] = 0
        hist = _smooth_hist(hist, 4)
        return int(np.argmax(hist)) * step

    def update_agc(self, now: np.ndarray, ref: np.ndarray | None = None, mask: np.ndarray | None = None, mok: int = 1) -> int:
        """Re-estimate gains of `now` with respect to `ref` (or the stored reference).

        Returns 1 if the gains were adjusted, 0 if there was too little to go on.
        """

        if mok <= 0:
            return 0
        if ref is not None:
            self.set_gain_ref(ref)
        if self.gref is None:
            return 0
        f = imgops.sample(now, self.hw, self.hh)
        b = self.gref
        if f.shape != b.shape:
            logger.error("Bad images to GainControl.update_agc")
            return 0
        ok = self._valid(f, b, mask)
        if np.count_nonzero(ok) < self.gps.gfrac * ok.size:
            return 0

        ps = self.gps
        est = self._ratio_mode(imgops.mono(f)[ok], imgops.mono(b)[ok], 2.0 * ps.agc1)
        self.g[0] += ps.gmix * (est - self.g[0])
        if f.ndim == 3:
            for c in range(3):
                cg = self._ratio_mode(f[..., c][ok], b[..., c][ok], 2.0 * ps.agc1) / max(est, 1e-6)
                self.g[1 + c] += ps.gmix * (cg - self.g[1 + c])
        self.clip_gain()
        logger.debug("AGC gains %.3f (%.3f %.3f %.3f)", *self.gains())
        return 1

    def set_gains_rgb(self, r: float, g: float, b: float) -> None:
        """Force the overall gain to 1 and the channel corrections to r, g, b."""

        self.g[0] = 1.0
        self.g[1], self.g[2], self.g[3] = b, g, r
        self.clip_gain()

    def set_gain_mono(self, v: float) -> None:
        self.g[0] = v
        self.g[1:4] = 1.0
        self.clip_gain()

    def clip_gain(self) -> None:
        ps = self.gps
        self.g[0] = min(max(self.g[0], ps.agc0), ps.agc1)
        self.g[1:4] = np.clip(self.g[1:4], 1.0 / ps.awb1, ps.awb1)

    def est_noise(self, f: np.ndarray, b: np.ndarray, mask: np.ndarray | None = None, fix: int = 0) -> int:
        """Update channel noise from the spread of differences between `f` and `b`.

        The noise is where the smoothed difference histogram falls to `ndrop`
        of its peak. With `fix` the gains are applied first. Returns how many
        channels were updated.
        """

        if f.shape != b.shape:
            logger.error("Bad images to GainControl.est_noise")
            return 0
        if fix > 0:
            f, b = self.fix_agc(f), self.limit_agc(b)
        d = imgops.abs_diff(f, b)
        ok = np.ones(f.shape[:2], dtype=bool) if mask is None else mask <= 128
        if np.count_nonzero(ok) < self.nps.nfrac * ok.size:
            return 0
        knobs = [self.bn, self.gn, self.rn]
        if d.ndim == 2:
            v = self._peak_fall(d[ok], max(k.vmax for k in knobs))
            for k in knobs:
                k.update(v)
            return 3
        for c, k in enumerate(knobs):
            k.update(self._peak_fall(d[..., c][ok], k.vmax))
        return 3

    def _peak_fall(self, vals: np.ndarray, vmax: float) -> float:
        top = int(round(1.2 * vmax)) + 1
        hist = np.bincount(np.minimum(vals, top).astype(np.int64), minlength=top + 1)[: top + 1]
        hist = _smooth_hist(hist, self.nps.nsm)
        pk = int(np.argmax(hist))
        lim = self.nps.ndrop * hist[pk]
        for i in range(pk, top + 1):
            if hist[i] <= lim:
                return float(i)
        return float(top)
