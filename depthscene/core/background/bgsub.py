"""Adaptive background subtraction with stationary object healing.

All modelling happens on a reduced copy of the input (`samp` times smaller).
Per pixel salience combines frame-to-frame motion, edge change and color
change against the background, each normalised by the tracked sensor noise.
The cleaned foreground mask drives three slow processes: building the
background where the scene has been quiet, invalidating it where motion never
settles, and "healing" foreground components that have not moved for a long
time by copying them into the background.

Mask values are 0 (background), 255 (foreground) and `HEAL_RED` for
stationary foreground that has been proposed for absorption.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import cv2
import numpy as np

from depthscene.core import imgops
from depthscene.core.background.agc import GainControl
from depthscene.core.background.stabilize import ContrastStretch, PixelKalman, Stabilizer
from depthscene.core.blobs import BlobTable
from depthscene.core.config.params import ParamBundle, fspec, ispec, load_all, save_all
from depthscene.core.roi import Roi

logger = logging.getLogger(__name__)

HEAL_RED = 200

# Validity level a background pixel must exceed to be trusted.
THMAP = 100

# Edge strength and ring coverage used when classifying a healed region.
EDGE_TH = 40
EDGE_FRAC = 0.07


class BgSub(GainControl):
    """Background model, foreground mask and heal proposals for one video feed.

    `find_fg` returns -2 when the model was reset (camera knock, frozen feed),
    -1 when new heal proposals were made, 0 for a duplicate frame and 1
    otherwise. `status` is -1 without a usable model, 0 while it is still
    accumulating and 1 once `bcnt` frames went into it.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fps = ParamBundle(
            "bgs_fix",
            [
                ispec("boost", 0, "Contrast stretch"),
                ispec("wind", 1, "Shake correction"),
                ispec("wob", 0, "Sync tear correction"),
                ispec("ntsc", 1, "Color bleed removal"),
                ispec("ksm", 1, "Temporal smoothing"),
                ispec("agc", 1, "Gain control"),
            ],
        )
        self.f2ps = ParamBundle(
            "bgs_fix2",
            [
                ispec("hdes", 100, "Desired model height"),
                ispec("maxdup", 30, "Max duplicate frames"),
                ispec("xrng", 4, "Max X shake (pel)"),
                ispec("yrng", 2, "Max Y shake (pel)"),
                ispec("wx", 2, "Max row tear (pel)"),
                fspec("smax", 2.0, "Max contrast gain"),
                fspec("maxfg", 0.5, "Max foreground fraction"),
            ],
        )
        self.bps = ParamBundle(
            "bgs_back",
            [
                ispec("bgmv", 10, "Motion for busy"),
                ispec("fat", 17, "Busy expansion"),
                ispec("bcnt", 30, "Frames for full model"),
                ispec("sparkle", 192, "Motion persistence limit"),
                ispec("still", 30, "Quiet frames to learn"),
                ispec("stable", 150, "Quiet frames to heal"),
                ispec("wait", 3, "Frames between blends"),
                fspec("bmix", 0.1, "Blend rate"),
            ],
        )
        self.sps = ParamBundle(
            "bgs_sal",
            [
                fspec("rng", 5.0, "Noise sigmas for full"),
                fspec("mf", 0.3, "Motion weight"),
                fspec("ef", 0.3, "Edge weight"),
                fspec("cf", 1.0, "Color weight"),
                fspec("bf", 0.5, "Darkest shadow"),
                fspec("df", 2.0, "Brightest highlight"),
            ],
        )
        self.kps = ParamBundle(
            "bgs_mask",
            [
                ispec("pth", 150, "Salience for foreground"),
                ispec("bd", 3, "Border to ignore"),
                ispec("mfill", 3, "Gap fill size"),
                ispec("mtrim", 5, "Erosion size"),
                fspec("amin", 0.02, "Min blob size wrt image"),
                ispec("cvx", 0, "Convexity gap"),
                fspec("hfrac", 0.2, "Max hole wrt biggest"),
                fspec("afrac", 0.0, "Min blob wrt biggest"),
            ],
        )
        self.stab = Stabilizer()
        self.cst = ContrastStretch()
        self.kal = PixelKalman()
        self.objs = BlobTable(100)
        self.mono_style = 0
        self.fw = self.fh = self.ff = 0
        self.samp = 1
        self.dw = self.dh = 0
        self.bgok = 0
        self.n = 0
        self.pushed = 0

    # ------------------------------------------------------------------ config

    def _bundles(self) -> list[ParamBundle]:
        return [self.fps, self.f2ps, self.bps, self.sps, self.kps, self.gps, self.nps]

    def defaults(self, path: str | Path | None = None) -> int:
        ok = load_all(self._bundles(), path)
        self.noise_defaults(self.nps.vdef, self.nps.vdef, self.nps.vdef)
        return ok

    def save_vals(self, path: str | Path) -> int:
        return save_all(self._bundles(), path)

    def set_size(self, w: int, h: int, f: int = 3, force_mono: int = 0) -> None:
        """Allocate the model for w x h input with `f` channels.

        With `force_mono` (1 average, 2 green, 3 luminance) color input is
        reduced to one channel before anything else.
        """

        self.fw, self.fh, self.ff = int(w), int(h), int(f)
        self.mono_style = int(force_mono)
        self.samp = max(1, int(round(h / float(max(1, self.f2ps.hdes)))))
        self.dw, self.dh = max(1, self.fw // self.samp), max(1, self.fh // self.samp)
        nf = 1 if f == 1 or force_mono > 0 else 3
        plane = (self.dh, self.dw)
        full = plane if nf == 1 else (self.dh, self.dw, 3)
        self.set_size_agc(self.dw, self.dh, nf)

        self.bg = np.zeros(full, np.uint8)
        self.former = np.zeros(full, np.uint8)
        self.sfix = np.zeros(full, np.uint8)
        self.rfix = np.zeros(full, np.uint8)
        self.bmap = np.zeros(plane, np.uint8)
        self.qcnt = np.zeros(plane, np.uint8)
        self.q2 = np.zeros(plane, np.uint8)
        self.qfg = np.zeros(plane, np.uint8)
        self.avm = np.zeros(plane, np.uint8)
        self.mask = np.zeros(plane, np.uint8)
        self.pmask2 = np.zeros(plane, np.uint8)
        self.sal = np.zeros(plane, np.uint8)
        self.mot = np.zeros(plane, np.uint8)
        self.rmot = np.zeros(plane, np.uint8)
        self.pmot = np.zeros(plane, np.uint8)
        self.rtex = np.zeros(plane, np.uint8)
        self.ptex = np.zeros(plane, np.uint8)
        self.csnow = np.zeros(plane, np.uint8)
        self.csref = np.zeros(plane, np.uint8)
        self.heal = np.zeros(plane, np.uint16)
        self.comp = np.zeros(plane, np.uint16)
        self.prev: np.ndarray | None = None
        self.last: np.ndarray | None = None
        self.reset(1)
        logger.info("Background model %dx%d (1/%d of %dx%d, %d field)", self.dw, self.dh, self.samp, w, h, nf)

    def reset(self, bgclr: int = 0) -> None:
        """Restart sequence state; with `bgclr` the learned background is dropped too."""

        if self.fw <= 0:
            return
        if bgclr > 0:
            self.bg[:] = 0
            self.bmap[:] = 0
            self.avm[:] = 0
            self.bgok = 0
            self.n = 0
        self.qcnt[:] = 0
        self.q2[:] = 0
        self.qfg[:] = 0
        self.mask[:] = 0
        self.pmask2[:] = 0
        self.heal[:] = 0
        self.pmot[:] = 0
        self.ptex[:] = 0
        self.prev = None
        self.dup = 0
        self.bad = 0
        self.knock = 0
        self.pushed = 0
        self.hcnt = 0
        self.fcnt = 0
        self.wcnt = self.bps.wait
        self.stab.reset()
        self.cst.reset()
        self.kal.reset()
        self.reset_agc()
        self.set_gain_ref(self.bg)

    def status(self) -> int:
        if self.bgok <= 0:
            return -1
        if self.n < self.bps.bcnt:
            return 0
        return 1

    # ------------------------------------------------------- model transfer

    def _force_mono(self, src: np.ndarray) -> np.ndarray:
        if self.mono_style <= 0 or src.ndim == 2:
            return src
        if self.mono_style == 2:
            return src[..., 1].copy()
        if self.mono_style == 3:
            return cv2.cvtColor(src, cv2.COLOR_BGR2GRAY)
        return imgops.mono(src)

    def _shrink(self, src: np.ndarray) -> np.ndarray:
        return imgops.sample(self._force_mono(src), self.dw, self.dh)

    def _expand(self, img: np.ndarray) -> np.ndarray:
        return cv2.resize(img, (self.fw, self.fh), interpolation=cv2.INTER_NEAREST)

    def _fits(self, img: np.ndarray) -> bool:
        f = 1 if img.ndim == 2 else img.shape[2]
        return img.shape[1] == self.fw and img.shape[0] == self.fh and f == self.ff

    def _size_for(self, img: np.ndarray) -> None:
        if self.fw <= 0 or not self._fits(img):
            self.set_size(img.shape[1], img.shape[0], 1 if img.ndim == 2 else img.shape[2], self.mono_style)

    def set_bg(self, ref: np.ndarray, rn: float = 0.0, gn: float = 0.0, bn: float = 0.0) -> int:
        """Install a complete background image, optionally with channel noise levels."""

        if ref.ndim not in (2, 3):
            logger.error("Bad image to BgSub.set_bg")
            return 0
        self._size_for(ref)
        self.noise_defaults(rn, gn, bn)
        self.reset(1)
        self.bg = self._shrink(ref)
        self.bmap[:] = 255
        self.bgok = 1
        self.n = self.bps.bcnt
        self.set_gain_ref(self.bg)
        return 1

    def merge_bg(self, now: np.ndarray) -> int:
        """Blend one more empty-scene frame into the background; returns `status()`."""

        if now.ndim not in (2, 3):
            logger.error("Bad image to BgSub.merge_bg")
            return -1
        self._size_for(now)
        small = self._shrink(now)
        if self.bgok <= 0:
            self.bg = small
            self.bmap[:] = 255
            self.bgok = 1
            self.n = 1
            self.set_gain_ref(self.bg)
            return self.status()
        self.est_noise(small, self.bg)
        self.bg = imgops.mix_toward(self.bg, small, self.bps.bmix, 1)
        self.n += 1
        return self.status()

    def force_bg(self, fgmsk: np.ndarray, now: np.ndarray) -> int:
        """Copy `now` into the background wherever both `fgmsk` and the mask are on.

        Returns the number of model pixels changed.
        """

        if self.fw <= 0 or not self._fits(now) or fgmsk.shape[:2] != now.shape[:2]:
            logger.error("Bad images to BgSub.force_bg")
            return 0
        small = self._shrink(now)
        m = cv2.resize(fgmsk, (self.dw, self.dh), interpolation=cv2.INTER_NEAREST)
        sel = (m > 128) & (self.mask > 128)
        self.bg[sel] = small[sel]
        self.bmap[sel] = 255
        return int(np.count_nonzero(sel))

    def load_bg(self, path: str | Path) -> int:
        """Read a saved background and its noise levels.

        Returns 1 on success, 0 if the file cannot be read and -1 if it is not
        a usable image (the current model is untouched in both cases).
        """

        p = Path(path)
        try:
            data = p.read_bytes()
        except OSError as exc:
            logger.error("Could not read background %s: %s", p, exc)
            return 0
        img = cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_UNCHANGED) if len(data) > 10 else None
        if img is None or img.ndim not in (2, 3):
            logger.error("Bad background file %s", p)
            return -1
        if img.ndim == 3 and img.shape[2] == 4:
            img = img[..., :3]
        if self.fw > 0 and (img.shape[1], img.shape[0]) != (self.fw, self.fh):
            logger.error("Background %s is %dx%d, expected %dx%d", p, img.shape[1], img.shape[0], self.fw, self.fh)
            return -1
        if self.fw > 0 and self.ff == 1 and img.ndim == 3:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        bn, gn, rn = data[6], data[7], data[8]
        self.set_bg(img, rn, gn, bn)
        logger.info("Loaded background %s (noise %d %d %d)", p, rn, gn, bn)
        return 1

    def save_bg(self, path: str | Path) -> int:
        """Write the background as a BMP with the B, G, R noise in header bytes 6-8.

        Returns 1 on success, 0 if the file cannot be written, -1 if there is
        no background and -2 if encoding failed.
        """

        if self.fw <= 0 or self.bgok <= 0:
            logger.error("No background to save in BgSub.save_bg")
            return -1
        ok, buf = cv2.imencode(".bmp", self.full_bg())
        if not ok:
            logger.error("Could not encode background for %s", path)
            return -2
        data = bytearray(buf.tobytes())
        for i, knob in ((6, self.bn), (7, self.gn), (8, self.rn)):
            data[i] = min(255, max(0, knob.ival()))
        p = Path(path)
        try:
            p.write_bytes(bytes(data))
        except OSError as exc:
            logger.error("Could not write background %s: %s", p, exc)
            return 0
        logger.info("Saved background %s", p)
        return 1

    # ------------------------------------------------------------ main call

    def find_fg(self, now: np.ndarray, want_mask: bool = False, cc: int = 0) -> tuple[int, np.ndarray | None]:
        """Process one frame.

        Returns the frame code with, if `want_mask`, the full size mask (or
        component labels when `cc > 0`).
        """

        if now.ndim not in (2, 3):
            logger.error("Bad image to BgSub.find_fg")
            return 0, None
        if self.fw <= 0:
            self.set_size(now.shape[1], now.shape[0], 1 if now.ndim == 2 else now.shape[2], self.mono_style)
        elif not self._fits(now):
            logger.error("Bad image to BgSub.find_fg: %s vs %dx%dx%d", now.shape, self.fw, self.fh, self.ff)
            return 0, None

        if self._check_repeat(now):
            self.dup += 1
            if self.dup <= self.f2ps.maxdup:
                return 0, self._result(want_mask, cc)
            logger.warning("Input frozen for %d frames", self.dup)
            self.knock = 1
            return -2, self._result(want_mask, cc)
        self.dup = 0
        self.knock = 0

        self._bg_push()
        self._bg_smooth()
        if self._fix_input(self._force_mono(now)) <= 0:
            logger.warning("Camera shake, resetting background")
            self.reset(1)
            self.knock = 1
            return -2, self._result(want_mask, cc)
        self._salience()
        self._clean_mask()
        self._update_bg()

        if self.knock > 0:
            return -2, self._result(want_mask, cc)
        self.n += 1
        if self.bgok <= 0 and self.n >= self.bps.bcnt:
            self.bgok = 1
            self.set_gain_ref(self.bg)
            logger.info("Background model rebuilt after %d frames", self.n)
        code = -1 if self.pushed > 0 else 1
        return code, self._result(want_mask, cc)

    def _result(self, want_mask: bool, cc: int) -> np.ndarray | None:
        return self.full_mask(cc) if want_mask else None

    def _check_repeat(self, now: np.ndarray) -> bool:
        """Whether `now` is (nearly) the same as the last distinct frame."""

        prev = self.last
        if prev is not None and prev.shape == now.shape:
            d = imgops.abs_diff(now, prev).astype(np.int32)
            if d.ndim == 3:
                d = d.sum(axis=2)
            th = 2 if now.ndim == 2 else 6
            if np.count_nonzero(d > th) < 0.01 * d.size:
                return True
        self.last = now.copy()
        return False

    def _fix_input(self, src: np.ndarray) -> int:
        """Condition a frame and leave the corrected copy in `sfix` and `former`.

        Returns 0 if the camera is judged to be shaking too much, else 1.
        """

        fx, f2 = self.fps, self.f2ps
        if fx.boost > 0:
            src = self.cst.stretch(src, f2.smax)
        if fx.wind > 0 or fx.wob > 0:
            fmask = self._expand(self.mask)
            if self.stab.stabilize(src, fmask, f2.xrng, f2.yrng, f2.wx, 2 if fx.wind > 0 else 0, fx.wob) <= 0:
                return 0
            src = self.stab.apply(src)

        small = imgops.sample(src, self.dw, self.dh)
        if fx.ntsc > 0 and small.ndim == 3:
            small = self._fix_ntsc(small)
        if fx.ksm > 0:
            small = self.kal.flywheel(small)

        excl = np.where((self.bmap <= THMAP) | (self.mask > 128), 255, 0).astype(np.uint8)
        if fx.agc > 0 and self.bgok > 0:
            self.update_agc(small, None, excl)
            self.sfix = self.fix_agc(small)
            self.rfix = self.limit_agc(self.bg)
        else:
            self.sfix = small
            self.rfix = self.bg.copy()
        self.est_noise(self.sfix, self.rfix, excl)
        self.former = self.sfix.copy()
        if not self.bmap.any():
            self.bg = self.former.copy()
        return 1

    def _fix_ntsc(self, src: np.ndarray) -> np.ndarray:
        """Replace color by gray next to strong vertical edges where chroma bleeds."""

        g = imgops.mono(src).astype(np.float32)
        ex = np.abs(cv2.Sobel(g, cv2.CV_32F, 1, 0, ksize=3))
        ey = np.abs(cv2.Sobel(g, cv2.CV_32F, 0, 1, ksize=3))
        vert = np.where(ex > ey, ex, 0.0)
        alpha = imgops.box_avg(np.clip(vert * 0.25, 0, 255), 5, 3, 3.0).astype(np.float32)[..., None] / 255.0
        gray = np.repeat(g[..., None], 3, axis=2)
        return np.clip(np.rint(alpha * gray + (1.0 - alpha) * src.astype(np.float32)), 0, 255).astype(np.uint8)

    # -------------------------------------------------------------- salience

    def _salience(self) -> None:
        ps = self.sps
        sc = 255.0 / ps.rng
        wr, wg, wb = self.channel_wts()
        nm = max(1e-3, self.mono_noise())
        valid = self.bmap > THMAP
        gnow = imgops.mono(self.sfix, wr, wg, wb)
        gref = imgops.mono(self.rfix, wr, wg, wb)

        # motion has to persist over two frame pairs
        raw = np.zeros_like(gnow) if self.prev is None else imgops.abs_diff(gnow, self.prev)
        self.rmot = imgops.box_avg(raw, 5 if self.dh > 200 else 3)
        self.mot = np.minimum(raw, self.pmot)
        self.pmot = raw
        self.prev = gnow
        nmot = nm * math.sqrt(2.0)
        e = ps.mf * sc * (self.mot.astype(np.float32) / nmot) ** 2
        sal = np.where(valid, np.clip(np.rint(e), 0, 255), 0).astype(np.uint8)

        self.csnow = imgops.sobel_edge(gnow)
        self.csref = imgops.sobel_edge(gref)
        if ps.ef > 0:
            nej = nm * np.array([math.sqrt(12.0), math.sqrt(12.0), 2.0], np.float32)
            d = (imgops.triple_edge(gnow) - imgops.triple_edge(gref)) / nej
            tex = ps.ef * sc * np.sqrt((d * d).mean(axis=2))
            inner = imgops.box_thresh(np.where(valid, 255, 0).astype(np.uint8), 5, 254) > 0
            self.rtex = np.where(inner, np.clip(np.rint(tex), 0, 255), 0).astype(np.uint8)
            sal = imgops.clip_sum(sal, np.minimum(self.rtex, self.ptex))
            self.ptex = self.rtex

        if ps.cf > 0:
            fixed = self._fix_shadows(self.sfix, self.rfix)
            qr, qg, qb = self.quiet()
            k = ps.cf * sc
            col = imgops.wtd_ssd_rgb(fixed, self.rfix, k * qr, k * qg, k * qb)
            col = np.where(valid, col, 0).astype(np.uint8)
            sal = imgops.clip_sum(sal, np.minimum(col, imgops.box_avg(col, 3)))

        imgops.border(sal, 1, 0)
        self.sal = sal

    def _fix_shadows(self, src: np.ndarray, ref: np.ndarray) -> np.ndarray:
        """Rescale pixels whose brightness ratio to the background is within [bf, df]."""

        ps = self.sps
        if ps.bf >= 1.0 and ps.df <= 1.0:
            return src
        wr, wg, wb = self.channel_wts()
        s = imgops.mono(src, wr, wg, wb).astype(np.float32)
        r = imgops.mono(ref, wr, wg, wb).astype(np.float32)
        ratio = r / np.maximum(s, 1.0)
        ok = (s > 0) & (ratio >= ps.bf) & (ratio <= ps.df)
        gain = np.where(ok, ratio, 1.0)
        if src.ndim == 3:
            gain = gain[..., None]
        return np.clip(np.rint(src.astype(np.float32) * gain), 0, 255).astype(np.uint8)

    def _clean_mask(self) -> None:
        k = self.kps
        m = imgops.threshold(self.sal, k.pth)
        imgops.border(m, k.bd)
        m = imgops.box_thresh(m, k.mfill, 55)
        m = imgops.box_thresh(m, k.mtrim, 192)
        imgops.border(m, 1)
        acnt = int(round(k.amin * self.dw * k.amin * self.dh))
        m, big = imgops.rem_small(m, k.afrac, acnt)
        if k.cvx > 0:
            m = imgops.convexify(m, k.cvx)
        self.mask = imgops.fill_holes(m, int(k.hfrac * big))

    # ---------------------------------------------------------- bg upkeep

    def _update_bg(self) -> None:
        if self._bg_flush():
            return
        self._bg_build()
        self._bg_heal()

    def _knocked(self) -> None:
        bad = self.bad
        self.reset(1)
        self.bad = bad
        self.knock = 1

    def _bg_flush(self) -> bool:
        """Count frames that look like a knocked camera; reset after `still` of them.

        After a reset the model is held empty for another `still` frames.
        """

        b = self.bps
        if imgops.frac_over(self.mask) > self.f2ps.maxfg or self.stab.st_bad > 0:
            self.bad += 1
            if self.bad > b.still:
                logger.warning("Background knocked (%d bad frames), resetting", self.bad)
                self._knocked()
            return True
        if self.bad > b.still:
            self.bad = -b.still
        elif self.bad > 0:
            self.bad -= 1
        if self.bad < 0:
            self.bad += 1
            self._knocked()
            return True
        return False

    def _busy(self, mot: np.ndarray, th: float, fill: float, extra: np.ndarray | None = None) -> np.ndarray:
        b = self.bps
        m = imgops.box_thresh(imgops.threshold(mot, b.bgmv), 3, th)
        if extra is not None:
            m = np.maximum(m, extra)
        return imgops.box_avg(m, b.fat, b.fat, fill) > 0

    def _bg_build(self) -> None:
        """Grow the valid model where quiet and invalidate it where motion persists."""

        b = self.bps
        busy = self._busy(self.mot, 128, 4.0, self.mask)
        self.qcnt = imgops.offset(self.qcnt, 1)
        self.qcnt[busy] = 0
        fresh = self.qcnt > b.still
        newbie = fresh & (self.bmap <= THMAP)
        self.bg[newbie] = self.former[newbie]
        self.bmap[fresh] = 255

        dec = 1 + b.sparkle // 256
        self.fcnt += 1
        if self.fcnt % (4 * dec) == 0:
            self.avm = imgops.offset(self.avm, -1)
        hot = imgops.box_avg(imgops.threshold(self.rmot, b.bgmv), 9) > 32
        self.avm[hot] = np.minimum(255, self.avm[hot].astype(np.int32) + 3).astype(np.uint8)
        if b.sparkle > 0:
            self.bmap[self.avm >= b.sparkle // dec] = 0

    def _heal_level(self) -> tuple[int, int]:
        dec = 1 + self.bps.stable // 256
        return dec, self.bps.stable // dec

    def _bg_heal(self) -> None:
        """Mark foreground components quiet for `stable` frames and propose new ones."""

        dec, st = self._heal_level()
        self.hcnt += 1
        if self.hcnt >= dec:
            self.q2 = imgops.offset(self.q2, 1)
            self.hcnt = 0
        self.q2[self._busy(self.rmot, 80, 4.0)] = 0

        comp, n = imgops.ccomps4(self.mask)
        prop = np.zeros(self.mask.shape, bool)
        if n > 1:
            self.objs.min_each(comp, self.q2)
            self.qfg = self.objs.map_value(comp, 0)
            red = self.qfg >= st
            self.mask[red] = HEAL_RED
            # only components that were plain foreground last frame are new
            self.objs.max_each(comp, self.pmask2)
            white = self.objs.value > 254
            prop = red & white[np.minimum(comp, self.objs.total - 1)]
        else:
            self.qfg[:] = 0
        self.heal, hn = imgops.ccomps4(np.where(prop, 255, 0).astype(np.uint8))
        self.pushed = hn - 1
        if self.pushed > 0:
            logger.debug("%d heal proposals", self.pushed)
        self.pmask2 = self.mask.copy()

    def _bg_push(self) -> None:
        """Absorb last frame's uncontested heal regions into the background."""

        _, st = self._heal_level()
        near = imgops.box_avg(imgops.threshold(self.qfg, st - 1), self.bps.fat, self.bps.fat, 4.0)
        self.qcnt[near >= 1] = st
        absorb = near > st - 1
        self.bg[absorb] = self.former[absorb]
        self.bmap[absorb] = 255

    def _bg_smooth(self) -> None:
        """Every `wait` frames nudge settled parts of the background toward the input."""

        self.wcnt -= 1
        if self.wcnt > 0:
            return
        self.wcnt = self.bps.wait
        mixed = imgops.mix_toward(self.bg, self.former, self.bps.bmix, 1)
        imgops.subst_over(self.bg, mixed, self.qcnt, self.bps.still)

    # ---------------------------------------------------------------- heals

    def _veto(self, sel: np.ndarray) -> None:
        self.qfg[sel] = 0
        self.q2[sel] = 0
        self.pmask2[sel] = 255

    def veto_areas(self, keep: np.ndarray) -> int:
        """Block healing wherever `keep` (full size) is on; returns pixels affected."""

        if keep.shape[:2] != (self.fh, self.fw):
            logger.error("Bad image to BgSub.veto_areas")
            return 0
        small = cv2.resize(keep, (self.dw, self.dh), interpolation=cv2.INTER_NEAREST)
        if small.ndim == 3:
            small = small.max(axis=2)
        sel = (small > 0) & (self.heal > 0)
        self._veto(sel)
        return int(np.count_nonzero(sel))

    def veto_heal(self, reg: int = 0) -> int:
        """Cancel heal proposal `reg` (1 based) or all of them when `reg` is 0."""

        if self.pushed <= 0 or reg < 0 or reg > self.pushed:
            return 0
        sel = self.heal > 0 if reg == 0 else self.heal == reg
        self._veto(sel)
        return 1

    def heal_type(self, reg: int) -> int:
        """Guess whether heal region `reg` is an object put down (1) or taken away (-1).

        Compares strong edges around the region's rim in the current frame
        against the background; 0 when neither clearly dominates.
        """

        if reg <= 0 or reg > self.pushed:
            return 0
        blob = np.where(self.heal == reg, 255, 0).astype(np.uint8)
        ring = imgops.in_range(imgops.box_avg(blob, 5), 16, 240) > 0
        cnt = int(np.count_nonzero(ring))
        if cnt == 0:
            return 0
        enow = self.csnow > EDGE_TH
        eref = self.csref > EDGE_TH
        after = int(np.count_nonzero(ring & enow & ~eref))
        before = int(np.count_nonzero(ring & eref & ~enow))
        must = int(round(EDGE_FRAC * cnt))
        if after >= must and after > before:
            return 1
        if before >= must and before > after:
            return -1
        return 0

    # -------------------------------------------------------------- results

    def full_mask(self, cc: int = 0) -> np.ndarray:
        """Full size foreground (plain foreground plus fresh heal proposals).

        With `cc > 0` a 16 bit component label image is returned instead.
        """

        if cc > 0:
            self._parse_fg()
            return self._expand(self.comp)
        m = np.where((self.mask > 254) | (self.heal > 0), 255, 0).astype(np.uint8)
        return self._expand(m)

    def full_bg(self) -> np.ndarray:
        return imgops.sample(self.bg, self.fw, self.fh)

    def full_sal(self) -> np.ndarray:
        return self._expand(self.sal)

    def full_heal(self) -> tuple[np.ndarray, int]:
        """Full size heal proposal labels and how many there are."""

        return self._expand(self.heal), self.pushed

    def _parse_fg(self) -> int:
        m = np.where((self.mask > 254) | (self.heal > 0), 255, 0).astype(np.uint8)
        self.comp, _ = imgops.ccomps4(m)
        self.objs.find_bbox(self.comp)
        return self.objs.count_over()

    def object_cnt(self) -> int:
        return self._parse_fg()

    def object_box(self, n: int) -> Roi | None:
        """Full size box of the n-th foreground object (from 0), or None."""

        i = self.objs.index_over(n)
        if i < 0:
            return None
        return self.objs.get_roi(i).scale(self.samp)

    def fg_fraction(self) -> float:
        return imgops.frac_over(self.mask)
