from __future__ import annotations

import numpy as np

from depthscene.core.background.agc import GainControl, Knob


def test_knob_moves_fractionally_and_clips():
    k = Knob(10.0, 5.0, 30.0, 0.5)
    assert k.update(20.0) == 15.0
    assert k.update(100.0) == 22.5
    k.force(1.0)
    assert k.val == 5.0
    assert k.ival() == 5
    k.reset()
    assert k.val == 10.0
    assert abs(k.recip() - 0.1) < 1e-12


def test_fix_and_limit_with_mono_gain():
    gc = GainControl()
    gc.set_gain_mono(1.5)
    img = np.full((4, 4), 100, np.uint8)
    assert np.all(gc.fix_agc(img) == 150)
    gc.set_gain_mono(0.5)
    ref = np.full((4, 4), 200, np.uint8)
    assert np.all(gc.limit_agc(ref) == 127)


def test_gain_limits_and_status():
    gc = GainControl()
    assert gc.gain_status() == 1
    gc.set_gain_mono(5.0)
    assert gc.gains()[0] == 2.0
    assert gc.gain_status() == -1
    gc.set_gains_rgb(1.2, 1.0, 3.0)
    assert gc.gains() == (1.0, 1.2, 1.0, 1.5)
    gc.decay_gains(1.0)
    assert gc.gains() == (1.0, 1.0, 1.0, 1.0)


def test_unity_gain_is_identity():
    gc = GainControl()
    img = np.arange(48, dtype=np.uint8).reshape(4, 4, 3)
    out = gc.fix_agc(img)
    assert np.array_equal(out, img)
    assert out is not img


def test_gain_tracks_darker_input():
    gc = GainControl()
    ref = np.full((90, 120, 3), 150, np.uint8)
    now = np.full((90, 120, 3), 120, np.uint8)
    assert gc.update_agc(now, ref) == 1
    for _ in range(20):
        gc.update_agc(now)
    g, r, gg, b = gc.gains()
    assert abs(g - 1.25) < 0.08
    assert abs(r - 1.0) < 0.05 and abs(b - 1.0) < 0.05


def test_gain_needs_valid_pixels():
    gc = GainControl()
    ref = np.full((90, 120), 250, np.uint8)
    assert gc.update_agc(ref, ref) == 0
    assert gc.update_agc(ref, ref, mok=0) == 0
    assert GainControl().update_agc(ref) == 0


def test_noise_follows_difference_spread():
    rng = np.random.default_rng(5)
    b = np.full((60, 80), 100, np.uint8)
    quiet_f = (b + rng.integers(0, 3, size=b.shape)).astype(np.uint8)
    loud_f = (b + rng.integers(0, 21, size=b.shape)).astype(np.uint8)
    quiet, loud = GainControl(), GainControl()
    for _ in range(200):
        assert quiet.est_noise(quiet_f, b) == 3
        loud.est_noise(loud_f, b)
    assert loud.noise()[0] > quiet.noise()[0] + 5.0
    assert quiet.est_noise(quiet_f, b[:10]) == 0


def test_channel_weights_favor_quiet_channels():
    gc = GainControl()
    gc.rn.force(10.0)
    gc.gn.force(10.0)
    gc.bn.force(40.0)
    wr, wg, wb = gc.channel_wts()
    assert abs(wr + wg + wb - 1.0) < 1e-9
    assert wb < wr
    assert gc.mono_noise() > 0.0
