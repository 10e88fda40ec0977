import math

import numpy as np
import pytest

from pytune_live.analysis.time_domain import NsdfEstimator, YinEstimator, nsdf
from pytune_live.types.enums import ObservationSource

SR = 48000
N = 4096


def tone(partials, size=N):
    t = np.arange(size) / SR
    return sum(a * np.sin(2 * np.pi * f * t) for f, a in partials).astype(np.float32)


def cents(f, ref):
    return 1200 * math.log2(f / ref)


def test_nsdf_is_one_at_lag_zero_and_period():
    curve = nsdf(tone([(375.0, 0.5)]))  # période entière : 128 échantillons
    assert curve.size == N // 2
    assert curve[0] == pytest.approx(1.0)
    assert curve[128] > 0.99
    assert curve[64] < -0.99


def test_nsdf_sine():
    obs = NsdfEstimator().estimate(tone([(440.0, 0.5)]))
    assert obs.is_valid and obs.source == ObservationSource.NSDF
    assert abs(cents(obs.frequency, 440.0)) < 5.0, f"{obs.frequency:.3f} Hz"
    assert obs.confidence > 0.9


def test_nsdf_strong_second_harmonic_keeps_octave():
    obs = NsdfEstimator().estimate(tone([(220.0, 0.5), (440.0, 0.4)]))
    assert obs.is_valid
    assert abs(cents(obs.frequency, 220.0)) < 5.0, f"{obs.frequency:.3f} Hz"


def test_nsdf_missing_fundamental():
    obs = NsdfEstimator().estimate(tone([(400.0, 0.5), (600.0, 0.4), (800.0, 0.3)]))
    assert obs.is_valid
    assert abs(cents(obs.frequency, 200.0)) < 5.0, f"{obs.frequency:.3f} Hz"


def test_nsdf_rejects_noise_and_silence():
    est = NsdfEstimator()
    noise = np.random.default_rng(0).standard_normal(N).astype(np.float32)
    assert not est.estimate(noise).is_valid
    assert not est.estimate(np.zeros(N, dtype=np.float32)).is_valid
    assert not est.estimate(np.zeros(32, dtype=np.float32)).is_valid


def test_nsdf_lag_range_follows_block():
    est = NsdfEstimator(min_freq=50.0, max_freq=2000.0)
    assert est.lag_range(4096) == (24, 960)
    assert est.lag_range(1024) == (24, 510)


def test_yin_sine():
    obs = YinEstimator().estimate(tone([(440.0, 0.5)]))
    assert obs.is_valid and obs.source == ObservationSource.YIN
    assert abs(cents(obs.frequency, 440.0)) < 5.0, f"{obs.frequency:.3f} Hz"
    assert obs.confidence > 0.9
