import math

import numpy as np
import pytest

from pytune_live.analysis.inharmonicity import InharmonicityCorrector, estimate_b
from pytune_live.types.schemas import ConfigurationError
from pytune_live.utils.instruments import INSTRUMENT_TABLE, lookup_B


def test_zero_b_is_identity():
    corr = InharmonicityCorrector("flute")
    result = corr.correct(440.0, 1.0)
    assert result.frequency == 440.0
    assert result.offset_cents == 0.0 and result.B == 0.0


def test_round_trip_every_band():
    checked = 0
    for name, bands in INSTRUMENT_TABLE.items():
        corr = InharmonicityCorrector(name)
        for band in bands:
            if band.B == 0.0 or band.low is None:
                continue
            f0 = math.sqrt(band.low * band.high)
            measured = corr.calculate_harmonic(f0, 1)
            corrected = corr.correct(measured, 1.0)
            assert corrected.B == band.B, f"{name}/{band.name}"
            assert corrected.frequency == pytest.approx(f0, rel=1e-12), f"{name}/{band.name}"
            checked += 1
    assert checked == 27


def test_confidence_scales_offset():
    corr = InharmonicityCorrector("piano")
    full = corr.correct(60.0, 1.0)
    half = corr.correct(60.0, 0.5)
    assert half.offset_cents == pytest.approx(full.raw_offset_cents / 2)
    assert half.raw_offset_cents == pytest.approx(full.raw_offset_cents)
    assert full.frequency < half.frequency < 60.0


def test_out_of_range_uses_nearest_band():
    assert lookup_B("piano", 20.0) == 0.0004
    assert lookup_B("piano", 5000.0) == 0.00004
    assert lookup_B("violin", 100.0) == 0.000015


def test_unknown_instrument_keeps_previous():
    corr = InharmonicityCorrector("guitar")
    with pytest.raises(ConfigurationError):
        corr.set_instrument("theremin")
    assert corr.instrument == "guitar"
    corr.set_instrument("Cello")
    assert corr.instrument == "cello"


def test_harmonic_forward_model():
    corr = InharmonicityCorrector("piano")
    f0, B = 100.0, 0.0004
    assert corr.calculate_harmonic(f0, 3, B) == pytest.approx(3 * f0 * math.sqrt(1 + B * 9))


def test_round_trip_just_below_band_edge():
    corr = InharmonicityCorrector("piano")
    measured = corr.calculate_harmonic(109.99, 1)
    result = corr.correct(measured, 1.0)
    assert result.B == 0.0004
    assert result.frequency == pytest.approx(109.99, rel=1e-12)

    for name, bands in INSTRUMENT_TABLE.items():
        corr = InharmonicityCorrector(name)
        for lower, upper in zip(bands, bands[1:]):
            if lower.B == 0.0:
                continue
            f0 = lower.high * (1.0 - 1e-5)
            corrected = corr.correct(corr.calculate_harmonic(f0, 1), 1.0)
            assert corrected.B == lower.B, f"{name}/{lower.name}"
            assert corrected.frequency == pytest.approx(f0, rel=1e-12), f"{name}/{lower.name}"


def test_correction_is_consistent_with_forward_model():
    corr = InharmonicityCorrector("piano")
    for measured in np.geomspace(20.0, 5000.0, 500):
        corrected = corr.correct(float(measured), 1.0).frequency
        assert corr.calculate_harmonic(corrected, 1) == pytest.approx(measured, rel=1e-12)


def test_estimate_b_from_partials():
    f0, B = 100.0, 0.0004
    partials = [(k, k * f0 * math.sqrt(1 + B * k * k)) for k in range(1, 11)]
    assert estimate_b(f0, partials) == pytest.approx(B, rel=1e-9)
    # le rang 1 est ignoré : un seul partiel exploitable
    assert estimate_b(f0, partials[:2]) is None
    assert estimate_b(0.0, partials) is None
    assert estimate_b(f0, [(2, 200.0), (3, 300.0)]) == 0.0
