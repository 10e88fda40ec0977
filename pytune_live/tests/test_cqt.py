import numpy as np
import pytest

from pytune_live.analysis.cqt import CQTAnalyzer

SR = 48000


def _sine(freq, n, amp=0.5):
    t = np.arange(n) / SR
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


@pytest.fixture(scope="module")
def cqt():
    return CQTAnalyzer(sample_rate=SR, min_freq=55.0, max_freq=1760.0, bins_per_octave=48)


def test_bin_layout(cqt):
    assert cqt.num_bins == 5 * 48
    assert cqt.bin_for_frequency(220.0) == pytest.approx(96.0)
    assert cqt.frequency_for_bin(96.0) == pytest.approx(220.0)
    assert cqt.frequencies[0] == pytest.approx(55.0)


def test_220hz_top_peak(cqt):
    result = cqt.analyze(_sine(220.0, SR))
    assert result.peaks, "no peak found"
    top = result.peaks[0]
    assert abs(top.bin - 96.0) <= 1.0, f"top bin {top.bin:.2f}"
    assert top.frequency == pytest.approx(220.0, rel=0.015)
    assert len(result.peaks) <= 10
    mags = [p.magnitude for p in result.peaks]
    assert mags == sorted(mags, reverse=True)


def test_long_kernels_are_skipped(cqt):
    short = _sine(880.0, 2048)
    result = cqt.analyze(short)
    too_long = cqt.kernel_lengths > short.size
    assert too_long.any()
    assert np.all(result.spectrum[too_long] == 0.0)


def test_silence_has_no_peaks(cqt):
    result = cqt.analyze(np.zeros(SR, dtype=np.float32))
    assert result.peaks == []
