import numpy as np
import pytest

from pytune_live.analysis.super_resolution import PhaseVocoder

SR = 48000
FFT = 4096
HOP = 256


@pytest.fixture
def sine220():
    t = np.arange(FFT + 4 * HOP) / SR
    return 0.8 * np.sin(2 * np.pi * 220.0 * t)


def test_two_frames_reach_sub_tenth_hz(sine220):
    pv = PhaseVocoder(SR, fft_size=FFT, hop_size=HOP)
    first = pv.refine(sine220[:FFT], 219.0)
    assert first.method == "parabolic"
    assert first.frequency == pytest.approx(220.0, abs=2.0)

    second = pv.refine(sine220[HOP:HOP + FFT], 219.0)
    assert second.method == "phase_vocoder"
    assert abs(second.frequency - 220.0) < 0.1, f"{second.frequency:.4f} Hz"
    assert second.confidence > 0.5


def test_phase_velocity_small_for_steady_tone(sine220):
    pv = PhaseVocoder(SR, fft_size=FFT, hop_size=HOP)
    for i in range(3):
        result = pv.refine(sine220[i * HOP:i * HOP + FFT], 219.0)
    assert abs(result.phase_velocity) < 5.0


def test_invalid_coarse_leaves_history_untouched(sine220):
    pv = PhaseVocoder(SR, fft_size=FFT, hop_size=HOP)
    pv.refine(sine220[:FFT], 219.0)
    result = pv.refine(sine220[HOP:HOP + FFT], None)
    assert result.frequency is None and result.confidence == 0.0
    assert pv.has_phase_history

    pv.forget()
    assert not pv.has_phase_history
    assert pv.refine(sine220[HOP:HOP + FFT], 219.0).method == "parabolic"


def test_rejects_bad_sizes():
    with pytest.raises(ValueError):
        PhaseVocoder(SR, fft_size=3000)
    with pytest.raises(ValueError):
        PhaseVocoder(SR, hop_size=0)
