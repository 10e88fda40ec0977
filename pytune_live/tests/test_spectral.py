import numpy as np
import pytest

from pytune_live.analysis.spectral import (
    SpectrumBuffer,
    fft_inplace,
    get_window,
    ifft_inplace,
    magnitude_spectrum,
    next_power_of_two,
    parabolic_interpolation,
    power_spectrum,
    refine_peak,
)


def test_parabolic_recovers_vertex():
    # y = 5 − (x − 2.3)²
    x = np.arange(5, dtype=float)
    y = 5.0 - (x - 2.3) ** 2
    pos, value = refine_peak(y, 2)
    assert pos == pytest.approx(2.3, abs=1e-12)
    assert value == pytest.approx(5.0, abs=1e-12)


def test_parabolic_flat_input_is_not_refined():
    assert parabolic_interpolation(1.0, 1.0, 1.0) == (0.0, 1.0)
    assert refine_peak(np.ones(5), 2) == (2.0, 1.0)


def test_refine_peak_edges():
    y = np.array([3.0, 2.0, 1.0])
    assert refine_peak(y, 0) == (0.0, 3.0)
    assert refine_peak(y, 2) == (2.0, 1.0)


def test_fft_matches_numpy():
    rng = np.random.default_rng(1)
    x = rng.standard_normal(1024)
    real = x.copy()
    imag = np.zeros_like(real)
    fft_inplace(real, imag)
    ref = np.fft.fft(x)
    assert np.allclose(real, ref.real, atol=1e-9)
    assert np.allclose(imag, ref.imag, atol=1e-9)

    ifft_inplace(real, imag)
    assert np.allclose(real, x, atol=1e-12)
    assert np.allclose(imag, 0.0, atol=1e-12)


def test_fft_rejects_non_power_of_two():
    with pytest.raises(ValueError):
        fft_inplace(np.zeros(1000), np.zeros(1000))
    with pytest.raises(ValueError):
        SpectrumBuffer(1000)


def test_next_power_of_two():
    assert next_power_of_two(1) == 1
    assert next_power_of_two(4096) == 4096
    assert next_power_of_two(4097) == 8192


def test_window_cached_and_read_only():
    w = get_window("hann", 64)
    assert w is get_window("hann", 64)
    assert not w.flags.writeable
    assert w[0] == pytest.approx(w[-1])
    assert get_window("hamming", 64)[0] == pytest.approx(0.08)


def test_magnitude_spectrum_peak_bin():
    n = 1024
    t = np.arange(n)
    x = np.cos(2 * np.pi * 32 * t / n)
    mag = magnitude_spectrum(x)
    assert mag.size == n // 2
    assert int(np.argmax(mag)) == 32
    assert mag[32] == pytest.approx(n / 2)
    assert power_spectrum(x)[32] == pytest.approx((n / 2) ** 2)


def test_spectrum_buffer_zero_pads():
    buf = SpectrumBuffer(16)
    buf.load(np.ones(4))
    assert np.all(buf.real[:4] == 1.0)
    assert np.all(buf.real[4:] == 0.0)


def test_spectrum_buffer_frame_shares_buffers():
    n = 256
    buf = SpectrumBuffer(n)
    buf.load(np.cos(2 * np.pi * 8 * np.arange(n) / n))
    frame = buf.analyze()
    assert frame.magnitude is buf.magnitude and frame.phase is buf.phase
    assert int(np.argmax(frame.magnitude)) == 8
    assert frame.phase[8] == pytest.approx(0.0, abs=1e-9)
    assert buf.compute_power()[8] == pytest.approx((n / 2) ** 2)
