# pytune_live/analysis/spectral.py
"""
Primitives spectrales partagées par toutes les couches d'analyse :
- fenêtres (Hamming / Hann / Blackman), mises en cache par taille,
- FFT radix-2 Cooley–Tukey en place (numba), tables de twiddles pré-calculées,
- buffers spectraux pré-alloués (aucune allocation sur le chemin par bloc),
- interpolation parabolique 3 points pour les pics sous-bin.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple, Union

import numba
import numpy as np
from scipy.signal import get_window as _scipy_window

from pytune_live.types.dataclasses import SpectralFrame
from pytune_live.types.enums import WindowType

EPS = 1e-12


# ============================================================
# Fenêtres
# ============================================================

@lru_cache(maxsize=64)
def get_window(kind: Union[WindowType, str], size: int) -> np.ndarray:
    """Fenêtre symétrique (lecture seule), mise en cache par (type, taille)."""
    kind = WindowType(kind)
    w = _scipy_window(kind.value, int(size), fftbins=False).astype(np.float64)
    w.setflags(write=False)
    return w


# ============================================================
# FFT radix-2
# ============================================================

def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def next_power_of_two(n: int) -> int:
    return 1 if n <= 1 else 1 << (int(n) - 1).bit_length()


@lru_cache(maxsize=32)
def _twiddles(n: int) -> Tuple[np.ndarray, np.ndarray]:
    k = np.arange(n // 2, dtype=np.float64)
    ang = -2.0 * np.pi * k / n
    return np.cos(ang), np.sin(ang)


@numba.jit(nopython=True)
def _fft_radix2(real, imag, tw_cos, tw_sin):
    n = real.size

    # permutation bit-reverse
    j = 0
    for i in range(n - 1):
        if i < j:
            t = real[i]; real[i] = real[j]; real[j] = t
            t = imag[i]; imag[i] = imag[j]; imag[j] = t
        k = n >> 1
        while k <= j:
            j -= k
            k >>= 1
        j += k

    # papillons
    length = 2
    while length <= n:
        half = length >> 1
        stride = n // length
        for start in range(0, n, length):
            for k in range(half):
                c = tw_cos[k * stride]
                s = tw_sin[k * stride]
                a = start + k
                b = a + half
                tr = real[b] * c - imag[b] * s
                ti = real[b] * s + imag[b] * c
                real[b] = real[a] - tr
                imag[b] = imag[a] - ti
                real[a] += tr
                imag[a] += ti
        length <<= 1


def fft_inplace(real: np.ndarray, imag: np.ndarray) -> None:
    """
    FFT complexe en place (float64). La taille doit être une puissance de deux :
    c'est à l'appelant de zero-padder.
    """
    n = real.size
    if not is_power_of_two(n) or imag.size != n:
        raise ValueError(f"FFT size must be a power of two (got {n})")
    tw_cos, tw_sin = _twiddles(n)
    _fft_radix2(real, imag, tw_cos, tw_sin)


def ifft_inplace(real: np.ndarray, imag: np.ndarray) -> None:
    """FFT inverse en place via le conjugué : ifft(X) = conj(fft(conj(X))) / n."""
    n = real.size
    np.negative(imag, out=imag)
    fft_inplace(real, imag)
    np.negative(imag, out=imag)
    real /= n
    imag /= n


# ============================================================
# Buffer spectral pré-alloué
# ============================================================

class SpectrumBuffer:
    """
    Espace de travail FFT de taille fixe.

    Tous les tableaux sont alloués ici ; `load` / `transform` / `inverse`
    ne font que les réécrire.
    """

    def __init__(self, size: int, window: Optional[Union[WindowType, str]] = None):
        if not is_power_of_two(size):
            raise ValueError(f"SpectrumBuffer size must be a power of two (got {size})")
        self.size = int(size)
        self.half = self.size // 2
        self.real = np.zeros(self.size, dtype=np.float64)
        self.imag = np.zeros(self.size, dtype=np.float64)
        self.magnitude = np.zeros(self.half, dtype=np.float64)
        self.phase = np.zeros(self.half, dtype=np.float64)
        self.power = np.zeros(self.half, dtype=np.float64)
        self.frame = SpectralFrame(self.magnitude, self.phase)
        self.window = get_window(window, self.size) if window is not None else None
        self._tw_cos, self._tw_sin = _twiddles(self.size)

    def load(self, samples: np.ndarray) -> None:
        """Copie les `size` premiers échantillons (zero-padding si plus court)."""
        n = min(samples.size, self.size)
        self.real[:n] = samples[:n]
        self.real[n:] = 0.0
        self.imag.fill(0.0)
        if self.window is not None:
            self.real *= self.window

    def load_tail(self, samples: np.ndarray) -> None:
        """Copie les `size` échantillons les plus récents."""
        if samples.size > self.size:
            samples = samples[samples.size - self.size:]
        self.load(samples)

    def transform(self) -> None:
        _fft_radix2(self.real, self.imag, self._tw_cos, self._tw_sin)

    def inverse(self) -> None:
        np.negative(self.imag, out=self.imag)
        _fft_radix2(self.real, self.imag, self._tw_cos, self._tw_sin)
        np.negative(self.imag, out=self.imag)
        self.real /= self.size
        self.imag /= self.size

    def compute_magnitude(self, scale: float = 1.0) -> np.ndarray:
        np.hypot(self.real[: self.half], self.imag[: self.half], out=self.magnitude)
        if scale != 1.0:
            self.magnitude *= scale
        return self.magnitude

    def compute_phase(self) -> np.ndarray:
        np.arctan2(self.imag[: self.half], self.real[: self.half], out=self.phase)
        return self.phase

    def compute_power(self) -> np.ndarray:
        self.compute_magnitude()
        np.square(self.magnitude, out=self.power)
        return self.power

    def analyze(self) -> SpectralFrame:
        """FFT + amplitude + phase ; la trame retournée partage les buffers internes."""
        self.transform()
        self.compute_magnitude()
        self.compute_phase()
        return self.frame


def magnitude_spectrum(
    samples: np.ndarray,
    size: Optional[int] = None,
    window: Optional[Union[WindowType, str]] = None,
) -> np.ndarray:
    """Spectre d'amplitude |X[k]|, k < N/2 (helper allouant, hors temps réel)."""
    samples = np.asarray(samples, dtype=np.float64)
    buf = SpectrumBuffer(size or next_power_of_two(samples.size), window)
    buf.load(samples)
    buf.transform()
    return buf.compute_magnitude().copy()


def power_spectrum(
    samples: np.ndarray,
    size: Optional[int] = None,
    window: Optional[Union[WindowType, str]] = None,
) -> np.ndarray:
    samples = np.asarray(samples, dtype=np.float64)
    buf = SpectrumBuffer(size or next_power_of_two(samples.size), window)
    buf.load(samples)
    buf.transform()
    return buf.compute_power().copy()


# ============================================================
# Interpolation parabolique
# ============================================================

def parabolic_interpolation(y0: float, y1: float, y2: float) -> Tuple[float, float]:
    """
    Parabole passant par 3 points autour d'un pic discret.

        δ     = 0.5 · (y0 − y2) / (y0 − 2·y1 + y2)
        value = y1 − 0.25 · (y0 − y2) · δ

    Dénominateur quasi nul (plateau) → (0, y1) : index non raffiné.
    """
    denom = y0 - 2.0 * y1 + y2
    if abs(denom) < EPS:
        return 0.0, float(y1)
    delta = 0.5 * (y0 - y2) / denom
    return float(delta), float(y1 - 0.25 * (y0 - y2) * delta)


def refine_peak(values: np.ndarray, index: int) -> Tuple[float, float]:
    """Position raffinée (i + δ) et valeur du pic ; les bords ne sont pas raffinés."""
    if index <= 0 or index >= len(values) - 1:
        return float(index), float(values[index])
    delta, value = parabolic_interpolation(values[index - 1], values[index], values[index + 1])
    return index + delta, value
