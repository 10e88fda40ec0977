# pytune_live/analysis/cqt.py
"""
Transformée à Q constant (CQT) : analyse sur axe log-fréquence.

Banc de noyaux construit une seule fois :
    f_k = min_freq · 2^(k / bins_per_octave)
    Q   = 1 / (2^(1/bpo) − 1)
    L_k = ceil(Q · sr / f_k)
    K_k[n] = hamming(L_k)[n] · e^{−j2π f_k n / sr} / L_k

`analyze(buffer)` corrèle les L_k échantillons les plus récents avec chaque
noyau. Les noyaux plus longs que le buffer donnent 0 (bin ignoré).
"""

from __future__ import annotations

import logging
import math
from typing import List

import numpy as np
from scipy.signal import get_window

from pytune_live.analysis.spectral import refine_peak
from pytune_live.types.dataclasses import CQTPeak, CQTResult

logger = logging.getLogger(__name__)

MAX_PEAKS = 10


class CQTAnalyzer:
    def __init__(
        self,
        sample_rate: int = 48000,
        min_freq: float = 27.5,
        max_freq: float = 4186.0,
        bins_per_octave: int = 48,
    ):
        if min_freq <= 0 or max_freq <= min_freq:
            raise ValueError(f"invalid CQT range: {min_freq}–{max_freq} Hz")
        self.sample_rate = int(sample_rate)
        self.min_freq = float(min_freq)
        self.max_freq = float(max_freq)
        self.bins_per_octave = int(bins_per_octave)

        n_octaves = math.ceil(math.log2(self.max_freq / self.min_freq))
        self.num_bins = n_octaves * self.bins_per_octave
        self.Q = 1.0 / (2.0 ** (1.0 / self.bins_per_octave) - 1.0)

        self.frequencies = self.min_freq * 2.0 ** (np.arange(self.num_bins) / self.bins_per_octave)
        self.frequencies.setflags(write=False)
        self._kernels: List[np.ndarray] = [self._make_kernel(f) for f in self.frequencies]
        self._spectrum = np.zeros(self.num_bins, dtype=np.float64)

        logger.debug(
            "CQT kernel bank: %d bins, %.1f–%.1f Hz, longest kernel %d samples",
            self.num_bins, self.min_freq, self.frequencies[-1], self._kernels[0].size,
        )

    def _make_kernel(self, freq: float) -> np.ndarray:
        length = int(math.ceil(self.Q * self.sample_rate / freq))
        n = np.arange(length)
        window = get_window("hamming", length, fftbins=False)
        kernel = window * np.exp(-2j * np.pi * freq * n / self.sample_rate) / length
        return kernel.astype(np.complex64)

    @property
    def kernel_lengths(self) -> np.ndarray:
        return np.array([k.size for k in self._kernels], dtype=np.int64)

    def frequency_for_bin(self, b: float) -> float:
        return self.min_freq * 2.0 ** (b / self.bins_per_octave)

    def bin_for_frequency(self, freq: float) -> float:
        return self.bins_per_octave * math.log2(freq / self.min_freq)

    # ────────────────────────────────────────────────────────────────────
    def analyze(self, buffer: np.ndarray) -> CQTResult:
        """
        Spectre CQT du buffer + pics (top 10, amplitude décroissante).
        Le tableau `spectrum` est réutilisé d'un appel à l'autre.
        """
        n = buffer.size
        spectrum = self._spectrum
        for k, kernel in enumerate(self._kernels):
            size = kernel.size
            if size > n:
                spectrum[k] = 0.0
                continue
            spectrum[k] = abs(np.dot(buffer[n - size:], kernel))
        return CQTResult(spectrum=spectrum, frequencies=self.frequencies, peaks=self.find_peaks(spectrum))

    def find_peaks(self, spectrum: np.ndarray) -> List[CQTPeak]:
        if spectrum.size < 5:
            return []
        threshold = max(3.0 * float(spectrum.mean()), 0.1 * float(spectrum.max()))

        s = spectrum
        centre = s[2:-2]
        mask = (
            (centre > s[1:-3]) & (centre > s[3:-1])
            & (centre > s[:-4]) & (centre > s[4:])
            & (centre > threshold)
        )
        peaks = []
        for i in np.flatnonzero(mask) + 2:
            b, mag = refine_peak(s, int(i))
            peaks.append(CQTPeak(bin=b, frequency=self.frequency_for_bin(b), magnitude=mag))

        peaks.sort(key=lambda p: p.magnitude, reverse=True)
        return peaks[:MAX_PEAKS]
