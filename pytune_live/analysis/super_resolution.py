# pytune_live/analysis/super_resolution.py
"""
Super-résolution par phase vocoder (fréquence instantanée).

À partir d'une estimation grossière :
1) FFT fenêtrée (Hann) des `fft_size` échantillons les plus récents,
2) pic d'amplitude dans ±5 bins autour de round(f_coarse / bw),
3) raffinement parabolique (sous-bin),
4) si la phase de la trame précédente est connue :
       f_inst = k·bw + wrap(Δφ − 2π·hop·k/N) · sr / (2π·hop)
   sinon : fréquence parabolique seule.

Aucune détection grossière ici : sans `coarse_freq` valide, pas de résultat.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from pytune_live.analysis.spectral import SpectrumBuffer, is_power_of_two, refine_peak
from pytune_live.types.dataclasses import RefinedPitch
from pytune_live.types.enums import WindowType

logger = logging.getLogger(__name__)

SEARCH_BINS = 5
CONFIDENCE_NEIGHBOURS = 3
CONFIDENCE_SCALE = 5.0

_NO_PITCH = RefinedPitch(frequency=None, confidence=0.0)


class PhaseVocoder:
    def __init__(self, sample_rate: int = 48000, fft_size: int = 4096, hop_size: int = 256):
        if not is_power_of_two(fft_size):
            raise ValueError(f"fft_size must be a power of two (got {fft_size})")
        if hop_size <= 0:
            raise ValueError(f"hop_size must be > 0 (got {hop_size})")
        self.sample_rate = int(sample_rate)
        self.fft_size = int(fft_size)
        self.hop_size = int(hop_size)
        self.bin_width = self.sample_rate / self.fft_size
        self._expected_step = 2.0 * math.pi * self.hop_size / self.fft_size

        self._spec = SpectrumBuffer(self.fft_size, WindowType.HANNING)
        self._prev_phase = np.zeros(self._spec.half, dtype=np.float64)
        self._has_prev = False
        self._last_freq: Optional[float] = None

    @property
    def has_phase_history(self) -> bool:
        return self._has_prev

    def forget(self) -> None:
        """Oublie la phase précédente (trame sans estimation, changement de note…)."""
        self._has_prev = False
        self._last_freq = None

    reset = forget

    def refine(self, buffer: np.ndarray, coarse_freq: Optional[float]) -> RefinedPitch:
        if coarse_freq is None or not math.isfinite(coarse_freq) or coarse_freq <= 0:
            return _NO_PITCH

        spec = self._spec
        spec.load_tail(buffer)
        frame = spec.analyze()
        mag, phase = frame.magnitude, frame.phase

        centre = int(round(coarse_freq / self.bin_width))
        lo = max(1, centre - SEARCH_BINS)
        hi = min(spec.half - 2, centre + SEARCH_BINS)
        if lo > hi:
            logger.debug("Coarse frequency %.2f Hz outside the FFT range", coarse_freq)
            return _NO_PITCH

        peak = lo + int(np.argmax(mag[lo:hi + 1]))
        peak_mag = float(mag[peak])
        refined_bin, _ = refine_peak(mag, peak)

        if self._has_prev:
            residual = phase[peak] - self._prev_phase[peak] - self._expected_step * peak
            residual = math.remainder(residual, 2.0 * math.pi)
            freq = peak * self.bin_width + residual * self.sample_rate / (2.0 * math.pi * self.hop_size)
            method = "phase_vocoder"
        else:
            freq = refined_bin * self.bin_width
            method = "parabolic"

        velocity = 0.0
        if self._last_freq is not None:
            velocity = (freq - self._last_freq) * self.sample_rate / self.hop_size

        self._prev_phase[:] = phase
        self._has_prev = True
        self._last_freq = freq

        return RefinedPitch(
            frequency=float(freq),
            confidence=self._confidence(mag, peak, peak_mag),
            bin=float(refined_bin),
            magnitude=peak_mag,
            method=method,
            phase_velocity=float(velocity),
        )

    @staticmethod
    def _confidence(mag: np.ndarray, peak: int, peak_mag: float) -> float:
        lo = max(0, peak - CONFIDENCE_NEIGHBOURS)
        hi = min(mag.size - 1, peak + CONFIDENCE_NEIGHBOURS)
        count = hi - lo
        if count <= 0:
            return 0.0
        avg = (float(mag[lo:hi + 1].sum()) - peak_mag) / count
        if avg <= 0:
            return 0.0
        return min(1.0, (peak_mag / avg) / CONFIDENCE_SCALE)
