# pytune_live/analysis/harmonic.py
"""
Candidat spectral par série harmonique (fondamental fantôme).

On prend les pics dominants d'un spectre de Hann, puis on teste les hypothèses
f0 = f_max / d (d = 1..max_divisor) où f_max est le pic le plus fort :

    score(f0) = Σ a_p          si f_p / f0 est à ±tolerance d'un entier
              − 0.2 · Σ a_p    sinon          (a_p = amplitude relative au pic max)

Il faut au moins deux partiels alignés. À score égal, le plus petit diviseur
l'emporte (les sous-harmoniques expliquent toujours les mêmes pics).
Le fondamental n'a pas besoin d'être présent dans le spectre.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import numpy as np

from pytune_live.analysis.spectral import SpectrumBuffer, parabolic_interpolation
from pytune_live.types.dataclasses import HarmonicSeries, InvalidObservation, observation
from pytune_live.types.enums import ObservationSource, WindowType

logger = logging.getLogger(__name__)

EPS = 1e-12
_NONE = HarmonicSeries(InvalidObservation(ObservationSource.SPECTRAL, "no harmonic series"))


class HarmonicSeriesEstimator:
    def __init__(
        self,
        sample_rate: int = 48000,
        fft_size: int = 8192,
        min_freq: float = 50.0,
        max_freq: float = 2000.0,
        max_divisor: int = 5,
        top_peaks: int = 8,
        tolerance: float = 0.06,
        miss_penalty: float = 0.2,
    ):
        self.sample_rate = int(sample_rate)
        self.min_freq = float(min_freq)
        self.max_freq = float(max_freq)
        self.max_divisor = max_divisor
        self.top_peaks = top_peaks
        self.tolerance = tolerance
        self.miss_penalty = miss_penalty
        self._spec = SpectrumBuffer(fft_size, WindowType.HANNING)
        self.bin_width = self.sample_rate / float(fft_size)

    @property
    def fft_size(self) -> int:
        return self._spec.size

    # ==== Pics =========================================================
    def find_peaks(self, mag: np.ndarray) -> List[Tuple[float, float]]:
        """(Hz, amplitude) des `top_peaks` maxima locaux au-dessus de max(3·moyenne, 0.1·max)."""
        if mag.size < 5:
            return []
        threshold = max(3.0 * float(mag.mean()), 0.1 * float(mag.max()))
        if threshold <= 0:
            return []
        inner = mag[2:-2]
        is_peak = (inner > mag[1:-3]) & (inner >= mag[3:-1]) & (inner >= threshold)
        idx = np.flatnonzero(is_peak) + 2
        idx = idx[np.argsort(mag[idx])[::-1][: self.top_peaks]]

        peaks = []
        for i in idx:
            # parabole sur log-amplitude
            y0, y1, y2 = np.log(mag[i - 1:i + 2] + EPS)
            delta, _ = parabolic_interpolation(y0, y1, y2)
            peaks.append(((i + delta) * self.bin_width, float(mag[i])))
        return peaks

    # ==== Hypothèses f0 = f_max / d =====================================
    def estimate(self, buffer: np.ndarray) -> HarmonicSeries:
        spec = self._spec
        spec.load_tail(buffer)
        frame = spec.analyze()
        peaks = self.find_peaks(frame.magnitude)
        if not peaks:
            return _NONE

        f_top, a_top = peaks[0]
        best = None
        for divisor in range(1, self.max_divisor + 1):
            f0 = f_top / divisor
            if f0 < self.min_freq:
                break
            if f0 > self.max_freq:
                continue
            score = 0.0
            support = 0.0
            partials = []
            for f, a in peaks:
                ratio = f / f0
                n = int(round(ratio))
                weight = a / a_top
                if n >= 1 and abs(ratio - n) < self.tolerance:
                    score += weight
                    support += weight
                    partials.append((n, f))
                else:
                    score -= weight * self.miss_penalty
            if len(partials) < 2:
                continue
            if best is None or score > best[0] + EPS:
                best = (score, divisor, f0, support, partials)

        if best is None:
            return _NONE
        score, divisor, f0, support, partials = best
        logger.debug("Harmonic series: f0=%.2f Hz (d=%d, %d partials, score=%.2f)", f0, divisor, len(partials), score)
        return HarmonicSeries(
            observation=observation(f0, min(1.0, support / 2.0), ObservationSource.SPECTRAL),
            divisor=divisor,
            partials=tuple(sorted(partials)),
        )
