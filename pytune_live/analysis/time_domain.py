# pytune_live/analysis/time_domain.py
"""
Estimateurs temporels, indépendants du CQT :

- YIN via librosa, une seule trame par bloc (frame_length = hop_length = taille
  du bloc, center=False). YIN ne fournit pas de confiance : on prend la
  corrélation normalisée du bloc avec lui-même décalé d'une période.
- McLeod (NSDF) : fonction de différence carrée normalisée sur la première
  moitié du bloc, premier maximum « clé » au-dessus de k · max.
"""

from __future__ import annotations

import logging
import math

import librosa
import numpy as np

from pytune_live.analysis.spectral import parabolic_interpolation
from pytune_live.types.dataclasses import InvalidObservation, PitchObservation, observation
from pytune_live.types.enums import ObservationSource

logger = logging.getLogger(__name__)


def yin_search_range(sr: int, frame_length: int, fmin: float, fmax: float) -> tuple[float, float]:
    """
    (fmin, fmax) admissibles par librosa pour cette taille de trame :
    la période max doit tenir dans frame_length − win_length, fmax sous Nyquist.
    """
    win_length = frame_length // 2
    fmin_feasible = sr / (frame_length - win_length - 1) * 1.01
    return max(fmin, fmin_feasible), min(fmax, sr / 2.0 * 0.99)


def periodicity(samples: np.ndarray, period: float) -> float:
    """Corrélation normalisée x[n]·x[n+T], bornée à [0, 1]."""
    lag = int(round(period))
    n = samples.size - lag
    if lag <= 0 or n <= 0:
        return 0.0
    a = samples[:n].astype(np.float64)
    b = samples[lag:].astype(np.float64)
    denom = math.sqrt(float(np.dot(a, a)) * float(np.dot(b, b)))
    if denom <= 0:
        return 0.0
    return min(1.0, max(0.0, float(np.dot(a, b)) / denom))


class YinEstimator:
    def __init__(self, sample_rate: int = 48000, min_freq: float = 50.0, max_freq: float = 2000.0):
        self.sample_rate = int(sample_rate)
        self.min_freq = float(min_freq)
        self.max_freq = float(max_freq)

    def estimate(self, samples: np.ndarray) -> PitchObservation:
        frame_length = int(samples.size)
        if frame_length < 64:
            return InvalidObservation(ObservationSource.YIN, "block too short")

        fmin, fmax = yin_search_range(self.sample_rate, frame_length, self.min_freq, self.max_freq)
        if fmin >= fmax:
            return InvalidObservation(ObservationSource.YIN, "block too short for range")

        f0 = librosa.yin(
            samples,
            fmin=fmin,
            fmax=fmax,
            sr=self.sample_rate,
            frame_length=frame_length,
            win_length=frame_length // 2,
            hop_length=frame_length,
            center=False,
        )
        freq = float(f0[0]) if f0.size else 0.0
        if not math.isfinite(freq) or freq <= 0:
            return InvalidObservation(ObservationSource.YIN, "no period found")

        confidence = periodicity(samples, self.sample_rate / freq)
        return observation(freq, confidence, ObservationSource.YIN)


# ============================================================
# McLeod Pitch Method (NSDF)
# ============================================================

def nsdf(samples: np.ndarray) -> np.ndarray:
    """
    NSDF de type II sur une fenêtre de W = N/2 échantillons, τ ∈ [0, W) :

        n(τ) = 2 · Σ x[i]·x[i+τ] / Σ (x[i]² + x[i+τ]²),   i < W

    Le dénominateur vient des sommes cumulées des carrés.
    """
    x = np.asarray(samples, dtype=np.float64)
    w = x.size // 2
    acf = np.correlate(x, x[:w], mode="valid")[:w]
    energy = np.concatenate(([0.0], np.cumsum(x * x)))
    tau = np.arange(w)
    m = energy[w] + energy[tau + w] - energy[tau]
    out = np.zeros(w, dtype=np.float64)
    np.divide(2.0 * acf, m, out=out, where=m > 0)
    return out


class NsdfEstimator:
    """
    Second vote temporel à côté de YIN.

    Parmi les maxima locaux positifs de la NSDF dans la plage de périodes,
    on garde le premier qui atteint `key_threshold` · (plus grand maximum) :
    les multiples de la période, presque aussi hauts, sont ainsi écartés.
    La clarté (hauteur du pic interpolé) sert de confiance.
    """

    def __init__(
        self,
        sample_rate: int = 48000,
        min_freq: float = 50.0,
        max_freq: float = 2000.0,
        key_threshold: float = 0.93,
        min_clarity: float = 0.5,
    ):
        self.sample_rate = int(sample_rate)
        self.min_freq = float(min_freq)
        self.max_freq = float(max_freq)
        self.key_threshold = key_threshold
        self.min_clarity = min_clarity

    def lag_range(self, block_size: int) -> tuple[int, int]:
        w = block_size // 2
        lo = max(1, int(self.sample_rate / self.max_freq))
        hi = min(int(math.ceil(self.sample_rate / self.min_freq)), w - 2)
        return lo, hi

    def estimate(self, samples: np.ndarray) -> PitchObservation:
        lo, hi = self.lag_range(int(samples.size))
        if samples.size < 64 or lo >= hi:
            return InvalidObservation(ObservationSource.NSDF, "block too short for range")

        curve = nsdf(samples)
        mid = curve[lo:hi + 1]
        is_peak = (mid > curve[lo - 1:hi]) & (mid >= curve[lo + 1:hi + 2]) & (mid > 0)
        peaks = np.flatnonzero(is_peak) + lo
        if peaks.size == 0:
            return InvalidObservation(ObservationSource.NSDF, "no period found")

        highest = float(curve[peaks].max())
        if highest < self.min_clarity:
            return InvalidObservation(ObservationSource.NSDF, "low clarity")
        tau = int(peaks[np.argmax(curve[peaks] >= self.key_threshold * highest)])

        delta, clarity = parabolic_interpolation(curve[tau - 1], curve[tau], curve[tau + 1])
        return observation(self.sample_rate / (tau + delta), min(1.0, clarity), ObservationSource.NSDF)
