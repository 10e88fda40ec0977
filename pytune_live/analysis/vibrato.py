# pytune_live/analysis/vibrato.py
"""Détection de vibrato sur l'historique récent des fréquences de sortie."""

from __future__ import annotations

from collections import deque
from typing import Optional

import numpy as np

from pytune_live.types.dataclasses import VibratoState

NO_VIBRATO = VibratoState()


class VibratoDetector:
    """
    Profondeur = écart max en cents autour de la moyenne des `window` dernières
    trames ; vitesse = passages par zéro / (2 · durée).
    Vibrato si profondeur ≥ min_depth et min_rate ≤ vitesse ≤ max_rate.
    """

    def __init__(
        self,
        min_rate: float = 3.0,
        max_rate: float = 10.0,
        min_depth: float = 5.0,
        history: int = 30,
        window: int = 20,
        min_frames: int = 10,
    ):
        self.min_rate = min_rate
        self.max_rate = max_rate
        self.min_depth = min_depth
        self.window = window
        self.min_frames = min_frames
        self._freqs: deque = deque(maxlen=history)
        self._times: deque = deque(maxlen=history)
        self.state = NO_VIBRATO

    def reset(self) -> None:
        self._freqs.clear()
        self._times.clear()
        self.state = NO_VIBRATO

    def update(self, freq: Optional[float], timestamp: float) -> VibratoState:
        if freq is None or freq <= 0:
            self.reset()
            return self.state

        self._freqs.append(freq)
        self._times.append(timestamp)
        if len(self._freqs) < self.min_frames:
            self.state = NO_VIBRATO
            return self.state

        freqs = np.asarray(self._freqs, dtype=np.float64)[-self.window:]
        times = np.asarray(self._times, dtype=np.float64)[-self.window:]
        deviations = 1200.0 * np.log2(freqs / freqs.mean())
        depth = float(np.max(np.abs(deviations)))

        self.state = NO_VIBRATO
        duration = float(times[-1] - times[0])
        if depth >= self.min_depth and duration > 0:
            crossings = int(np.count_nonzero(deviations[1:] * deviations[:-1] < 0))
            rate = crossings / (2.0 * duration)
            if self.min_rate <= rate <= self.max_rate:
                self.state = VibratoState(detected=True, rate=rate, depth=depth)
        return self.state
