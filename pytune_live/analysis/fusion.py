# pytune_live/analysis/fusion.py

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from pytune_live.types.dataclasses import (
    CQTPeak,
    InvalidObservation,
    PitchObservation,
    ValidObservation,
    observation,
)
from pytune_live.types.enums import ObservationSource

# accord entre estimateurs (cents)
AGREEMENT_CENTS = 50.0
# amplitude CQT donnant une confiance pleine
CQT_FULL_SCALE = 0.1

# poids par estimateur (les deux votes temporels dominent)
SOURCE_WEIGHTS = {
    ObservationSource.YIN: 1.5,
    ObservationSource.NSDF: 1.5,
    ObservationSource.SPECTRAL: 1.0,
    ObservationSource.CQT: 0.8,
}


def _weighted_median(values: np.ndarray, weights: np.ndarray) -> float:
    """Médiane pondérée (robuste)."""
    if values.size == 0:
        return 0.0
    order = np.argsort(values)
    v = values[order]
    w = weights[order]
    cw = np.cumsum(w) / np.sum(w)
    j = np.searchsorted(cw, 0.5)
    return float(v[min(j, len(v) - 1)])


def cqt_observation(peak: CQTPeak) -> PitchObservation:
    return observation(peak.frequency, min(1.0, peak.magnitude / CQT_FULL_SCALE), ObservationSource.CQT)


def _time_domain_consensus(
    valid: Sequence[ValidObservation], cents: np.ndarray, weights: np.ndarray
) -> Optional[float]:
    """Centre (cents) de YIN + NSDF s'ils s'accordent à ±50 cents, sinon None."""
    sources = [c.source for c in valid]
    if ObservationSource.YIN not in sources or ObservationSource.NSDF not in sources:
        return None
    i = sources.index(ObservationSource.YIN)
    j = sources.index(ObservationSource.NSDF)
    if abs(cents[i] - cents[j]) > AGREEMENT_CENTS:
        return None
    return float(np.average(cents[[i, j]], weights=weights[[i, j]]))


def fuse_candidates(candidates: Sequence[ValidObservation]) -> PitchObservation:
    """
    Estimation grossière en cents.

    Centre : accord YIN / NSDF s'il existe, sinon médiane pondérée de tous les
    candidats (poids = confiance × poids de l'estimateur).
    La confiance fusionnée est la meilleure confiance des candidats en accord
    (±50 cents) avec le centre, pondérée par la part de poids qu'ils représentent.
    """
    valid = [c for c in candidates if c.is_valid]
    if not valid:
        return InvalidObservation(ObservationSource.FUSED, "no candidate")
    if len(valid) == 1:
        c = valid[0]
        return observation(c.frequency, c.confidence, ObservationSource.FUSED)

    freqs = np.array([c.frequency for c in valid], dtype=np.float64)
    confidences = np.array([c.confidence for c in valid], dtype=np.float64)
    weights = confidences * np.array([SOURCE_WEIGHTS.get(c.source, 1.0) for c in valid])
    cents = 1200.0 * np.log2(freqs)

    centre = _time_domain_consensus(valid, cents, weights)
    if centre is None:
        centre = _weighted_median(cents, weights)
    agree = np.abs(cents - centre) <= AGREEMENT_CENTS
    share = float(weights[agree].sum() / weights.sum())
    confidence = float(confidences[agree].max()) * share

    # moyenne pondérée des candidats en accord, en cents
    freq = float(2.0 ** (np.average(cents[agree], weights=weights[agree]) / 1200.0))
    return observation(freq, confidence, ObservationSource.FUSED)
