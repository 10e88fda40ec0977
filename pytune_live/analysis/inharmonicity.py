# pytune_live/analysis/inharmonicity.py

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional, Tuple

import numpy as np

from pytune_live.types.dataclasses import InharmonicityCorrection
from pytune_live.types.schemas import ConfigurationError
from pytune_live.utils.instruments import INSTRUMENT_TABLE, bands_for, lookup_B

logger = logging.getLogger(__name__)


class InharmonicityCorrector:
    """
    Correction d'inharmonicité des cordes raides.

    Modèle : f_n = n · f0 · sqrt(1 + B · n²). Le premier partiel mesuré vaut
    donc f0 · sqrt(1 + B) ; on le ramène à f0, l'écart en cents étant pondéré
    par min(1, confiance) (correction partielle si la mesure est douteuse).
    """

    def __init__(self, instrument: str = "default"):
        self.instrument = "default"
        self.set_instrument(instrument)

    def set_instrument(self, instrument: str) -> None:
        key = instrument.strip().lower() if isinstance(instrument, str) else None
        if key not in INSTRUMENT_TABLE:
            raise ConfigurationError(f"Unknown instrument: {instrument!r}")
        if key != self.instrument:
            logger.info("Inharmonicity model: %s", key)
        self.instrument = key

    @property
    def bands(self):
        return bands_for(self.instrument)

    def b_factor(self, freq: float) -> float:
        return lookup_B(self.instrument, freq)

    def resolve_b(self, measured_freq: float) -> float:
        """
        B de la bande qui contient le fondamental corrigé f / √(1+B), pas la mesure.

        Près d'une frontière, la mesure peut tomber dans la bande voisine ; le
        modèle direct n'étant pas injectif (B décroît vers l'aigu), deux bandes
        peuvent être cohérentes : on retient alors le B le plus fort.
        Aucune bande cohérente (hors plages) → bande la plus proche de la mesure.
        """
        consistent = [
            band.B for band in self.bands
            if band.B > 0.0 and band.contains(measured_freq / math.sqrt(1.0 + band.B))
        ]
        if consistent:
            return max(consistent)
        return self.b_factor(measured_freq)

    def correct(self, measured_freq: float, confidence: float = 1.0) -> InharmonicityCorrection:
        B = self.resolve_b(measured_freq)
        if B == 0.0:
            return InharmonicityCorrection(frequency=measured_freq)

        correction_factor = math.sqrt(1.0 + B)
        raw_offset = 1200.0 * math.log2(correction_factor)
        offset = raw_offset * min(1.0, max(0.0, confidence))
        return InharmonicityCorrection(
            frequency=measured_freq / 2.0 ** (offset / 1200.0),
            offset_cents=offset,
            raw_offset_cents=raw_offset,
            B=B,
            correction_factor=correction_factor,
        )

    def calculate_harmonic(self, f0: float, n: int, B: Optional[float] = None) -> float:
        """Fréquence du partiel n (modèle direct) ; B de la bande de f0 par défaut."""
        if B is None:
            B = self.b_factor(f0)
        return n * f0 * math.sqrt(1.0 + B * n * n)


def estimate_b(f0: float, partials: Iterable[Tuple[int, float]], min_rank: int = 2) -> Optional[float]:
    """
    B ajusté sur des partiels repérés (rang n, fréquence f_n), par exemple ceux
    de la série harmonique du bloc :

        (f_n / (n · f0))² − 1 = B · n²      (moindres carrés, sans constante)

    Le rang 1 est écarté par défaut (il porte le biais de f0 lui-même).
    None si moins de deux partiels exploitables.
    """
    if f0 <= 0:
        return None
    usable = [(n, f) for n, f in partials if n >= min_rank and f > 0]
    if len(usable) < 2:
        return None

    n = np.array([p[0] for p in usable], dtype=np.float64)
    f = np.array([p[1] for p in usable], dtype=np.float64)
    x = n * n
    y = (f / (n * f0)) ** 2 - 1.0
    return float(np.dot(x, y) / np.dot(x, x))
