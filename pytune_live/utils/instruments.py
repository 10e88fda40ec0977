"""
Tables d'inharmonicité par instrument.

Modèle de corde raide : f_n = n · f0 · sqrt(1 + B · n²).
Trois bandes par instrument (low / mid / high), chaque bande [low, high).
Les vents et la voix n'ont pas d'inharmonicité (B = 0, pas de plage).
"""

from __future__ import annotations

from typing import Dict, Tuple

from pytune_live.types.dataclasses import InstrumentBand

BandTable = Tuple[InstrumentBand, InstrumentBand, InstrumentBand]


def _bands(low: tuple, mid: tuple, high: tuple) -> BandTable:
    return (
        InstrumentBand("low", low[0], low[1], low[2]),
        InstrumentBand("mid", mid[0], mid[1], mid[2]),
        InstrumentBand("high", high[0], high[1], high[2]),
    )


def _no_inharmonicity() -> BandTable:
    return (InstrumentBand("low", 0.0), InstrumentBand("mid", 0.0), InstrumentBand("high", 0.0))


INSTRUMENT_TABLE: Dict[str, BandTable] = {
    # Piano : cordes filées très raides dans le grave, cordes nues dans l'aigu
    "piano": _bands((0.0004, 27.5, 110.0), (0.00012, 110.0, 880.0), (0.00004, 880.0, 4200.0)),
    "guitar": _bands((0.00012, 82.0, 165.0), (0.00008, 165.0, 660.0), (0.00003, 660.0, 1320.0)),
    "electric_guitar": _bands((0.00010, 82.0, 165.0), (0.00006, 165.0, 660.0), (0.00002, 660.0, 1320.0)),
    "bass": _bands((0.00025, 41.0, 82.0), (0.00015, 82.0, 330.0), (0.00005, 330.0, 660.0)),
    "violin": _bands((0.000015, 196.0, 440.0), (0.00001, 440.0, 1760.0), (0.000005, 1760.0, 3520.0)),
    "cello": _bands((0.00006, 65.0, 220.0), (0.00003, 220.0, 880.0), (0.00001, 880.0, 1760.0)),
    "viola": _bands((0.00003, 130.0, 440.0), (0.000015, 440.0, 1320.0), (0.000008, 1320.0, 2640.0)),
    "contrabass": _bands((0.0003, 41.0, 98.0), (0.00015, 98.0, 294.0), (0.00005, 294.0, 587.0)),
    "harp": _bands((0.00008, 32.0, 131.0), (0.00004, 131.0, 1047.0), (0.00002, 1047.0, 3136.0)),
    # vents / voix
    "flute": _no_inharmonicity(),
    "clarinet": _no_inharmonicity(),
    "oboe": _no_inharmonicity(),
    "bassoon": _no_inharmonicity(),
    "trumpet": _no_inharmonicity(),
    "trombone": _no_inharmonicity(),
    "french_horn": _no_inharmonicity(),
    "tuba": _no_inharmonicity(),
    "saxophone": _no_inharmonicity(),
    "voice": _no_inharmonicity(),
    "default": _no_inharmonicity(),
}


def bands_for(instrument: str) -> BandTable:
    return INSTRUMENT_TABLE.get(instrument, INSTRUMENT_TABLE["default"])


def lookup_B(instrument: str, freq: float) -> float:
    """
    B pour la bande contenant `freq`. Hors de toutes les plages, on prend la bande
    la plus proche (low sous la plage basse, high au-dessus).
    """
    bands = bands_for(instrument)
    for band in bands:
        if band.contains(freq):
            return band.B
    ranged = [b for b in bands if b.low is not None and b.high is not None]
    if not ranged:
        return bands[0].B

    def distance(band: InstrumentBand) -> float:
        return band.low - freq if freq < band.low else freq - band.high

    return min(ranged, key=distance).B
