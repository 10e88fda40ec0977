from __future__ import annotations

import math
from typing import NamedTuple, Optional

NOTE_NAMES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")


class PitchInfo(NamedTuple):
    note: str
    octave: int
    cents: int
    precise_cents: float


def cents_between(f1: float, f2: float) -> float:
    """Écart de f2 par rapport à f1, en cents."""
    return 1200.0 * math.log2(f2 / f1)


def pitch_info(freq: Optional[float], a4: float = 440.0) -> Optional[PitchInfo]:
    """
    Nom de note, octave et écart en cents pour une fréquence.

        semitones = 12 · log2(f / A4), arrondi au demi-ton le plus proche,
        reste × 100 → cents (entier) et cents précis (0.1 cent).

    Retourne None pour une fréquence absente, nulle ou non finie.
    """
    if freq is None or not math.isfinite(freq) or freq <= 0:
        return None
    semitones = 12.0 * math.log2(freq / a4)
    rounded = int(round(semitones))
    cents_raw = (semitones - rounded) * 100.0

    # A4 = index 9 de l'octave 4
    note_index = (rounded + 9) % 12
    octave = (rounded + 9) // 12 + 4

    return PitchInfo(
        note=NOTE_NAMES[note_index],
        octave=octave,
        cents=int(round(cents_raw)),
        precise_cents=round(cents_raw, 1),
    )
