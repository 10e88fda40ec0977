"""
PyTune Live : suivi de hauteur temps réel
-----------------------------------------

Estimation, suivi et raffinement de la fréquence fondamentale d'un signal
monophonique, bloc par bloc, avec une précision sous le cent :
- réduction de bruit par soustraction spectrale (calibrée sur le silence),
- analyse CQT + YIN, fusion des candidats,
- super-résolution par phase vocoder (fréquence instantanée),
- correction d'inharmonicité par instrument,
- lissage de trajectoire par décodage de Viterbi,
- diffusion de trames unifiées aux abonnés.

Structure :
    analysis/   → spectral, cqt, super_resolution, inharmonicity, time_domain, fusion, vibrato
    core/       → noise, viterbi, dispatcher, engine, handoff
    types/      → dataclasses, enums, commands, schemas (pydantic)
    utils/      → note_utils, instruments
"""

from .core.dispatcher import SubscriptionToken, UnifiedPitchDispatcher
from .core.engine import PitchEngine
from .core.handoff import BlockChannel, EngineWorker
from .types.dataclasses import CalibrationStatus, SampleBlock, UnifiedPitchFrame
from .types.schemas import ConfigurationError, EngineConfig

__all__ = [
    "PitchEngine",
    "EngineConfig",
    "ConfigurationError",
    "SampleBlock",
    "UnifiedPitchFrame",
    "CalibrationStatus",
    "UnifiedPitchDispatcher",
    "SubscriptionToken",
    "BlockChannel",
    "EngineWorker",
]
