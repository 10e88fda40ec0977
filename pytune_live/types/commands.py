"""
Commandes de contrôle : émises depuis le contexte non temps-réel (UI, hôte),
consommées par le moteur au début du bloc suivant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Union

import numpy as np

from pytune_live.types.schemas import EngineConfig


@dataclass(frozen=True)
class ApplyConfig:
    config: EngineConfig
    changed: FrozenSet[str]


@dataclass(frozen=True)
class StartCalibration:
    pass


@dataclass(frozen=True)
class StopCalibration:
    pass


@dataclass(frozen=True, eq=False)
class LoadNoiseProfile:
    profile: np.ndarray


@dataclass(frozen=True)
class SetBypass:
    bypass: bool


@dataclass(frozen=True)
class Reset:
    pass


EngineCommand = Union[ApplyConfig, StartCalibration, StopCalibration, LoadNoiseProfile, SetBypass, Reset]
