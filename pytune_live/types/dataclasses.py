from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union
import math
import numpy as np

from pytune_live.types.enums import CalibrationPhase, NoiseState, ObservationSource

MIN_OBSERVATION_CONFIDENCE = 0.1


# ────────────────────────────────────────────────────────────────────────────
# Entrée : blocs d'échantillons
# ────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True, eq=False)
class SampleBlock:
    """
    Bloc mono de taille fixe, tel que fourni par la couche audio.
    Les échantillons sont copiés en float32 et verrouillés en lecture seule :
    le bloc est immuable une fois construit.
    """
    samples: np.ndarray
    sample_rate: int
    timestamp: float = 0.0

    def __post_init__(self):
        data = np.array(self.samples, dtype=np.float32, copy=True).reshape(-1)
        data.setflags(write=False)
        object.__setattr__(self, "samples", data)
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate invalide: {self.sample_rate}")

    @property
    def size(self) -> int:
        return int(self.samples.size)

    @property
    def duration(self) -> float:
        return self.size / float(self.sample_rate)


@dataclass(eq=False)
class SpectralFrame:
    """Vues sur les buffers d'un `SpectrumBuffer` ; réécrites à chaque bloc."""
    magnitude: np.ndarray
    phase: Optional[np.ndarray] = None


# ────────────────────────────────────────────────────────────────────────────
# Observations (variant étiqueté Valid | Invalid)
# ────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ValidObservation:
    frequency: float
    confidence: float
    source: ObservationSource = ObservationSource.HOST

    @property
    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class InvalidObservation:
    source: ObservationSource = ObservationSource.HOST
    reason: str = ""

    frequency = None
    confidence = 0.0

    @property
    def is_valid(self) -> bool:
        return False


PitchObservation = Union[ValidObservation, InvalidObservation]


def observation(
    frequency: Optional[float],
    confidence: float,
    source: ObservationSource = ObservationSource.HOST,
) -> PitchObservation:
    """Construit la bonne variante : f ≤ 0, non finie ou confiance < 0.1 → Invalid."""
    if frequency is None or not math.isfinite(frequency) or frequency <= 0:
        return InvalidObservation(source, "no frequency")
    if not math.isfinite(confidence) or confidence < MIN_OBSERVATION_CONFIDENCE:
        return InvalidObservation(source, "low confidence")
    return ValidObservation(float(frequency), float(min(confidence, 1.0)), source)


# ────────────────────────────────────────────────────────────────────────────
# Résultats par couche
# ────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class CQTPeak:
    bin: float
    frequency: float
    magnitude: float


@dataclass(frozen=True)
class HarmonicSeries:
    """Hypothèse de fondamental retenue et partiels qui la soutiennent."""
    observation: PitchObservation
    divisor: int = 0                              # pic dominant = partiel n° divisor
    partials: Tuple[Tuple[int, float], ...] = ()  # (rang, Hz)


@dataclass(eq=False)
class CQTResult:
    spectrum: np.ndarray
    frequencies: np.ndarray
    peaks: list[CQTPeak] = field(default_factory=list)


@dataclass(frozen=True)
class RefinedPitch:
    frequency: Optional[float]
    confidence: float
    bin: Optional[float] = None
    magnitude: float = 0.0
    method: str = "none"            # "phase_vocoder" | "parabolic" | "none"
    phase_velocity: float = 0.0     # Hz/s


@dataclass(frozen=True)
class InharmonicityCorrection:
    frequency: float
    offset_cents: float = 0.0
    raw_offset_cents: float = 0.0
    B: float = 0.0
    correction_factor: float = 1.0


@dataclass(frozen=True)
class InstrumentBand:
    name: str                     # "low" | "mid" | "high"
    B: float
    low: Optional[float] = None
    high: Optional[float] = None

    def contains(self, freq: float) -> bool:
        if self.low is None or self.high is None:
            return False
        return self.low <= freq < self.high


@dataclass(frozen=True)
class TrajectoryStats:
    num_states: int
    total_cents: float
    frame_count: int
    last_state: int
    last_freq: float
    smoothed_freq: float
    reacquisitions: int = 0


@dataclass(frozen=True)
class VibratoState:
    detected: bool = False
    rate: float = 0.0      # Hz
    depth: float = 0.0     # cents


@dataclass(frozen=True, eq=False)
class CalibrationStatus:
    phase: CalibrationPhase
    progress: float = 0.0
    frames: int = 0
    profile: Optional[np.ndarray] = None
    reason: Optional[str] = None


# ────────────────────────────────────────────────────────────────────────────
# Sortie fusionnée
# ────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class LayerDiagnostics:
    cqt_peaks: Tuple[CQTPeak, ...] = ()
    candidates: Tuple[ValidObservation, ...] = ()
    coarse: Optional[PitchObservation] = None
    harmonics: Optional[HarmonicSeries] = None
    refined: Optional[RefinedPitch] = None
    inharmonicity: Optional[InharmonicityCorrection] = None
    measured_b: Optional[float] = None
    trajectory: Optional[TrajectoryStats] = None
    noise_state: Optional[NoiseState] = None


@dataclass
class RawPitchResult:
    """Résultat brut du pipeline, avant mise en forme par le dispatcher."""
    frequency: Optional[float] = None
    confidence: float = 0.0
    rms: float = 0.0
    timestamp: Optional[float] = None
    phase_velocity: Optional[float] = None
    inharmonicity_offset: Optional[float] = None
    vibrato: Optional[VibratoState] = None
    layers: Optional[LayerDiagnostics] = None


@dataclass(frozen=True)
class UnifiedPitchFrame:
    frequency: Optional[float]
    confidence: float
    rms: float
    timestamp: float
    note: Optional[str]
    octave: Optional[int]
    cents: Optional[int]
    precise_cents: Optional[float]
    phase_velocity: float = 0.0
    inharmonicity_offset: float = 0.0
    vibrato: VibratoState = field(default_factory=VibratoState)
    layers: Optional[LayerDiagnostics] = None

    @property
    def has_pitch(self) -> bool:
        return self.frequency is not None
