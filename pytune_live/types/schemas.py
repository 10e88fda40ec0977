# pytune_live/types/schemas.py
from __future__ import annotations

from typing import Any, FrozenSet, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from pytune_live.utils.instruments import INSTRUMENT_TABLE


class ConfigurationError(ValueError):
    """Configuration rejetée à la frontière ; la configuration précédente reste active."""


def _noise_fft_size(buffer_size: int) -> int:
    return 1 << (int(buffer_size) - 1).bit_length()


# ────────────────────────────────────────────────────────────────────────────
# Configuration du moteur
# ────────────────────────────────────────────────────────────────────────────
class EngineConfig(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    # Flux audio
    sample_rate: int = Field(48000, description="Sample rate of submitted blocks (Hz)")
    buffer_size: int = Field(4096, ge=256, le=65536, description="Samples per block")
    history_size: int = Field(32768, ge=1024, description="Rolling analysis buffer (samples)")

    # Plage de suivi
    min_freq: float = Field(50.0, gt=0, description="Lowest tracked frequency (Hz)")
    max_freq: float = Field(2000.0, gt=0, description="Highest tracked frequency (Hz)")
    a4: float = Field(440.0, ge=380.0, le=500.0, description="Reference pitch (Hz)")

    # CQT
    bins_per_octave: int = Field(48, ge=12, le=120)

    # Phase vocoder
    refiner_fft_size: int = Field(4096, description="FFT size of the super-resolution layer")

    # Viterbi
    cents_per_state: float = Field(10.0, gt=0, le=100)
    max_transition_cents: float = Field(100.0, gt=0)
    fast_passage_threshold: float = Field(50.0, gt=0)
    smoothing_alpha: float = Field(0.7, gt=0, le=1)

    # Débruitage
    calibration_frames: int = Field(30, ge=1, le=1000)
    over_subtraction: float = Field(1.5, ge=0, le=10)
    spectral_floor: float = Field(0.002, ge=0, le=1)
    calibration_gate_rms: Optional[float] = Field(None, gt=0)
    bypass_noise: bool = False
    noise_profile: Optional[List[float]] = None

    # Divers
    instrument: str = "default"
    rms_threshold: float = Field(0.003, ge=0)

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        if not (8000 <= v <= 192000):
            raise ValueError(f"Unsupported sample rate: {v}")
        return v

    @field_validator("refiner_fft_size")
    @classmethod
    def validate_power_of_two(cls, v: int) -> int:
        if v < 256 or v & (v - 1):
            raise ValueError(f"refiner_fft_size must be a power of two >= 256, got {v}")
        return v

    @field_validator("instrument")
    @classmethod
    def validate_instrument(cls, v: str) -> str:
        key = v.strip().lower()
        if key not in INSTRUMENT_TABLE:
            raise ValueError(f"Unknown instrument: {v!r}")
        return key

    @model_validator(mode="before")
    @classmethod
    def _expand_ranges(cls, data: Any) -> Any:
        """Accepte `ranges=(fmin, fmax)` comme raccourci pour min_freq / max_freq."""
        if isinstance(data, dict) and "ranges" in data:
            data = dict(data)
            lo, hi = data.pop("ranges")
            data["min_freq"], data["max_freq"] = lo, hi
        return data

    @model_validator(mode="after")
    def _check_consistency(self) -> "EngineConfig":
        if self.min_freq >= self.max_freq:
            raise ValueError(f"min_freq ({self.min_freq}) must be < max_freq ({self.max_freq})")
        if self.max_freq >= self.sample_rate / 2:
            raise ValueError(f"max_freq ({self.max_freq}) must be below Nyquist ({self.sample_rate / 2})")
        if self.fast_passage_threshold > self.max_transition_cents:
            raise ValueError("fast_passage_threshold cannot exceed max_transition_cents")
        if self.history_size < self.buffer_size:
            raise ValueError("history_size must hold at least one block")
        if self.noise_profile is not None:
            expected = self.noise_fft_size // 2
            if len(self.noise_profile) != expected:
                raise ValueError(
                    f"noise_profile length {len(self.noise_profile)} != {expected} (buffer_size {self.buffer_size})"
                )
        return self

    @property
    def noise_fft_size(self) -> int:
        return _noise_fft_size(self.buffer_size)

    # ────────────────────────────────────────────────────────────────────
    def merged(self, update: Mapping[str, Any]) -> Tuple["EngineConfig", FrozenSet[str]]:
        """
        Fusionne une mise à jour partielle (snake_case ou camelCase).
        Les champs absents gardent leur valeur. Retourne (config, champs modifiés).
        Lève ConfigurationError sans toucher à `self` si la mise à jour est invalide.
        """
        names = {}
        for name, info in type(self).model_fields.items():
            names[name] = name
            if info.alias:
                names[info.alias] = name

        data = self.model_dump()
        # un profil de bruit n'est appliqué qu'une fois, jamais rejoué implicitement
        data["noise_profile"] = None
        touched = set()
        for key, value in update.items():
            if key == "ranges":
                try:
                    data["min_freq"], data["max_freq"] = value
                except (TypeError, ValueError) as exc:
                    raise ConfigurationError(f"ranges must be a (min, max) pair, got {value!r}") from exc
                touched.update(("min_freq", "max_freq"))
                continue
            if key not in names:
                raise ConfigurationError(f"Unknown configuration field: {key!r}")
            data[names[key]] = value
            touched.add(names[key])

        try:
            candidate = type(self).model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

        changed = frozenset(
            name for name in touched
            if name == "noise_profile" or getattr(candidate, name) != getattr(self, name)
        )
        return candidate, changed
