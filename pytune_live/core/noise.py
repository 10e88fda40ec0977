# pytune_live/core/noise.py
"""
Réduction de bruit par soustraction spectrale adaptative.

Machine d'états : idle → calibrating → calibrated (+ drapeau `bypassed`).
Pendant la calibration les blocs passent inchangés et leur spectre
d'amplitude est accumulé ; à la fin le profil = moyenne par bin.
Une fois calibré, chaque bin est réduit de `over_subtraction × bruit[k]`
avec un plancher `spectral_floor × |X|` (évite le "musical noise"),
la phase est conservée et le bloc est reconstruit par FFT inverse.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

from pytune_live.analysis.spectral import SpectrumBuffer, next_power_of_two
from pytune_live.types.dataclasses import CalibrationStatus
from pytune_live.types.enums import CalibrationPhase, NoiseState
from pytune_live.types.schemas import ConfigurationError

logger = logging.getLogger(__name__)

StatusCallback = Callable[[CalibrationStatus], None]


class NoiseSuppressor:
    def __init__(
        self,
        block_size: int = 4096,
        calibration_frames: int = 30,
        over_subtraction: float = 1.5,
        spectral_floor: float = 0.002,
        calibration_gate_rms: Optional[float] = None,
        on_status: Optional[StatusCallback] = None,
    ):
        if calibration_frames < 1:
            raise ConfigurationError(f"calibration_frames must be >= 1, got {calibration_frames}")
        self.block_size = int(block_size)
        self.fft_size = next_power_of_two(self.block_size)
        self.half = self.fft_size // 2
        self.calibration_frames = int(calibration_frames)
        self.calibration_gate_rms = calibration_gate_rms
        self.on_status = on_status

        self._over_subtraction = 1.5
        self._spectral_floor = 0.002
        self.set_parameters(over_subtraction, spectral_floor)

        # === buffers pré-alloués ===
        self._spec = SpectrumBuffer(self.fft_size)
        self._accumulator = np.zeros(self.half, dtype=np.float64)
        self._gain = np.zeros(self.half, dtype=np.float64)
        self._clean = np.zeros(self.half, dtype=np.float64)
        self._output = np.zeros(self.block_size, dtype=np.float32)

        self._profile: Optional[np.ndarray] = None
        self._state = NoiseState.IDLE
        self._frame_count = 0
        self.bypassed = False

    # ────────────────────────────────────────────────────────────────────
    # État
    # ────────────────────────────────────────────────────────────────────
    @property
    def state(self) -> NoiseState:
        return self._state

    @property
    def is_calibrated(self) -> bool:
        return self._state == NoiseState.CALIBRATED

    @property
    def is_calibrating(self) -> bool:
        return self._state == NoiseState.CALIBRATING

    @property
    def profile(self) -> Optional[np.ndarray]:
        """Copie du profil de bruit (longueur fft_size // 2) ou None."""
        return None if self._profile is None else self._profile.copy()

    @property
    def over_subtraction(self) -> float:
        return self._over_subtraction

    @property
    def spectral_floor(self) -> float:
        return self._spectral_floor

    def calibration_progress(self) -> float:
        if self._state == NoiseState.CALIBRATING:
            return min(1.0, self._frame_count / self.calibration_frames)
        return 1.0 if self._state == NoiseState.CALIBRATED else 0.0

    # ────────────────────────────────────────────────────────────────────
    # Contrôle
    # ────────────────────────────────────────────────────────────────────
    def set_parameters(
        self,
        over_subtraction: Optional[float] = None,
        spectral_floor: Optional[float] = None,
    ) -> None:
        """Réglage à chaud, sans réallocation."""
        if over_subtraction is not None:
            if not np.isfinite(over_subtraction) or over_subtraction < 0:
                raise ConfigurationError(f"over_subtraction must be >= 0, got {over_subtraction}")
            self._over_subtraction = float(over_subtraction)
        if spectral_floor is not None:
            if not np.isfinite(spectral_floor) or not (0.0 <= spectral_floor <= 1.0):
                raise ConfigurationError(f"spectral_floor must be in [0, 1], got {spectral_floor}")
            self._spectral_floor = float(spectral_floor)

    def set_bypass(self, bypass: bool) -> None:
        self.bypassed = bool(bypass)

    def start_calibration(self) -> None:
        self._accumulator.fill(0.0)
        self._frame_count = 0
        self._state = NoiseState.CALIBRATING
        logger.info("Noise calibration started (%d frames)", self.calibration_frames)
        self._emit(CalibrationStatus(CalibrationPhase.CALIBRATING, progress=0.0))

    def stop_calibration(self) -> None:
        """
        Arrêt forcé : finalise avec les trames déjà collectées,
        ou signale un échec si aucune trame n'a été collectée.
        """
        if self._state != NoiseState.CALIBRATING:
            return
        if self._frame_count == 0:
            self._fail("No frames collected")
        else:
            self._finish_calibration()

    def load_profile(self, profile) -> None:
        data = np.asarray(profile, dtype=np.float64).reshape(-1)
        if data.size != self.half:
            raise ConfigurationError(f"noise profile length {data.size} != {self.half}")
        if not np.all(np.isfinite(data)) or np.any(data < 0):
            raise ConfigurationError("noise profile must be finite and non-negative")
        self._profile = data.copy()
        self._state = NoiseState.CALIBRATED
        logger.info("Noise profile loaded (%d bins)", data.size)

    def reset(self) -> None:
        self._profile = None
        self._state = NoiseState.IDLE
        self._frame_count = 0
        self._accumulator.fill(0.0)

    # ────────────────────────────────────────────────────────────────────
    # Chemin par bloc
    # ────────────────────────────────────────────────────────────────────
    def process(self, samples: np.ndarray) -> np.ndarray:
        """
        Traite un bloc. Retourne soit l'entrée telle quelle, soit un buffer
        interne réutilisé au bloc suivant (à consommer avant le prochain appel).
        """
        if self._state == NoiseState.CALIBRATING:
            self._accumulate(samples)
            return samples
        if self._state == NoiseState.CALIBRATED and not self.bypassed:
            return self._denoise(samples)
        return samples

    def _accumulate(self, samples: np.ndarray) -> None:
        if self.calibration_gate_rms is not None and samples.size:
            rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
            if rms > self.calibration_gate_rms:
                logger.debug("Signal detected during calibration (rms=%.4f), skipping frame", rms)
                return

        self._spec.load(samples)
        self._spec.transform()
        self._accumulator += self._spec.compute_magnitude(scale=1.0 / self.fft_size)
        self._frame_count += 1

        progress = min(1.0, self._frame_count / self.calibration_frames)
        self._emit(CalibrationStatus(CalibrationPhase.CALIBRATING, progress=progress, frames=self._frame_count))

        if self._frame_count >= self.calibration_frames:
            self._finish_calibration()

    def _finish_calibration(self) -> None:
        # nouveau tableau puis échange de référence : le chemin de débruitage
        # ne voit jamais un profil à moitié écrit
        profile = self._accumulator / self._frame_count
        frames = self._frame_count
        self._profile = profile
        self._state = NoiseState.CALIBRATED
        self._frame_count = 0
        logger.info("Noise calibration completed: %d frames, avg noise level %.3g", frames, float(profile.mean()))
        self._emit(CalibrationStatus(CalibrationPhase.COMPLETE, progress=1.0, frames=frames, profile=profile.copy()))

    def _fail(self, reason: str) -> None:
        self._profile = None
        self._state = NoiseState.IDLE
        self._frame_count = 0
        logger.warning("Noise calibration failed: %s", reason)
        self._emit(CalibrationStatus(CalibrationPhase.FAILED, progress=0.0, reason=reason))

    def _denoise(self, samples: np.ndarray) -> np.ndarray:
        spec = self._spec
        half = self.half
        spec.load(samples)
        spec.transform()
        mag = spec.compute_magnitude(scale=1.0 / self.fft_size)

        # |X| − α·N, plancher β·|X|
        np.multiply(self._profile, self._over_subtraction, out=self._clean)
        np.subtract(mag, self._clean, out=self._clean)
        np.maximum(self._clean, self._spectral_floor * mag, out=self._clean)
        np.divide(self._clean, mag + 1e-10, out=self._gain)

        # gain symétrique sur les bins négatifs, phase inchangée
        spec.real[:half] *= self._gain
        spec.imag[:half] *= self._gain
        spec.real[half] *= self._gain[-1]
        spec.imag[half] *= self._gain[-1]
        spec.real[half + 1:] *= self._gain[:0:-1]
        spec.imag[half + 1:] *= self._gain[:0:-1]
        spec.inverse()

        n = min(samples.size, self.fft_size, self._output.size)
        self._output[:n] = spec.real[:n]
        return self._output[:n]

    def _emit(self, status: CalibrationStatus) -> None:
        if self.on_status is not None:
            self.on_status(status)
