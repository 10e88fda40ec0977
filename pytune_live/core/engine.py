# pytune_live/core/engine.py
"""
Moteur de suivi de hauteur temps réel.

Pipeline par bloc :
    bloc brut → débruitage (soustraction spectrale)
              → {CQT et série harmonique sur l'historique, YIN et NSDF sur le bloc}
              → fusion (estimation grossière)
              → phase vocoder (super-résolution)
              → correction d'inharmonicité
              → décodeur de Viterbi (+ candidats secondaires)
              → détection de vibrato
              → dispatcher → abonnés

Les appels de contrôle (`configure`, calibration, reset…) valident tout de suite
puis déposent une commande dans une file ; la file est vidée au début du bloc suivant,
le chemin de traitement ne prend aucun verrou.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Mapping, Optional, Union

import numpy as np
from pydantic import ValidationError

from pytune_live.analysis.cqt import CQTAnalyzer
from pytune_live.analysis.fusion import AGREEMENT_CENTS, CQT_FULL_SCALE, cqt_observation, fuse_candidates
from pytune_live.analysis.harmonic import HarmonicSeriesEstimator
from pytune_live.analysis.inharmonicity import InharmonicityCorrector, estimate_b
from pytune_live.analysis.spectral import next_power_of_two
from pytune_live.analysis.super_resolution import PhaseVocoder
from pytune_live.analysis.time_domain import NsdfEstimator, YinEstimator
from pytune_live.analysis.vibrato import VibratoDetector
from pytune_live.core.dispatcher import Subscriber, SubscriptionToken, UnifiedPitchDispatcher
from pytune_live.core.noise import NoiseSuppressor
from pytune_live.core.viterbi import TrajectoryDecoder
from pytune_live.types.commands import (
    ApplyConfig,
    EngineCommand,
    LoadNoiseProfile,
    Reset,
    SetBypass,
    StartCalibration,
    StopCalibration,
)
from pytune_live.types.dataclasses import (
    LayerDiagnostics,
    RawPitchResult,
    SampleBlock,
    UnifiedPitchFrame,
    observation,
)
from pytune_live.types.enums import NoiseState, ObservationSource
from pytune_live.types.schemas import ConfigurationError, EngineConfig
from pytune_live.utils.note_utils import cents_between

logger = logging.getLogger(__name__)

MIN_REFINER_CONFIDENCE = 0.5
SECONDARY_PEAKS = 3

_NOISE_REBUILD = {"sample_rate", "buffer_size"}
_CQT_REBUILD = {"sample_rate", "min_freq", "max_freq", "bins_per_octave"}
_YIN_REBUILD = {"sample_rate", "min_freq", "max_freq"}
_REFINER_REBUILD = {"sample_rate", "buffer_size", "refiner_fft_size"}
_HARMONIC_REBUILD = _REFINER_REBUILD | {"min_freq", "max_freq"}
_DECODER_REBUILD = {
    "min_freq", "max_freq", "cents_per_state", "max_transition_cents",
    "fast_passage_threshold", "smoothing_alpha",
}
_HISTORY_REBUILD = {"history_size"}


class PitchEngine:
    def __init__(
        self,
        config: Union[EngineConfig, Mapping[str, Any], None] = None,
        dispatcher: Optional[UnifiedPitchDispatcher] = None,
        **fields: Any,
    ):
        if not isinstance(config, EngineConfig):
            data = dict(config or {})
            data.update(fields)
            try:
                config = EngineConfig.model_validate(data)
            except ValidationError as exc:
                raise ConfigurationError(str(exc)) from exc
        elif fields:
            config, _ = config.merged(fields)

        self.dispatcher = dispatcher or UnifiedPitchDispatcher(a4=config.a4)
        self.dispatcher.set_a4(config.a4)

        self._commands: "queue.SimpleQueue[EngineCommand]" = queue.SimpleQueue()
        self._control_lock = threading.Lock()
        self._requested = config
        self._config = config
        self._clock = 0.0
        self._build(config)

    # ────────────────────────────────────────────────────────────────────
    # Construction (allocations uniquement ici)
    # ────────────────────────────────────────────────────────────────────
    def _build(self, cfg: EngineConfig) -> None:
        self._build_noise(cfg)
        self._build_cqt(cfg)
        self._build_yin(cfg)
        self._build_refiner(cfg)
        self._build_harmonic(cfg)
        self._corrector = InharmonicityCorrector(cfg.instrument)
        self._build_decoder(cfg)
        self._vibrato = VibratoDetector()
        self._build_history(cfg)

    def _build_noise(self, cfg: EngineConfig) -> None:
        self._noise = NoiseSuppressor(
            block_size=cfg.buffer_size,
            calibration_frames=cfg.calibration_frames,
            over_subtraction=cfg.over_subtraction,
            spectral_floor=cfg.spectral_floor,
            calibration_gate_rms=cfg.calibration_gate_rms,
            on_status=self.dispatcher.publish_status,
        )
        self._noise.set_bypass(cfg.bypass_noise)
        if cfg.noise_profile is not None:
            self._noise.load_profile(cfg.noise_profile)

    def _build_cqt(self, cfg: EngineConfig) -> None:
        self._cqt = CQTAnalyzer(cfg.sample_rate, cfg.min_freq, cfg.max_freq, cfg.bins_per_octave)

    def _build_yin(self, cfg: EngineConfig) -> None:
        self._yin = YinEstimator(cfg.sample_rate, cfg.min_freq, cfg.max_freq)
        self._nsdf = NsdfEstimator(cfg.sample_rate, cfg.min_freq, cfg.max_freq)

    def _build_refiner(self, cfg: EngineConfig) -> None:
        # hop = un bloc, la FFT couvre au moins deux blocs
        fft_size = max(cfg.refiner_fft_size, 2 * next_power_of_two(cfg.buffer_size))
        self._refiner = PhaseVocoder(cfg.sample_rate, fft_size=fft_size, hop_size=cfg.buffer_size)

    def _build_harmonic(self, cfg: EngineConfig) -> None:
        self._harmonic = HarmonicSeriesEstimator(
            cfg.sample_rate, fft_size=self._refiner.fft_size, min_freq=cfg.min_freq, max_freq=cfg.max_freq
        )

    def _build_decoder(self, cfg: EngineConfig) -> None:
        self._decoder = TrajectoryDecoder(
            min_freq=cfg.min_freq,
            max_freq=cfg.max_freq,
            cents_per_state=cfg.cents_per_state,
            max_transition_cents=cfg.max_transition_cents,
            fast_passage_threshold=cfg.fast_passage_threshold,
            smoothing_alpha=cfg.smoothing_alpha,
        )

    def _build_history(self, cfg: EngineConfig) -> None:
        size = max(cfg.history_size, self._refiner.fft_size)
        self._history = np.zeros(size, dtype=np.float32)

    # ────────────────────────────────────────────────────────────────────
    # Accès
    # ────────────────────────────────────────────────────────────────────
    @property
    def config(self) -> EngineConfig:
        """Configuration active (appliquée au dernier bloc traité)."""
        return self._config

    @property
    def requested_config(self) -> EngineConfig:
        """Dernière configuration validée, éventuellement encore en file."""
        return self._requested

    @property
    def noise_state(self) -> NoiseState:
        return self._noise.state

    @property
    def noise_profile(self) -> Optional[np.ndarray]:
        return self._noise.profile

    @property
    def last_frame(self) -> Optional[UnifiedPitchFrame]:
        return self.dispatcher.last_frame

    def stats(self):
        return self._decoder.stats()

    def subscribe(self, callback: Subscriber) -> SubscriptionToken:
        return self.dispatcher.subscribe(callback)

    def unsubscribe(self, token: SubscriptionToken) -> bool:
        return self.dispatcher.unsubscribe(token)

    # ────────────────────────────────────────────────────────────────────
    # Contrôle (contexte non temps réel)
    # ────────────────────────────────────────────────────────────────────
    def configure(self, update: Optional[Mapping[str, Any]] = None, **fields: Any) -> EngineConfig:
        """
        Mise à jour partielle, validée immédiatement, appliquée au prochain bloc.
        Lève ConfigurationError (la configuration précédente reste active).
        """
        data = dict(update or {})
        data.update(fields)
        with self._control_lock:
            config, changed = self._requested.merged(data)
            if not changed:
                return config
            self._requested = config
            self._commands.put(ApplyConfig(config, changed))
        logger.debug("Configuration queued: %s", sorted(changed))
        return config

    def start_calibration(self) -> None:
        self._commands.put(StartCalibration())

    def stop_calibration(self) -> None:
        self._commands.put(StopCalibration())

    def reset(self) -> None:
        self._commands.put(Reset())

    def set_bypass(self, bypass: bool) -> None:
        self._commands.put(SetBypass(bool(bypass)))

    def load_noise_profile(self, profile) -> None:
        data = np.asarray(profile, dtype=np.float64).reshape(-1)
        expected = self._requested.noise_fft_size // 2
        if data.size != expected:
            raise ConfigurationError(f"noise profile length {data.size} != {expected}")
        if not np.all(np.isfinite(data)) or np.any(data < 0):
            raise ConfigurationError("noise profile must be finite and non-negative")
        self._commands.put(LoadNoiseProfile(data))

    # ────────────────────────────────────────────────────────────────────
    # Application des commandes (début de bloc)
    # ────────────────────────────────────────────────────────────────────
    def _drain_commands(self) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                return
            self._apply(command)

    def _apply(self, command: EngineCommand) -> None:
        if isinstance(command, ApplyConfig):
            self._apply_config(command.config, command.changed)
        elif isinstance(command, StartCalibration):
            self._noise.start_calibration()
        elif isinstance(command, StopCalibration):
            self._noise.stop_calibration()
        elif isinstance(command, LoadNoiseProfile):
            if command.profile.size == self._noise.half:
                self._noise.load_profile(command.profile)
            else:
                logger.warning("Dropping noise profile of length %d (buffer size changed)", command.profile.size)
        elif isinstance(command, SetBypass):
            self._noise.set_bypass(command.bypass)
        elif isinstance(command, Reset):
            self._reset_pipeline()
        else:
            raise TypeError(f"Unknown engine command: {command!r}")

    def _apply_config(self, cfg: EngineConfig, changed) -> None:
        if changed & _NOISE_REBUILD:
            calibrating = self._noise.is_calibrating
            self._build_noise(cfg)
            if calibrating:
                # les trames accumulées ne valent plus pour la nouvelle taille de FFT
                logger.info("Block format changed during calibration, restarting it")
                self._noise.start_calibration()
        else:
            if {"over_subtraction", "spectral_floor"} & changed:
                self._noise.set_parameters(cfg.over_subtraction, cfg.spectral_floor)
            if "calibration_frames" in changed:
                self._noise.calibration_frames = cfg.calibration_frames
            if "calibration_gate_rms" in changed:
                self._noise.calibration_gate_rms = cfg.calibration_gate_rms
            if "bypass_noise" in changed:
                self._noise.set_bypass(cfg.bypass_noise)
            if "noise_profile" in changed and cfg.noise_profile is not None:
                self._noise.load_profile(cfg.noise_profile)

        if changed & _CQT_REBUILD:
            self._build_cqt(cfg)
        if changed & _YIN_REBUILD:
            self._build_yin(cfg)
        if changed & _REFINER_REBUILD:
            self._build_refiner(cfg)
        if changed & _HARMONIC_REBUILD:
            self._build_harmonic(cfg)
        if "instrument" in changed:
            self._corrector.set_instrument(cfg.instrument)
        if changed & _DECODER_REBUILD:
            self._build_decoder(cfg)
            self._vibrato.reset()
        if changed & (_HISTORY_REBUILD | _REFINER_REBUILD) and self._history.size != max(
            cfg.history_size, self._refiner.fft_size
        ):
            self._build_history(cfg)
        if "a4" in changed:
            self.dispatcher.set_a4(cfg.a4)

        self._config = cfg
        logger.info("Configuration applied: %s", ", ".join(sorted(changed)))

    def _reset_pipeline(self) -> None:
        self._noise.reset()
        self._decoder.reset()
        self._refiner.forget()
        self._vibrato.reset()
        self._history.fill(0.0)
        logger.info("Pipeline reset")

    # ────────────────────────────────────────────────────────────────────
    # Chemin par bloc
    # ────────────────────────────────────────────────────────────────────
    def submit(self, block: Union[SampleBlock, np.ndarray], timestamp: Optional[float] = None) -> UnifiedPitchFrame:
        """
        Traite un bloc et diffuse la trame résultante. Retourne quand le bloc
        peut être réutilisé par l'appelant.
        """
        self._drain_commands()
        cfg = self._config

        if isinstance(block, SampleBlock):
            samples = block.samples
            sample_rate = block.sample_rate
            if timestamp is None:
                timestamp = block.timestamp
        else:
            samples = np.asarray(block, dtype=np.float32).reshape(-1)
            sample_rate = cfg.sample_rate
        if timestamp is None:
            timestamp = self._clock
        self._clock = timestamp + samples.size / float(cfg.sample_rate)

        reason = self._block_problem(samples, sample_rate, cfg)
        if reason is not None:
            logger.warning("Invalid block absorbed: %s", reason)
            return self.dispatcher.dispatch(
                RawPitchResult(
                    frequency=self._decoder.smoothed_freq,
                    timestamp=timestamp,
                    layers=LayerDiagnostics(
                        coarse=observation(None, 0.0, ObservationSource.HOST),
                        trajectory=self._decoder.stats(),
                        noise_state=self._noise.state,
                    ),
                )
            )

        rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
        cleaned = self._noise.process(samples)
        self._push_history(cleaned)

        if rms < cfg.rms_threshold:
            return self._silent_frame(rms, timestamp)
        return self._analyze(cleaned, rms, timestamp)

    @staticmethod
    def _block_problem(samples: np.ndarray, sample_rate: int, cfg: EngineConfig) -> Optional[str]:
        if samples.size == 0:
            return "empty block"
        if sample_rate != cfg.sample_rate:
            return f"sample rate {sample_rate} != {cfg.sample_rate}"
        if samples.size != cfg.buffer_size:
            return f"block of {samples.size} samples, expected {cfg.buffer_size}"
        if not np.all(np.isfinite(samples)):
            return "non-finite samples"
        return None

    def _push_history(self, samples: np.ndarray) -> None:
        n = samples.size
        h = self._history
        h[:-n] = h[n:]
        h[-n:] = samples

    def _silent_frame(self, rms: float, timestamp: float) -> UnifiedPitchFrame:
        self._refiner.forget()
        self._vibrato.update(None, timestamp)
        return self.dispatcher.dispatch(
            RawPitchResult(
                frequency=None,
                rms=rms,
                timestamp=timestamp,
                layers=LayerDiagnostics(
                    coarse=observation(None, 0.0, ObservationSource.HOST),
                    trajectory=self._decoder.stats(),
                    noise_state=self._noise.state,
                ),
            )
        )

    def _analyze(self, block: np.ndarray, rms: float, timestamp: float) -> UnifiedPitchFrame:
        cqt = self._cqt.analyze(self._history)
        candidates = []
        if cqt.peaks:
            top = cqt_observation(cqt.peaks[0])
            if top.is_valid:
                candidates.append(top)
        harmonics = self._harmonic.estimate(self._history)
        for candidate in (harmonics.observation, self._yin.estimate(block), self._nsdf.estimate(block)):
            if candidate.is_valid:
                candidates.append(candidate)

        coarse = fuse_candidates(candidates)
        layers = dict(
            cqt_peaks=tuple(cqt.peaks),
            candidates=tuple(candidates),
            coarse=coarse,
            harmonics=harmonics,
            noise_state=self._noise.state,
        )

        if not coarse.is_valid:
            self._refiner.forget()
            smoothed = self._decoder.update(coarse)
            vibrato = self._vibrato.update(None, timestamp)
            return self.dispatcher.dispatch(
                RawPitchResult(
                    frequency=smoothed,
                    rms=rms,
                    timestamp=timestamp,
                    vibrato=vibrato,
                    layers=LayerDiagnostics(trajectory=self._decoder.stats(), **layers),
                )
            )

        refined = self._refiner.refine(self._history, coarse.frequency)
        freq = coarse.frequency
        if (
            refined.frequency is not None
            and refined.confidence >= MIN_REFINER_CONFIDENCE
            and abs(cents_between(coarse.frequency, refined.frequency)) <= AGREEMENT_CENTS
        ):
            freq = refined.frequency

        correction = self._corrector.correct(freq, coarse.confidence)
        measured_b = estimate_b(correction.frequency, harmonics.partials)
        primary = observation(correction.frequency, coarse.confidence, ObservationSource.CORRECTED)
        secondary = [(p.frequency, min(1.0, p.magnitude / CQT_FULL_SCALE)) for p in cqt.peaks[1:1 + SECONDARY_PEAKS]]
        smoothed = self._decoder.update(primary, secondary)

        vibrato = self._vibrato.update(correction.frequency, timestamp)
        # sous vibrato, on suit la modulation au lieu de la lisser
        output = correction.frequency if vibrato.detected else smoothed

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "t=%.3f rms=%.4f coarse=%.2f refined=%s out=%s",
                timestamp, rms, coarse.frequency,
                f"{refined.frequency:.3f}" if refined.frequency else None,
                f"{output:.3f}" if output else None,
            )

        return self.dispatcher.dispatch(
            RawPitchResult(
                frequency=output,
                confidence=coarse.confidence,
                rms=rms,
                timestamp=timestamp,
                phase_velocity=refined.phase_velocity,
                inharmonicity_offset=correction.offset_cents,
                vibrato=vibrato,
                layers=LayerDiagnostics(
                    refined=refined,
                    inharmonicity=correction,
                    measured_b=measured_b,
                    trajectory=self._decoder.stats(),
                    **layers,
                ),
            )
        )
