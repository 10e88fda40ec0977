# pytune_live/core/viterbi.py
"""
Décodage de trajectoire de hauteur (Viterbi en ligne).

Espace d'états : N états espacés uniformément en cents entre min_freq et max_freq,
    f(s) = min_freq · 2^(s · cps / 1200)

Par trame :
1) vecteur d'observation gaussien autour de l'état observé
   (σ = max(2, (1 − conf)·10)), + candidats secondaires (poids conf·0.3, σ = 3),
   normalisé L1 ;
2) coût de transition tabulé en fonction de d = Δétats (linéaire faible jusqu'au
   seuil « passage rapide », plus raide jusqu'à max_transition_cents, 1e6 au-delà) ;
3) pour chaque état dans ±(maxDiff + 5) autour du dernier meilleur état :
   meilleur prédécesseur (prev − coût) + log(obs + ε), back-pointer ;
4) meilleur état cherché dans ±20 autour du précédent (localité) ;
5) lissage exponentiel (α = 0.7, 0.3 si saut > 50 cents) ;
6) échange O(1) des vecteurs prev / curr.

Les boucles 1) et 3) sont compilées par numba sur des tableaux pré-alloués.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional, Tuple, Union

import numba
import numpy as np

from pytune_live.types.dataclasses import (
    MIN_OBSERVATION_CONFIDENCE,
    PitchObservation,
    TrajectoryStats,
)
from pytune_live.types.enums import DecoderState

logger = logging.getLogger(__name__)

LOG_EPS = 1e-10
SEED_SIGMA = 5.0
CANDIDATE_SIGMA = 3.0
CANDIDATE_WEIGHT = 0.3
CANDIDATE_SPAN = 10
BEST_STATE_RADIUS = 20
JUMP_CENTS = 50.0
JUMP_ALPHA = 0.3
IMPOSSIBLE_COST = 1e6
MAX_CANDIDATES = 16

Candidate = Union[PitchObservation, Tuple[float, float]]


# ============================================================
# Espace d'états
# ============================================================

class StateSpace:
    """Grille de fréquences en cents, figée pour une instance de décodeur."""

    def __init__(self, min_freq: float = 50.0, max_freq: float = 2000.0, cents_per_state: float = 10.0):
        if min_freq <= 0 or max_freq <= min_freq:
            raise ValueError(f"invalid state space range: {min_freq}–{max_freq} Hz")
        if cents_per_state <= 0:
            raise ValueError(f"cents_per_state must be > 0 (got {cents_per_state})")
        self.min_freq = float(min_freq)
        self.max_freq = float(max_freq)
        self.cents_per_state = float(cents_per_state)
        self.total_cents = 1200.0 * math.log2(self.max_freq / self.min_freq)
        self.num_states = int(math.ceil(self.total_cents / self.cents_per_state)) + 1
        self.frequencies = self.min_freq * 2.0 ** (
            np.arange(self.num_states) * self.cents_per_state / 1200.0
        )
        self.frequencies.setflags(write=False)

    def freq_to_state(self, freq: float) -> int:
        if freq <= self.min_freq:
            return 0
        if freq >= self.max_freq:
            return self.num_states - 1
        cents = 1200.0 * math.log2(freq / self.min_freq)
        return min(self.num_states - 1, int(round(cents / self.cents_per_state)))

    def state_to_freq(self, state: int) -> float:
        return float(self.frequencies[state])


def build_transition_table(
    cents_per_state: float,
    max_transition_cents: float = 100.0,
    fast_passage_threshold: float = 50.0,
    cost_factor: float = 0.1,
    fast_passage_penalty: float = 0.5,
) -> Tuple[np.ndarray, int]:
    """Coût par écart d ∈ [−maxDiff, maxDiff] ; table[d + maxDiff]."""
    max_diff = int(math.ceil(max_transition_cents / cents_per_state))
    table = np.empty(2 * max_diff + 1, dtype=np.float64)
    for d in range(-max_diff, max_diff + 1):
        cents = abs(d * cents_per_state)
        if cents <= fast_passage_threshold:
            cost = cents * cost_factor * 0.01
        elif cents <= max_transition_cents:
            cost = (
                fast_passage_threshold * cost_factor * 0.01
                + (cents - fast_passage_threshold) * fast_passage_penalty * 0.1
            )
        else:
            cost = IMPOSSIBLE_COST
        table[d + max_diff] = cost
    return table, max_diff


# ============================================================
# Boucles compilées
# ============================================================

@numba.jit(nopython=True)
def _fill_observation(obs, centre, sigma, confidence, cand_states, cand_weights, n_cand):
    n = obs.size
    two_sig2 = 2.0 * sigma * sigma
    for i in range(n):
        d = i - centre
        obs[i] = math.exp(-d * d / two_sig2) * confidence

    cand_two_sig2 = 2.0 * CANDIDATE_SIGMA * CANDIDATE_SIGMA
    for j in range(n_cand):
        s = cand_states[j]
        w = cand_weights[j]
        for i in range(max(0, s - CANDIDATE_SPAN), min(n, s + CANDIDATE_SPAN)):
            d = i - s
            obs[i] += math.exp(-d * d / cand_two_sig2) * w

    total = 0.0
    for i in range(n):
        total += obs[i]
    if total > 0.0:
        for i in range(n):
            obs[i] /= total


@numba.jit(nopython=True)
def _viterbi_step(prev, curr, back, obs, table, max_diff, last_state, search_radius, best_radius):
    n = prev.size
    lo = max(0, last_state - search_radius)
    hi = min(n - 1, last_state + search_radius)

    for i in range(n):
        curr[i] = -np.inf

    for c in range(lo, hi + 1):
        best = -np.inf
        arg = last_state
        p_lo = max(0, c - max_diff)
        p_hi = min(n - 1, c + max_diff)
        for p in range(p_lo, p_hi + 1):
            v = prev[p] - table[c - p + max_diff]
            if v > best:
                best = v
                arg = p
        curr[c] = best + math.log(obs[c] + LOG_EPS)
        back[c] = arg

    # meilleur état, fenêtre locale
    b_lo = max(0, last_state - best_radius)
    b_hi = min(n - 1, last_state + best_radius)
    best_state = last_state
    best_val = -np.inf
    for i in range(b_lo, b_hi + 1):
        if curr[i] > best_val:
            best_val = curr[i]
            best_state = i

    # renormalisation (max = 0), l'argmax est inchangé
    if best_val > -np.inf:
        for i in range(lo, hi + 1):
            curr[i] -= best_val
    return best_state


# ============================================================
# Décodeur
# ============================================================

class TrajectoryDecoder:
    def __init__(
        self,
        min_freq: float = 50.0,
        max_freq: float = 2000.0,
        cents_per_state: float = 10.0,
        max_transition_cents: float = 100.0,
        fast_passage_threshold: float = 50.0,
        transition_cost_factor: float = 0.1,
        fast_passage_penalty: float = 0.5,
        smoothing_alpha: float = 0.7,
        reacquire_frames: int = 3,
        reacquire_confidence: float = 0.8,
    ):
        self.space = StateSpace(min_freq, max_freq, cents_per_state)
        self.max_transition_cents = float(max_transition_cents)
        self.fast_passage_threshold = float(fast_passage_threshold)
        self.smoothing_alpha = float(smoothing_alpha)
        self.reacquire_frames = int(reacquire_frames)
        self.reacquire_confidence = float(reacquire_confidence)

        self._table, self.max_diff = build_transition_table(
            cents_per_state, max_transition_cents, fast_passage_threshold,
            transition_cost_factor, fast_passage_penalty,
        )
        self.search_radius = self.max_diff + 5

        n = self.space.num_states
        self._prev = np.full(n, -np.inf, dtype=np.float64)
        self._curr = np.full(n, -np.inf, dtype=np.float64)
        self._back = np.zeros(n, dtype=np.int64)
        self._obs = np.zeros(n, dtype=np.float64)
        self._cand_states = np.zeros(MAX_CANDIDATES, dtype=np.int64)
        self._cand_weights = np.zeros(MAX_CANDIDATES, dtype=np.float64)

        self.reset()

    # ────────────────────────────────────────────────────────────────────
    @property
    def num_states(self) -> int:
        return self.space.num_states

    @property
    def smoothed_freq(self) -> Optional[float]:
        return self._smoothed if self._smoothed > 0 else None

    def freq_to_state(self, freq: float) -> int:
        return self.space.freq_to_state(freq)

    def state_to_freq(self, state: int) -> float:
        return self.space.state_to_freq(state)

    def reset(self) -> None:
        self._prev.fill(-np.inf)
        self._curr.fill(-np.inf)
        self._back.fill(0)
        self.state = DecoderState.UNINITIALIZED
        self._frame_count = 0
        self._last_state = -1
        self._last_freq = 0.0
        self._smoothed = 0.0
        self._miss_count = 0
        self._reacquisitions = 0

    # ────────────────────────────────────────────────────────────────────
    def update(self, obs: PitchObservation, candidates: Iterable[Candidate] = ()) -> Optional[float]:
        """Variante typée de `process` : observation Valid | Invalid."""
        if not obs.is_valid:
            return self.smoothed_freq
        return self.process(obs.frequency, obs.confidence, candidates)

    def process(
        self,
        observed_freq: Optional[float],
        confidence: float,
        candidates: Iterable[Candidate] = (),
    ) -> Optional[float]:
        """
        Avance d'une trame et retourne la fréquence lissée.
        Observation invalide : rien n'avance, on rend la dernière valeur lissée (ou None).
        """
        if (
            observed_freq is None
            or not math.isfinite(observed_freq)
            or observed_freq <= 0
            or not math.isfinite(confidence)
            or confidence < MIN_OBSERVATION_CONFIDENCE
        ):
            return self.smoothed_freq

        confidence = min(1.0, float(confidence))
        self._frame_count += 1

        if self.state == DecoderState.UNINITIALIZED:
            self._seed(observed_freq, confidence)
            logger.debug("Decoder seeded at %.2f Hz (state %d)", observed_freq, self._last_state)
            return self._smoothed

        obs_state = self.space.freq_to_state(observed_freq)

        if abs(obs_state - self._last_state) > BEST_STATE_RADIUS and confidence >= self.reacquire_confidence:
            self._miss_count += 1
            if self._miss_count >= self.reacquire_frames:
                self._reacquisitions += 1
                logger.info(
                    "Decoder re-acquired %.2f Hz after %d frames outside the search window",
                    observed_freq, self._miss_count,
                )
                self._seed(observed_freq, confidence)
                return self._smoothed
        else:
            self._miss_count = 0

        n_cand = self._load_candidates(candidates)
        sigma = max(2.0, (1.0 - confidence) * 10.0)
        _fill_observation(
            self._obs, obs_state, sigma, confidence,
            self._cand_states, self._cand_weights, n_cand,
        )
        best = _viterbi_step(
            self._prev, self._curr, self._back, self._obs, self._table,
            self.max_diff, self._last_state, self.search_radius, BEST_STATE_RADIUS,
        )
        best_freq = self.space.state_to_freq(best)

        # à un état près de l'observation, on lisse la fréquence mesurée elle-même
        self._smooth(observed_freq if abs(best - obs_state) <= 1 else best_freq)

        self._last_state = best
        self._last_freq = best_freq
        self._prev, self._curr = self._curr, self._prev
        return self._smoothed

    smooth = process

    # ────────────────────────────────────────────────────────────────────
    def _seed(self, freq: float, confidence: float) -> None:
        centre = self.space.freq_to_state(freq)
        d = np.arange(self.space.num_states) - centre
        np.log(np.exp(-(d * d) / (2.0 * SEED_SIGMA * SEED_SIGMA)) * confidence + LOG_EPS, out=self._prev)
        self.state = DecoderState.TRACKING
        self._last_state = centre
        self._last_freq = freq
        self._smoothed = freq
        self._miss_count = 0

    def _load_candidates(self, candidates: Iterable[Candidate]) -> int:
        n = 0
        for cand in candidates:
            if n >= MAX_CANDIDATES:
                break
            if isinstance(cand, tuple):
                freq, conf = cand
            else:
                freq, conf = cand.frequency, cand.confidence
            if freq is None or freq <= 0 or conf <= MIN_OBSERVATION_CONFIDENCE:
                continue
            self._cand_states[n] = self.space.freq_to_state(freq)
            self._cand_weights[n] = conf * CANDIDATE_WEIGHT
            n += 1
        return n

    def _smooth(self, new_freq: float) -> None:
        if self._smoothed <= 0:
            self._smoothed = new_freq
            return
        cents = abs(1200.0 * math.log2(new_freq / self._smoothed))
        alpha = JUMP_ALPHA if cents > JUMP_CENTS else self.smoothing_alpha
        self._smoothed = self._smoothed * (1.0 - alpha) + new_freq * alpha

    def stats(self) -> TrajectoryStats:
        return TrajectoryStats(
            num_states=self.space.num_states,
            total_cents=self.space.total_cents,
            frame_count=self._frame_count,
            last_state=self._last_state,
            last_freq=self._last_freq,
            smoothed_freq=self._smoothed,
            reacquisitions=self._reacquisitions,
        )

    get_stats = stats
