# pytune_live/core/dispatcher.py
"""
Dispatcher de trames unifiées.

Construit explicitement et possédé par le moteur (aucune instance globale).
Les abonnés sont appelés en ligne, dans l'ordre d'inscription ; une exception
dans un abonné est journalisée et n'interrompt pas la distribution.
"""

from __future__ import annotations

import itertools
import logging
import time
from typing import Callable, Dict, Optional, Union

from pytune_live.types.dataclasses import CalibrationStatus, RawPitchResult, UnifiedPitchFrame, VibratoState
from pytune_live.utils.note_utils import pitch_info

logger = logging.getLogger(__name__)

Event = Union[UnifiedPitchFrame, CalibrationStatus]
Subscriber = Callable[[Event], None]
ErrorHook = Callable[[Subscriber, BaseException], None]


class SubscriptionToken:
    """Jeton opaque rendu par `subscribe`."""

    __slots__ = ("id",)

    def __init__(self, id: int):
        self.id = id

    def __repr__(self) -> str:
        return f"SubscriptionToken({self.id})"


class UnifiedPitchDispatcher:
    def __init__(self, a4: float = 440.0, on_error: Optional[ErrorHook] = None):
        self.a4 = float(a4)
        self.on_error = on_error
        self._subscribers: Dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._last_frame: Optional[UnifiedPitchFrame] = None

    # ────────────────────────────────────────────────────────────────────
    def subscribe(self, callback: Subscriber) -> SubscriptionToken:
        if not callable(callback):
            raise TypeError("callback must be callable")
        token = SubscriptionToken(next(self._ids))
        self._subscribers[token.id] = callback
        return token

    def unsubscribe(self, token: SubscriptionToken) -> bool:
        return self._subscribers.pop(token.id, None) is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def last_frame(self) -> Optional[UnifiedPitchFrame]:
        return self._last_frame

    def set_a4(self, a4: float) -> None:
        self.a4 = float(a4)

    # ────────────────────────────────────────────────────────────────────
    def dispatch(self, raw: Optional[RawPitchResult]) -> UnifiedPitchFrame:
        frame = self.build_frame(raw)
        self._last_frame = frame
        self._deliver(frame)
        return frame

    def publish_status(self, status: CalibrationStatus) -> None:
        self._deliver(status)

    def build_frame(self, raw: Optional[RawPitchResult]) -> UnifiedPitchFrame:
        if raw is None:
            raw = RawPitchResult()

        freq = raw.frequency if raw.frequency and raw.frequency > 0 else None
        info = pitch_info(freq, self.a4)
        return UnifiedPitchFrame(
            frequency=freq,
            confidence=raw.confidence or 0.0,
            rms=raw.rms or 0.0,
            timestamp=raw.timestamp if raw.timestamp is not None else time.monotonic(),
            note=info.note if info else None,
            octave=info.octave if info else None,
            cents=info.cents if info else None,
            precise_cents=info.precise_cents if info else None,
            phase_velocity=raw.phase_velocity or 0.0,
            inharmonicity_offset=raw.inharmonicity_offset or 0.0,
            vibrato=raw.vibrato or VibratoState(),
            layers=raw.layers,
        )

    def _deliver(self, event: Event) -> None:
        # copie : un abonné peut se désinscrire pendant la distribution
        for callback in list(self._subscribers.values()):
            try:
                callback(event)
            except Exception as exc:
                logger.warning("Subscriber %r raised, skipping", callback, exc_info=True)
                if self.on_error is not None:
                    try:
                        self.on_error(callback, exc)
                    except Exception:
                        logger.warning("Error hook raised for subscriber %r", callback, exc_info=True)
