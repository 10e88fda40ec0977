# pytune_live/core/handoff.py
"""
Passage des blocs entre le thread de capture et le thread de traitement.

`BlockChannel` : canal borné mono-producteur / mono-consommateur. Le producteur
ne bloque jamais : si le consommateur est en retard, le bloc est refusé et compté.
Un `SampleBlock` est une copie immuable : une fois envoyé, il appartient au
consommateur.
`EngineWorker` : thread qui vide le canal et appelle `PitchEngine.submit`.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Optional, Union

import numpy as np

from pytune_live.types.dataclasses import SampleBlock

logger = logging.getLogger(__name__)

_CLOSED = object()


class ChannelClosed(Exception):
    pass


class BlockChannel:
    def __init__(self, capacity: int = 8):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1 (got {capacity})")
        self.capacity = capacity
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __len__(self) -> int:
        return self._queue.qsize()

    def send(self, block: Union[SampleBlock, np.ndarray], sample_rate: int = 48000, timestamp: float = 0.0) -> bool:
        """Dépose un bloc sans bloquer. False si le canal est plein (bloc perdu)."""
        if self.closed:
            raise ChannelClosed("send on a closed channel")
        if not isinstance(block, SampleBlock):
            block = SampleBlock(block, sample_rate, timestamp)
        try:
            self._queue.put_nowait(block)
        except queue.Full:
            self.dropped += 1
            logger.warning("Block channel full, dropped block at t=%.3f (%d dropped)", block.timestamp, self.dropped)
            return False
        return True

    def receive(self, timeout: Optional[float] = None) -> Optional[SampleBlock]:
        """Prochain bloc, ou None si rien n'arrive avant `timeout` ou si le canal est fermé."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        """
        Ferme le canal ; le consommateur termine après les blocs déjà en file
        (canal plein : le plus ancien est sacrifié pour la sentinelle).
        """
        if self.closed:
            return
        self._closed.set()
        # sentinelle : débloque un `receive` en attente
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass


class EngineWorker(threading.Thread):
    """Consomme un `BlockChannel` et alimente le moteur, jusqu'à fermeture du canal."""

    def __init__(self, engine, channel: BlockChannel, poll_interval: float = 0.1):
        super().__init__(name="pytune-live-engine", daemon=True)
        self.engine = engine
        self.channel = channel
        self.poll_interval = poll_interval
        self.processed = 0

    def run(self) -> None:
        logger.info("Engine worker started")
        while True:
            block = self.channel.receive(timeout=self.poll_interval)
            if block is None:
                if self.channel.closed and len(self.channel) == 0:
                    break
                continue
            self.engine.submit(block)
            self.processed += 1
        logger.info("Engine worker stopped after %d blocks", self.processed)

    def stop(self, timeout: Optional[float] = None) -> None:
        self.channel.close()
        self.join(timeout)
