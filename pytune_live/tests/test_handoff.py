import numpy as np
import pytest

from pytune_live.core.engine import PitchEngine
from pytune_live.core.handoff import BlockChannel, ChannelClosed, EngineWorker
from pytune_live.types.dataclasses import SampleBlock, UnifiedPitchFrame


def test_channel_is_bounded_and_fifo():
    ch = BlockChannel(capacity=2)
    assert ch.send(np.zeros(4), 48000, 0.0)
    assert ch.send(np.ones(4), 48000, 0.1)
    assert not ch.send(np.ones(4), 48000, 0.2)
    assert ch.dropped == 1

    first = ch.receive(timeout=0.1)
    assert isinstance(first, SampleBlock) and first.timestamp == 0.0
    assert ch.receive(timeout=0.1).timestamp == 0.1
    assert ch.receive(timeout=0.01) is None


def test_sent_block_is_an_independent_copy():
    ch = BlockChannel()
    data = np.zeros(8, dtype=np.float32)
    ch.send(data)
    data[:] = 1.0
    block = ch.receive(timeout=0.1)
    assert np.all(block.samples == 0.0)
    assert not block.samples.flags.writeable


def test_closed_channel_rejects_send():
    ch = BlockChannel()
    ch.close()
    assert ch.closed
    assert ch.receive(timeout=0.01) is None
    with pytest.raises(ChannelClosed):
        ch.send(np.zeros(4))


def test_worker_feeds_engine():
    engine = PitchEngine(buffer_size=1024)
    frames = []
    engine.subscribe(lambda e: frames.append(e) if isinstance(e, UnifiedPitchFrame) else None)

    ch = BlockChannel(capacity=8)
    worker = EngineWorker(engine, ch, poll_interval=0.01)
    worker.start()
    for i in range(5):
        assert ch.send(np.zeros(1024, dtype=np.float32), 48000, i * 1024 / 48000)
    worker.stop(timeout=30.0)

    assert not worker.is_alive()
    assert worker.processed == 5
    assert [f.timestamp for f in frames] == [i * 1024 / 48000 for i in range(5)]
