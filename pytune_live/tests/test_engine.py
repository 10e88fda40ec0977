import math

import numpy as np
import pytest

from pytune_live.core.engine import PitchEngine
from pytune_live.types.dataclasses import CalibrationStatus, SampleBlock, UnifiedPitchFrame
from pytune_live.types.enums import CalibrationPhase, NoiseState
from pytune_live.types.schemas import ConfigurationError

SR = 48000


def sine_blocks(freq, block_size, count, amp=0.5):
    n = np.arange(block_size * count)
    signal = (amp * np.sin(2 * np.pi * freq * n / SR)).astype(np.float32)
    return signal.reshape(count, block_size)


def noise_blocks(block_size, count, scale=0.01, seed=0):
    rng = np.random.default_rng(seed)
    return (scale * rng.standard_normal((count, block_size))).astype(np.float32)


def test_sine_end_to_end():
    engine = PitchEngine()
    frames = []
    engine.subscribe(frames.append)
    for block in sine_blocks(440.0, 4096, 20):
        last = engine.submit(block)

    assert len(frames) == 20
    assert last is frames[-1] is engine.last_frame
    assert last.has_pitch
    assert abs(1200 * math.log2(last.frequency / 440.0)) < 1.0, f"{last.frequency:.3f} Hz"
    assert (last.note, last.octave) == ("A", 4)
    assert last.layers.refined is not None and last.layers.refined.method == "phase_vocoder"
    assert not last.vibrato.detected
    assert frames[1].timestamp > frames[0].timestamp


def test_silence_yields_empty_frame():
    engine = PitchEngine(buffer_size=1024)
    frame = engine.submit(np.zeros(1024, dtype=np.float32))
    assert not frame.has_pitch
    assert frame.note is None and frame.rms == 0.0


def test_invalid_blocks_are_absorbed():
    engine = PitchEngine()
    blocks = sine_blocks(440.0, 4096, 6)
    for block in blocks:
        good = engine.submit(block)

    bad = blocks[0].copy()
    bad[10] = np.nan
    held = engine.submit(bad)
    assert held.frequency == pytest.approx(engine.stats().smoothed_freq)
    assert held.confidence == 0.0

    assert engine.submit(np.ones(100, dtype=np.float32)).frequency == pytest.approx(held.frequency)
    assert engine.submit(SampleBlock(blocks[0], 44100)).frequency == pytest.approx(held.frequency)
    assert abs(held.frequency - good.frequency) < 1e-9


def test_configure_applies_at_next_block():
    engine = PitchEngine(buffer_size=1024)
    engine.configure(a4=442.0, overSubtraction=2.0)
    assert engine.config.a4 == 440.0
    assert engine.requested_config.a4 == 442.0
    engine.submit(np.zeros(1024, dtype=np.float32))
    assert engine.config.a4 == 442.0
    assert engine.dispatcher.a4 == 442.0


def test_configure_rejects_and_keeps_previous():
    engine = PitchEngine(instrument="piano")
    with pytest.raises(ConfigurationError):
        engine.configure(instrument="kazoo")
    with pytest.raises(ConfigurationError):
        engine.configure({"noise_profile": [0.0] * 3})
    assert engine.requested_config.instrument == "piano"
    with pytest.raises(ConfigurationError):
        PitchEngine(min_freq=3000.0)


def test_calibration_through_engine():
    engine = PitchEngine(buffer_size=1024, calibration_frames=5)
    statuses = []
    engine.subscribe(lambda e: statuses.append(e) if isinstance(e, CalibrationStatus) else None)

    engine.start_calibration()
    for block in noise_blocks(1024, 5):
        engine.submit(block)

    assert statuses[0].phase == CalibrationPhase.CALIBRATING
    assert statuses[-1].phase == CalibrationPhase.COMPLETE
    assert engine.noise_state == NoiseState.CALIBRATED
    assert engine.noise_profile.shape == (512,)

    engine.reset()
    engine.submit(np.zeros(1024, dtype=np.float32))
    assert engine.noise_state == NoiseState.IDLE


def test_forced_stop_without_frames_reports_failure():
    engine = PitchEngine(buffer_size=1024)
    statuses = []
    engine.subscribe(lambda e: statuses.append(e) if isinstance(e, CalibrationStatus) else None)
    engine.start_calibration()
    engine.stop_calibration()
    frame = engine.submit(np.zeros(1024, dtype=np.float32))

    assert isinstance(frame, UnifiedPitchFrame)
    assert [s.phase for s in statuses] == [CalibrationPhase.CALIBRATING, CalibrationPhase.FAILED]
    assert engine.noise_state == NoiseState.IDLE


def test_noise_profile_load_and_bypass():
    engine = PitchEngine(buffer_size=1024)
    with pytest.raises(ConfigurationError):
        engine.load_noise_profile(np.zeros(100))
    engine.load_noise_profile(np.full(512, 1e-4))
    engine.set_bypass(True)
    engine.submit(np.zeros(1024, dtype=np.float32))
    assert engine.noise_state == NoiseState.CALIBRATED
    assert engine._noise.bypassed


def test_buffer_size_change_rebuilds_pipeline():
    engine = PitchEngine(buffer_size=1024)
    engine.configure(buffer_size=2048, noise_profile=[0.0] * 1024)
    frame = engine.submit(np.zeros(2048, dtype=np.float32))
    assert not frame.has_pitch
    assert engine.noise_profile.shape == (1024,)
    assert engine.config.buffer_size == 2048


def test_subscribe_unsubscribe():
    engine = PitchEngine(buffer_size=1024)
    got = []
    token = engine.subscribe(got.append)
    engine.submit(np.zeros(1024, dtype=np.float32))
    assert engine.unsubscribe(token)
    engine.submit(np.zeros(1024, dtype=np.float32))
    assert len(got) == 1


def test_buffer_size_change_restarts_calibration():
    engine = PitchEngine(buffer_size=1024, calibration_frames=5)
    statuses = []
    engine.subscribe(lambda e: statuses.append(e) if isinstance(e, CalibrationStatus) else None)

    engine.start_calibration()
    for block in noise_blocks(1024, 3):
        engine.submit(block)
    assert engine.noise_state == NoiseState.CALIBRATING

    engine.configure(buffer_size=2048)
    before = len(statuses)
    for block in noise_blocks(2048, 5, seed=1):
        engine.submit(block)

    restarted = statuses[before]
    assert restarted.phase == CalibrationPhase.CALIBRATING and restarted.progress == 0.0
    assert statuses[-1].phase == CalibrationPhase.COMPLETE
    assert engine.noise_state == NoiseState.CALIBRATED
    assert engine.noise_profile.shape == (1024,)


def test_stretched_partials_are_measured():
    f1, B = 220.0, 0.0003
    n = np.arange(4096 * 20)
    signal = sum(
        0.2 / k * np.sin(2 * np.pi * k * f1 * math.sqrt(1 + B * k * k) * n / SR) for k in range(1, 7)
    ).astype(np.float32)

    engine = PitchEngine()
    for block in signal.reshape(20, 4096):
        last = engine.submit(block)

    harmonics = last.layers.harmonics
    assert harmonics.divisor == 1
    assert [k for k, _ in harmonics.partials] == [1, 2, 3, 4, 5, 6]
    assert 0.0 < last.layers.measured_b < 1e-3
