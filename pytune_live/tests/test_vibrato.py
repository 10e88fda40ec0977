import numpy as np

from pytune_live.analysis.vibrato import VibratoDetector

FPS = 60.0


def test_detects_5_5hz_30_cent_vibrato():
    det = VibratoDetector()
    for i in range(30):
        t = i / FPS
        freq = 440.0 * 2 ** (30.0 * np.sin(2 * np.pi * 5.5 * t) / 1200)
        state = det.update(freq, t)
    assert state.detected
    assert 3.0 <= state.rate <= 10.0
    assert state.depth >= 5.0


def test_steady_tone_is_not_vibrato():
    det = VibratoDetector()
    for i in range(30):
        state = det.update(440.0, i / FPS)
    assert not state.detected
    assert state.depth == 0.0


def test_needs_enough_frames_and_resets_on_silence():
    det = VibratoDetector()
    for i in range(5):
        freq = 440.0 * 2 ** (30.0 * np.sin(2 * np.pi * 5.5 * i / FPS) / 1200)
        assert not det.update(freq, i / FPS).detected
    assert not det.update(None, 0.1).detected
