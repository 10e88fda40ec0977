import pytest

from pytune_live.utils.note_utils import cents_between, pitch_info


def test_pitch_info():
    assert pitch_info(440.0) == ("A", 4, 0, 0.0)
    assert pitch_info(466.16)[:2] == ("A#", 4)
    assert pitch_info(27.5)[:2] == ("A", 0)
    assert pitch_info(261.63)[:2] == ("C", 4)
    info = pitch_info(445.0)
    assert info.cents == 20 and info.precise_cents == pytest.approx(19.6)


def test_pitch_info_follows_reference():
    assert pitch_info(442.0, a4=442.0) == ("A", 4, 0, 0.0)
    assert pitch_info(440.0, a4=442.0).cents == -8


def test_pitch_info_rejects_missing():
    assert pitch_info(None) is None
    assert pitch_info(0.0) is None
    assert pitch_info(float("nan")) is None


def test_cents_between():
    assert cents_between(440.0, 880.0) == pytest.approx(1200.0)
    assert cents_between(440.0, 220.0) == pytest.approx(-1200.0)
