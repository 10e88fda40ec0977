import pytest

from pytune_live.analysis.fusion import fuse_candidates
from pytune_live.types.dataclasses import InvalidObservation, ValidObservation
from pytune_live.types.enums import ObservationSource as Src


def test_time_domain_consensus_wins_over_octave_error():
    fused = fuse_candidates([
        ValidObservation(220.0, 0.4, Src.YIN),
        ValidObservation(221.0, 0.4, Src.NSDF),
        ValidObservation(440.0, 1.0, Src.CQT),
        ValidObservation(440.0, 1.0, Src.SPECTRAL),
    ])
    assert fused.is_valid and fused.source == Src.FUSED
    assert 220.0 < fused.frequency < 221.0
    # seuls YIN et NSDF sont en accord : 1.2 / 3.0 du poids
    assert fused.confidence == pytest.approx(0.4 * 0.4)


def test_weighted_median_without_consensus():
    fused = fuse_candidates([
        ValidObservation(220.0, 0.4, Src.YIN),
        ValidObservation(440.0, 1.0, Src.CQT),
        ValidObservation(440.0, 1.0, Src.SPECTRAL),
    ])
    assert fused.frequency == pytest.approx(440.0)
    assert fused.confidence == pytest.approx(1.8 / 2.4)


def test_disagreeing_time_domain_votes_fall_back_to_median():
    fused = fuse_candidates([
        ValidObservation(220.0, 0.9, Src.YIN),
        ValidObservation(440.0, 0.9, Src.NSDF),
        ValidObservation(440.0, 1.0, Src.CQT),
    ])
    assert fused.frequency == pytest.approx(440.0)


def test_single_and_empty():
    fused = fuse_candidates([ValidObservation(330.0, 0.7, Src.SPECTRAL)])
    assert (fused.frequency, fused.confidence, fused.source) == (330.0, 0.7, Src.FUSED)
    assert not fuse_candidates([]).is_valid
    assert not fuse_candidates([InvalidObservation(Src.YIN, "no period found")]).is_valid
