from enum import Enum


class WindowType(str, Enum):
    HAMMING = "hamming"
    HANNING = "hann"
    BLACKMAN = "blackman"


class NoiseState(str, Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    CALIBRATED = "calibrated"


class CalibrationPhase(str, Enum):
    CALIBRATING = "calibrating"
    COMPLETE = "complete"
    FAILED = "failed"


class DecoderState(str, Enum):
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"


class ObservationSource(str, Enum):
    CQT = "cqt"
    YIN = "yin"            # estimateur temporel
    NSDF = "nsdf"          # McLeod (NSDF)
    SPECTRAL = "spectral"  # série harmonique (fondamental fantôme)
    FUSED = "fused"        # médiane pondérée des candidats
    REFINED = "refined"    # phase vocoder
    CORRECTED = "corrected"
    HOST = "host"          # observation fournie de l'extérieur
