from .config import CALCULATION_VERSION, AnalyticsConfig
from .engine import AnalyticsEngine, AnalyticsInput
from .normalization import InsufficientSample, NormalizedScore, normalize
from .weighting import CompositeScore, UnknownExamType, composite_score

__all__ = [
    "CALCULATION_VERSION",
    "AnalyticsConfig",
    "AnalyticsEngine",
    "AnalyticsInput",
    "InsufficientSample",
    "NormalizedScore",
    "normalize",
    "CompositeScore",
    "UnknownExamType",
    "composite_score",
]
