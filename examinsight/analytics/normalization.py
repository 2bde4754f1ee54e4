"""
Position of one student's score within a comparison population.
"""
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np

from ..services.scoring import quantize


@dataclass(frozen=True)
class InsufficientSample:
    """Population too small for a meaningful normalized score."""
    population_size: int
    required: int
    scope: str = "exam"

    @property
    def kind(self) -> str:
        return "insufficient_sample"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "population_size": self.population_size, "required": self.required, "scope": self.scope}


@dataclass(frozen=True)
class NormalizedScore:
    value: float
    scope: str
    population_size: int
    mean: float
    std: float
    z_score: float
    min_max: float
    percentile: float
    standard_score: float

    @property
    def kind(self) -> str:
        return "normalized"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "scope": self.scope,
            "value": self.value,
            "population_size": self.population_size,
            "mean": self.mean,
            "std": self.std,
            "z_score": self.z_score,
            "min_max": self.min_max,
            "percentile": self.percentile,
            "standard_score": self.standard_score,
        }


NormalizationResult = Union[NormalizedScore, InsufficientSample]


def z_score(value: float, mean: float, std: float) -> float:
    return 0.0 if std == 0 else (value - mean) / std


def min_max(value: float, low: float, high: float) -> float:
    if high == low:
        return 0.5
    return float(min(1.0, max(0.0, (value - low) / (high - low))))


def percentile_rank(value: float, population: np.ndarray) -> float:
    """Share of the population below ``value``, ties counted half."""
    below = int(np.sum(population < value))
    equal = int(np.sum(population == value))
    return (below + 0.5 * equal) / len(population) * 100.0


def normalize(
    value: float,
    population: Sequence[float],
    min_size: int,
    scope: str = "exam",
    standard_mean: float = 50.0,
    standard_std: float = 15.0,
) -> NormalizationResult:
    """Z-score, min-max, percentile and standard score of ``value`` within ``population``.

    ``population`` is expected to include the student. Below ``min_size`` members
    the result is InsufficientSample instead of a degenerate score.
    """
    if len(population) < max(min_size, 1):
        return InsufficientSample(population_size=len(population), required=min_size, scope=scope)

    arr = np.asarray(population, dtype=float)
    mean = float(arr.mean())
    std = float(arr.std())  # population std, ddof=0
    z = z_score(value, mean, std)
    return NormalizedScore(
        value=quantize(value),
        scope=scope,
        population_size=len(arr),
        mean=quantize(mean),
        std=quantize(std),
        z_score=quantize(z),
        min_max=quantize(min_max(value, float(arr.min()), float(arr.max()))),
        percentile=quantize(percentile_rank(value, arr), 2),
        standard_score=quantize(standard_mean + standard_std * z, 2),
    )
