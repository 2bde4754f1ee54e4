"""
Reliability of a student's analytics as a 0-1 score.

Each available factor is scored 0-1 and weighted; the overall score is the sum of
contributions over the sum of weights of the factors that were available.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from ..services.scoring import quantize

FACTOR_WEIGHTS = {
    "population_size": 0.30,
    "history_variance": 0.20,
    "answer_coverage": 0.15,
    "outliers": 0.10,
}

LEVELS = (
    (0.85, "very_high"),
    (0.70, "high"),
    (0.50, "moderate"),
    (0.30, "low"),
)


@dataclass(frozen=True)
class ConfidenceFactor:
    name: str
    score: float
    weight: float
    status: str

    @property
    def contribution(self) -> float:
        return self.score * self.weight

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "score": quantize(self.score),
            "weight": self.weight,
            "contribution": quantize(self.contribution),
            "status": self.status,
        }


@dataclass(frozen=True)
class ConfidenceResult:
    score: float
    level: str
    low_confidence: bool
    factors: List[ConfidenceFactor] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_reliable(self) -> bool:
        return not self.low_confidence

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "level": self.level,
            "low_confidence": self.low_confidence,
            "factors": [f.to_dict() for f in self.factors],
            "warnings": list(self.warnings),
        }


def _status(score: float, good: float, acceptable: float) -> str:
    if score >= good:
        return "good"
    return "acceptable" if score >= acceptable else "poor"


def population_factor(size: int) -> ConfidenceFactor:
    if size >= 30:
        score = 1.0
    elif size >= 20:
        score = 0.9
    elif size >= 10:
        score = 0.7
    elif size >= 5:
        score = 0.5
    elif size >= 3:
        score = 0.3
    else:
        score = 0.1
    return ConfidenceFactor("population_size", score, FACTOR_WEIGHTS["population_size"], _status(score, 0.7, 0.4))


def variance_factor(history: Sequence[float]) -> ConfidenceFactor:
    variance = float(np.var(np.asarray(history, dtype=float)))
    score = 1.0 - min(1.0, variance / 100.0)
    return ConfidenceFactor("history_variance", score, FACTOR_WEIGHTS["history_variance"], _status(score, 0.7, 0.4))


def coverage_factor(answered: int, total: int) -> ConfidenceFactor:
    score = answered / total if total else 0.0
    return ConfidenceFactor("answer_coverage", score, FACTOR_WEIGHTS["answer_coverage"], _status(score, 0.9, 0.7))


def outlier_factor(population: Sequence[float]) -> ConfidenceFactor:
    """Share of the population more than 2 std from the mean; 20% outliers scores zero."""
    arr = np.asarray(population, dtype=float)
    std = float(arr.std())
    outliers = 0 if std == 0 else int(np.sum(np.abs(arr - arr.mean()) > 2 * std))
    score = max(0.0, 1.0 - min(1.0, outliers / len(arr) * 5))
    return ConfidenceFactor("outliers", score, FACTOR_WEIGHTS["outliers"], _status(score, 0.8, 0.5))


def level_for(score: float) -> str:
    for threshold, label in LEVELS:
        if score >= threshold:
            return label
    return "very_low"


def assess_confidence(
    answered: int,
    total: int,
    population: Sequence[float],
    history: Optional[Sequence[float]] = None,
    low_threshold: float = 0.5,
) -> ConfidenceResult:
    """Combine answer coverage, population size and historical variance.

    ``history`` holds the student's nets from earlier exams; it is used only
    with at least two points.
    """
    factors = [population_factor(len(population)), coverage_factor(answered, total)]
    if len(population) > 0:
        factors.append(outlier_factor(population))
    if history is not None and len(history) >= 2:
        factors.append(variance_factor(history))

    total_weight = sum(f.weight for f in factors)
    score = sum(f.contribution for f in factors) / total_weight if total_weight else 0.0
    score = quantize(score)

    warnings = []
    for f in factors:
        if f.status != "poor":
            continue
        if f.name == "population_size":
            warnings.append("Comparison population is small; relative scores are unreliable")
        elif f.name == "answer_coverage":
            warnings.append("Many questions left blank")
        elif f.name == "history_variance":
            warnings.append("Results vary strongly between exams")
        elif f.name == "outliers":
            warnings.append("Population contains many outliers")

    return ConfidenceResult(
        score=score,
        level=level_for(score),
        low_confidence=score < low_threshold,
        factors=factors,
        warnings=warnings,
    )
