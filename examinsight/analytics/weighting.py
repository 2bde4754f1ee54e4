"""
Composite predicted score from per-subject coefficients.
"""
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, Tuple, Union

from ..services.scoring import ScoredResult, quantize
from .config import AnalyticsConfig


@dataclass(frozen=True)
class UnknownExamType:
    exam_type: str
    known: Tuple[str, ...]

    @property
    def kind(self) -> str:
        return "unknown_exam_type"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "exam_type": self.exam_type, "known": list(self.known)}


@dataclass(frozen=True)
class CompositeScore:
    exam_type: str
    weighted_net: float
    max_weighted_net: float
    scaled_score: float
    contributions: Dict[str, float]

    @property
    def kind(self) -> str:
        return "composite"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "exam_type": self.exam_type,
            "weighted_net": self.weighted_net,
            "max_weighted_net": self.max_weighted_net,
            "scaled_score": self.scaled_score,
            "contributions": dict(self.contributions),
        }


def coefficient_for(table: Dict[str, float], subject: str) -> Fraction:
    # subjects missing from the table count with weight 1
    return Fraction(str(table.get(subject, 1.0)))


def composite_score(result: ScoredResult, exam_type: str, config: AnalyticsConfig) -> Union[CompositeScore, UnknownExamType]:
    """Weighted net and its projection onto the [score_floor, score_ceiling] scale.

    scaled = floor + weighted_net * (ceiling - floor) / max_weighted_net, where
    max_weighted_net is the weighted net of a perfect sheet.
    """
    table = config.coefficient_tables.get(exam_type)
    if table is None:
        return UnknownExamType(exam_type=exam_type, known=tuple(sorted(config.coefficient_tables)))

    weighted = Fraction(0)
    maximum = Fraction(0)
    contributions = {}
    for subject in result.subjects:
        coef = coefficient_for(table, subject.subject)
        part = subject.net * coef
        contributions[subject.subject] = quantize(part)
        weighted += part
        maximum += subject.question_count * coef

    floor = Fraction(str(config.score_floor))
    ceiling = Fraction(str(config.score_ceiling))
    scaled = floor if maximum == 0 else floor + weighted * (ceiling - floor) / maximum
    scaled = min(ceiling, max(floor, scaled))
    return CompositeScore(
        exam_type=exam_type,
        weighted_net=quantize(weighted),
        max_weighted_net=quantize(maximum),
        scaled_score=quantize(scaled, 3),
        contributions=contributions,
    )
