"""
Pure analytics pipeline: scored results in, snapshot payload out.

No I/O and no clock; identical input gives an identical payload.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..services.scoring import AnswerKey, ScoredResult
from .config import AnalyticsConfig
from .confidence import assess_confidence
from .gaps import detect_gaps
from .normalization import normalize
from .statistics import competition_rank, exam_statistics
from .topics import analyze_topics, subject_mastery, topic_performance
from .weighting import CompositeScore, composite_score


@dataclass(frozen=True)
class AnalyticsInput:
    result: ScoredResult
    answer_key: AnswerKey
    exam_results: Sequence[ScoredResult]
    class_results: Sequence[ScoredResult] = ()
    class_name: Optional[str] = None
    history: Sequence[float] = field(default_factory=tuple)


class AnalyticsEngine:
    def __init__(self, config: AnalyticsConfig = None):
        self.config = config or AnalyticsConfig()

    def scaled_scores(self, results: Sequence[ScoredResult], exam_type: str) -> Dict[str, float]:
        """Scaled score per student; raw net when the exam type has no coefficient table."""
        scores = {}
        for r in results:
            composite = composite_score(r, exam_type, self.config)
            scores[r.student_id] = composite.scaled_score if isinstance(composite, CompositeScore) else float(r.net)
        return scores

    def _rank(self, result: ScoredResult, population: Sequence[ScoredResult], exam_type: str) -> Optional[int]:
        if not population:
            return None
        scores = self.scaled_scores(population, exam_type)
        scores.setdefault(result.student_id, self.scaled_scores([result], exam_type)[result.student_id])
        return competition_rank(scores)[result.student_id]

    def analyze(self, data: AnalyticsInput) -> dict:
        cfg = self.config
        key = data.answer_key
        result = data.result
        net = float(result.net)

        exam_nets = [float(r.net) for r in data.exam_results]
        class_nets = [float(r.net) for r in data.class_results]
        normalized = {
            "exam": normalize(net, exam_nets, cfg.min_population_size, "exam", cfg.standard_mean, cfg.standard_std),
        }
        if data.class_name:
            normalized["class"] = normalize(net, class_nets, cfg.min_population_size, "class", cfg.standard_mean, cfg.standard_std)

        performances = topic_performance(result, key, cfg)
        topics = analyze_topics(performances, cfg)
        gaps = detect_gaps(performances, key.prerequisites, cfg)
        confidence = assess_confidence(
            answered=result.correct + result.wrong,
            total=result.question_count,
            population=exam_nets,
            history=list(data.history) or None,
            low_threshold=cfg.low_confidence_threshold,
        )
        composite = composite_score(result, key.exam_type, cfg)

        return {
            "exam_id": result.exam_id,
            "student_id": result.student_id,
            "exam_type": key.exam_type,
            "class_name": data.class_name,
            "calculation_version": cfg.calculation_version,
            "score": result.to_dict(),
            "composite": composite.to_dict(),
            "normalized": {scope: n.to_dict() for scope, n in normalized.items()},
            "rank": {
                "exam": self._rank(result, data.exam_results, key.exam_type),
                "exam_size": len(data.exam_results),
                "class": self._rank(result, data.class_results, key.exam_type) if data.class_name else None,
                "class_size": len(data.class_results) if data.class_name else None,
            },
            "confidence": confidence.to_dict(),
            "gaps": gaps.to_dict(),
            "topics": topics.to_dict(),
            "subject_mastery": subject_mastery(performances),
        }

    def exam_statistics(self, results: Sequence[ScoredResult], exam_type: str) -> dict:
        stats = exam_statistics(results, self.scaled_scores(results, exam_type))
        stats["exam_type"] = exam_type
        return stats

    def ranking(self, results: Sequence[ScoredResult], exam_type: str) -> List[dict]:
        scores = self.scaled_scores(results, exam_type)
        ranks = competition_rank(scores)
        return sorted(
            ({"student_id": sid, "score": scores[sid], "rank": rank} for sid, rank in ranks.items()),
            key=lambda row: (row["rank"], row["student_id"]),
        )
