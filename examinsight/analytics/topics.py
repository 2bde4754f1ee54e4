"""
Topic-level performance, strength/weakness classification and improvement priorities.
"""
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..services.scoring import CORRECT, WRONG, AnswerKey, ScoredResult, quantize
from .config import AnalyticsConfig

STRENGTH = "strength"
WEAKNESS = "weakness"
ON_TRACK = "on_track"

MAX_LISTED = 5


@dataclass(frozen=True)
class TopicPerformance:
    topic: str
    name: str
    subject: str
    correct: int
    wrong: int
    blank: int
    weight: float

    @property
    def total(self) -> int:
        return self.correct + self.wrong + self.blank

    @property
    def mastery(self) -> float:
        return self.correct / self.total if self.total else 0.0


@dataclass(frozen=True)
class TopicStatus:
    performance: TopicPerformance
    status: str

    def to_dict(self) -> dict:
        p = self.performance
        return {
            "topic": p.topic,
            "name": p.name,
            "subject": p.subject,
            "correct": p.correct,
            "wrong": p.wrong,
            "blank": p.blank,
            "total": p.total,
            "mastery": quantize(p.mastery),
            "weight": p.weight,
            "status": self.status,
        }


@dataclass(frozen=True)
class TopicBreakdown:
    topics: List[TopicStatus]
    strengths: List[str]
    weaknesses: List[str]
    priorities: List[str]

    def to_dict(self) -> dict:
        return {
            "topics": [t.to_dict() for t in self.topics],
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "priorities": list(self.priorities),
        }


def topic_performance(result: ScoredResult, key: AnswerKey, config: AnalyticsConfig) -> List[TopicPerformance]:
    """Per-topic tallies in first-appearance order. Questions without a topic are skipped."""
    table = config.coefficient_tables.get(key.exam_type, {})
    tallies: "OrderedDict[str, List]" = OrderedDict()
    for item, outcome in zip(key.items, result.outcomes):
        if not item.topic:
            continue
        t = tallies.setdefault(item.topic, [item.subject, 0, 0, 0])
        if outcome == CORRECT:
            t[1] += 1
        elif outcome == WRONG:
            t[2] += 1
        else:
            t[3] += 1
    return [
        TopicPerformance(
            topic=topic,
            name=key.topic_names.get(topic, topic),
            subject=subject,
            correct=c,
            wrong=w,
            blank=b,
            weight=float(table.get(subject, 1.0)),
        )
        for topic, (subject, c, w, b) in tallies.items()
    ]


def classify(mastery: float, config: AnalyticsConfig) -> str:
    if mastery >= config.mastery_threshold:
        return STRENGTH
    if mastery < config.weak_threshold:
        return WEAKNESS
    return ON_TRACK


def priority_order(performances: Sequence[TopicPerformance]) -> List[TopicPerformance]:
    """Lower mastery first, then higher weight, then topic id for determinism."""
    return sorted(performances, key=lambda p: (p.mastery, -p.weight, p.topic))


def analyze_topics(performances: Sequence[TopicPerformance], config: AnalyticsConfig, min_questions: Optional[int] = None) -> TopicBreakdown:
    min_questions = config.min_topic_questions if min_questions is None else min_questions
    statuses = [TopicStatus(p, classify(p.mastery, config)) for p in performances]

    # single-question topics are reported but not ranked
    rankable = [s for s in statuses if s.performance.total >= min_questions]
    strengths = sorted(
        (s.performance for s in rankable if s.status == STRENGTH),
        key=lambda p: (-p.mastery, -p.weight, p.topic),
    )
    weaknesses = priority_order([s.performance for s in rankable if s.status == WEAKNESS])
    priorities = priority_order([s.performance for s in rankable if s.status != STRENGTH])

    return TopicBreakdown(
        topics=statuses,
        strengths=[p.topic for p in strengths[:MAX_LISTED]],
        weaknesses=[p.topic for p in weaknesses[:MAX_LISTED]],
        priorities=[p.topic for p in priorities],
    )


def subject_mastery(performances: Sequence[TopicPerformance]) -> Dict[str, float]:
    totals: Dict[str, List[int]] = {}
    for p in performances:
        t = totals.setdefault(p.subject, [0, 0])
        t[0] += p.correct
        t[1] += p.total
    return {s: quantize(c / n) if n else 0.0 for s, (c, n) in totals.items()}
