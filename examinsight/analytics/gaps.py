"""
Learning-gap detection ordered by the topic prerequisite graph.

A gap is a topic below the mastery threshold. Gaps are emitted in topological
order of the prerequisite graph (prerequisites first), so a weak foundation
shows up before the topics that depend on it. Among gaps that are free to go
next, lower mastery wins, then higher weight. Prerequisite cycles never raise:
the topics left over by the topological pass are appended in priority order and
flagged ``in_cycle``.
"""
import heapq
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence, Set

from ..services.scoring import quantize
from .config import AnalyticsConfig
from .topics import TopicPerformance

CRITICAL = "critical"
MODERATE = "moderate"
MINOR = "minor"


@dataclass(frozen=True)
class LearningGap:
    topic: str
    name: str
    subject: str
    mastery: float
    severity: str
    weight: float
    correct: int
    wrong: int
    blank: int
    root_cause: bool
    blocked_by: List[str] = field(default_factory=list)
    in_cycle: bool = False

    def to_dict(self) -> dict:
        return {
            "topic": self.topic,
            "name": self.name,
            "subject": self.subject,
            "mastery": quantize(self.mastery),
            "severity": self.severity,
            "weight": self.weight,
            "correct": self.correct,
            "wrong": self.wrong,
            "blank": self.blank,
            "root_cause": self.root_cause,
            "blocked_by": list(self.blocked_by),
            "in_cycle": self.in_cycle,
            "recommendation": recommendation(self),
        }


@dataclass(frozen=True)
class CascadingRisk:
    prerequisite: str
    mastery: float
    affected: List[str]
    risk_level: str

    def to_dict(self) -> dict:
        return {
            "prerequisite": self.prerequisite,
            "mastery": quantize(self.mastery),
            "affected": list(self.affected),
            "risk_level": self.risk_level,
        }


@dataclass(frozen=True)
class GapReport:
    gaps: List[LearningGap]
    cascading_risks: List[CascadingRisk]
    clusters: Dict[str, List[str]]
    health_score: float
    mastered: int
    analyzed: int

    @property
    def critical(self) -> List[LearningGap]:
        return [g for g in self.gaps if g.severity == CRITICAL]

    def to_dict(self) -> dict:
        return {
            "gaps": [g.to_dict() for g in self.gaps],
            "critical": [g.topic for g in self.critical],
            "cascading_risks": [r.to_dict() for r in self.cascading_risks],
            "clusters": {k: list(v) for k, v in self.clusters.items()},
            "health_score": self.health_score,
            "mastered": self.mastered,
            "analyzed": self.analyzed,
        }


def severity_for(mastery: float, config: AnalyticsConfig) -> str:
    if mastery < config.critical_threshold:
        return CRITICAL
    if mastery < config.weak_threshold:
        return MODERATE
    return MINOR


def recommendation(gap: LearningGap) -> str:
    if gap.severity == CRITICAL:
        return f"Revisit {gap.name} from the basics before moving on."
    if gap.blocked_by:
        return f"Strengthen {', '.join(gap.blocked_by)} first; {gap.name} builds on it."
    if gap.wrong > gap.blank:
        return f"Review the wrong answers in {gap.name}; the concepts are mixed up."
    if gap.blank:
        return f"Practice more {gap.name} questions; many were left blank."
    return f"Keep up regular practice on {gap.name}."


def _ancestors(topic: str, prerequisites: Mapping[str, Sequence[str]]) -> Set[str]:
    seen: Set[str] = set()
    stack = list(prerequisites.get(topic, ()))
    while stack:
        t = stack.pop()
        if t in seen:
            continue
        seen.add(t)
        stack.extend(prerequisites.get(t, ()))
    seen.discard(topic)
    return seen


def detect_gaps(
    performances: Sequence[TopicPerformance],
    prerequisites: Mapping[str, Sequence[str]],
    config: AnalyticsConfig,
) -> GapReport:
    """Gaps, cascading prerequisite risks, per-subject clusters and a 0-100 health score.

    ``prerequisites`` maps a topic to the topics it builds on. Topics with fewer
    than ``config.min_topic_questions`` questions are not analyzed.
    """
    analyzed = [p for p in performances if p.total >= config.min_topic_questions]
    by_topic = {p.topic: p for p in analyzed}
    below = {p.topic: p for p in analyzed if p.mastery < config.mastery_threshold}

    # edges between gap topics, through non-gap intermediates as well
    blocked_by: Dict[str, List[str]] = {}
    for topic in below:
        blocked_by[topic] = sorted(a for a in _ancestors(topic, prerequisites) if a in below)
    dependants: Dict[str, List[str]] = {t: [] for t in below}
    for topic, prereqs in blocked_by.items():
        for p in prereqs:
            dependants[p].append(topic)

    def rank(topic: str):
        p = below[topic]
        return (p.mastery, -p.weight, topic)

    indegree = {t: len(blocked_by[t]) for t in below}
    heap = [rank(t) for t, d in indegree.items() if d == 0]
    heapq.heapify(heap)
    ordered: List[str] = []
    while heap:
        *_, topic = heapq.heappop(heap)
        ordered.append(topic)
        for dep in dependants[topic]:
            indegree[dep] -= 1
            if indegree[dep] == 0:
                heapq.heappush(heap, rank(dep))
    done = set(ordered)
    cyclic = sorted((t for t in below if t not in done), key=rank)

    gaps = []
    for topic in ordered + cyclic:
        p = below[topic]
        gaps.append(LearningGap(
            topic=topic,
            name=p.name,
            subject=p.subject,
            mastery=p.mastery,
            severity=severity_for(p.mastery, config),
            weight=p.weight,
            correct=p.correct,
            wrong=p.wrong,
            blank=p.blank,
            root_cause=not blocked_by[topic],
            blocked_by=blocked_by[topic],
            in_cycle=topic in cyclic,
        ))

    risks = []
    for topic, p in by_topic.items():
        if p.mastery >= config.weak_threshold:
            continue
        affected = sorted(t for t, prereqs in prerequisites.items() if topic in prereqs and t in by_topic)
        if affected:
            risks.append(CascadingRisk(
                prerequisite=topic,
                mastery=p.mastery,
                affected=affected,
                risk_level="high" if p.mastery < config.critical_threshold else "medium",
            ))
    risks.sort(key=lambda r: (r.risk_level != "high", -len(r.affected), r.prerequisite))

    clusters: Dict[str, List[str]] = {}
    for g in gaps:
        clusters.setdefault(g.subject, []).append(g.topic)
    clusters = {s: ts for s, ts in clusters.items() if len(ts) >= 2}

    mastered = len(analyzed) - len(below)
    critical = sum(1 for g in gaps if g.severity == CRITICAL)
    health = 0.0
    if analyzed:
        health = mastered / len(analyzed) * 60 + (len(analyzed) - critical) / len(analyzed) * 40

    return GapReport(
        gaps=gaps,
        cascading_risks=risks,
        clusters=clusters,
        health_score=quantize(health, 2),
        mastered=mastered,
        analyzed=len(analyzed),
    )
