import json

import pytest

from examinsight.analytics import AnalyticsConfig, AnalyticsEngine, AnalyticsInput, InsufficientSample, NormalizedScore, normalize
from examinsight.analytics.confidence import assess_confidence, level_for, population_factor
from examinsight.analytics.gaps import CRITICAL, MINOR, detect_gaps
from examinsight.analytics.statistics import competition_rank, score_distribution
from examinsight.analytics.topics import ON_TRACK, STRENGTH, WEAKNESS, TopicPerformance, analyze_topics, topic_performance
from examinsight.analytics.weighting import CompositeScore, UnknownExamType, composite_score
from examinsight.services.scoring import BookletScoringEngine

from .conftest import CORRECT as KEY_ANSWERS
from .conftest import SHEETS, sheet

config = AnalyticsConfig()
scorer = BookletScoringEngine()


def perf(topic, correct, total, subject="MAT", weight=4.0):
    return TopicPerformance(topic=topic, name=topic, subject=subject, correct=correct, wrong=total - correct, blank=0, weight=weight)


# ============= Normalization =============

def test_small_population_is_insufficient_sample():
    result = normalize(10.0, [10.0, 12.0], min_size=5)
    assert isinstance(result, InsufficientSample)
    assert result.population_size == 2
    assert result.to_dict()["kind"] == "insufficient_sample"


def test_identical_population_has_neutral_scores():
    result = normalize(3.0, [3.0] * 5, min_size=5)
    assert isinstance(result, NormalizedScore)
    assert result.z_score == 0
    assert result.min_max == 0.5
    assert result.percentile == 50.0
    assert result.standard_score == 50.0


def test_top_of_population():
    result = normalize(40.0, [0.0, 10.0, 20.0, 30.0, 40.0], min_size=5)
    assert result.mean == 20.0
    assert result.z_score == 1.4142
    assert result.min_max == 1.0
    assert result.percentile == 90.0
    assert result.standard_score == 71.21


# ============= Composite score =============

def test_composite_score_bounds(answer_key, rotation):
    perfect = composite_score(scorer.score(sheet("p", KEY_ANSWERS), answer_key, rotation), "LGS", config)
    empty = composite_score(scorer.score(sheet("e", "-" * 10), answer_key, rotation), "LGS", config)
    assert perfect.scaled_score == 500.0
    assert perfect.weighted_net == perfect.max_weighted_net == 40.0
    assert empty.scaled_score == 100.0


def test_subjects_missing_from_table_weigh_one(answer_key, rotation):
    custom = AnalyticsConfig(coefficient_tables={"CUSTOM": {"TUR": 2.0}})
    result = composite_score(scorer.score(sheet("s4", "BBCDDDDDAB"), answer_key, rotation), "CUSTOM", custom)
    assert isinstance(result, CompositeScore)
    assert result.max_weighted_net == 14.0
    assert result.contributions == {"TUR": 5.3333, "MAT": 0.0, "FEN": 2.0}
    assert result.scaled_score == 309.524


def test_unknown_exam_type(answer_key, rotation):
    result = composite_score(scorer.score(sheet("s", KEY_ANSWERS), answer_key, rotation), "KPSS", config)
    assert isinstance(result, UnknownExamType)
    assert result.known == ("LGS", "TYT")


# ============= Confidence =============

@pytest.mark.parametrize("score,level", [(0.85, "very_high"), (0.84, "high"), (0.5, "moderate"), (0.3, "low"), (0.29, "very_low")])
def test_confidence_levels(score, level):
    assert level_for(score) == level


def test_population_factor_steps():
    assert [population_factor(n).score for n in (2, 3, 5, 10, 20, 30)] == [0.1, 0.3, 0.5, 0.7, 0.9, 1.0]


def test_full_coverage_large_population_is_very_high():
    result = assess_confidence(answered=90, total=90, population=[50.0] * 30)
    assert result.score == 1.0
    assert result.level == "very_high"
    assert not result.low_confidence
    assert result.warnings == []


def test_sparse_answers_small_population_is_low_confidence():
    result = assess_confidence(answered=10, total=90, population=[10.0, 20.0])
    assert result.score == 0.2667
    assert result.low_confidence
    assert len(result.warnings) == 2


def test_history_needs_two_points():
    one = assess_confidence(answered=9, total=10, population=[1.0] * 10, history=[5.0])
    two = assess_confidence(answered=9, total=10, population=[1.0] * 10, history=[5.0, 5.0])
    assert "history_variance" not in [f.name for f in one.factors]
    assert "history_variance" in [f.name for f in two.factors]


# ============= Topics and gaps =============

def test_topic_classification_and_priorities(answer_key, rotation):
    result = scorer.score(sheet("s4", "BBCDDDDDAB"), answer_key, rotation)
    breakdown = analyze_topics(topic_performance(result, answer_key, config), config)
    statuses = {t.performance.topic: t.status for t in breakdown.topics}
    assert statuses == {"T1": ON_TRACK, "T2": STRENGTH, "M1": WEAKNESS, "M2": ON_TRACK, "F1": STRENGTH}
    assert breakdown.strengths == ["F1", "T2"]
    assert breakdown.weaknesses == ["M1"]
    assert breakdown.priorities == ["M1", "M2", "T1"]


def test_single_question_topics_are_not_ranked():
    breakdown = analyze_topics([perf("A", 0, 1), perf("B", 0, 2)], config)
    assert breakdown.weaknesses == ["B"]
    assert len(breakdown.topics) == 2


def test_gaps_follow_prerequisites(answer_key, rotation):
    result = scorer.score(sheet("s4", "BBCDDDDDAB"), answer_key, rotation)
    report = detect_gaps(topic_performance(result, answer_key, config), answer_key.prerequisites, config)
    assert [g.topic for g in report.gaps] == ["M1", "M2", "T1"]
    m1, m2, t1 = report.gaps
    assert m1.severity == CRITICAL and m1.root_cause
    assert m2.blocked_by == ["M1"] and not m2.root_cause
    assert t1.severity == MINOR
    assert [(r.prerequisite, r.affected, r.risk_level) for r in report.cascading_risks] == [("M1", ["M2"], "high")]
    assert report.clusters == {"MAT": ["M1", "M2"]}
    assert report.health_score == 56.0


def test_prerequisite_comes_first_even_through_mastered_topics():
    performances = [perf("A", 1, 2), perf("B", 2, 2), perf("C", 0, 2)]
    report = detect_gaps(performances, {"C": ["B"], "B": ["A"]}, config)
    assert [g.topic for g in report.gaps] == ["A", "C"]
    assert report.gaps[1].blocked_by == ["A"]


def test_prerequisite_cycle_does_not_raise():
    performances = [perf("X", 0, 2), perf("Y", 1, 2), perf("Z", 1, 4), perf("W", 0, 2)]
    report = detect_gaps(performances, {"X": ["Y"], "Y": ["X"], "W": ["X"]}, config)
    assert report.gaps[0].topic == "Z"
    assert not report.gaps[0].in_cycle
    assert {g.topic for g in report.gaps if g.in_cycle} == {"X", "Y", "W"}


# ============= Statistics and engine =============

def test_competition_rank_ties():
    assert competition_rank({"a": 10, "b": 10, "c": 5}) == {"a": 1, "b": 1, "c": 3}


def test_score_distribution_includes_top_score():
    rows = score_distribution([100.0, 250.0, 499.9, 500.0])
    assert [r["count"] for r in rows] == [1, 1, 0, 2]


def _results(answer_key, rotation):
    results, rejected = scorer.score_many(SHEETS, answer_key, rotation)
    assert not rejected
    return results


def test_engine_payload(answer_key, rotation):
    results = _results(answer_key, rotation)
    me = results[0]
    classmates = [r for r, s in zip(results, SHEETS) if s.class_name == "8A"]
    engine = AnalyticsEngine(config)
    data = AnalyticsInput(result=me, answer_key=answer_key, exam_results=results, class_results=classmates, class_name="8A")

    payload = engine.analyze(data)
    assert payload["student_id"] == "s1"
    assert payload["composite"]["scaled_score"] == 500.0
    assert payload["rank"] == {"exam": 1, "exam_size": 6, "class": 1, "class_size": 4}
    assert payload["normalized"]["exam"]["kind"] == "normalized"
    assert payload["normalized"]["class"]["kind"] == "insufficient_sample"
    assert payload["gaps"]["gaps"] == []
    assert payload["subject_mastery"] == {"TUR": 1.0, "MAT": 1.0, "FEN": 1.0}
    json.dumps(payload)
    assert engine.analyze(data) == payload


def test_engine_ranking_and_statistics(answer_key, rotation):
    results = _results(answer_key, rotation)
    engine = AnalyticsEngine(config)
    ranking = engine.ranking(results, "LGS")
    assert ranking[0] == {"student_id": "s1", "score": 500.0, "rank": 1}
    assert ranking[-1]["student_id"] == "s6"
    stats = engine.exam_statistics(results, "LGS")
    assert stats["participants"] == 6
    assert stats["exam_type"] == "LGS"
    assert sum(r["count"] for r in stats["distribution"]) == 6
