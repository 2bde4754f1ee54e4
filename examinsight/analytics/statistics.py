"""
Exam-wide statistics and ranking over a scored population.
"""
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np

from ..services.scoring import ScoredResult, quantize

DISTRIBUTION_BUCKETS = ((100, 200), (200, 300), (300, 400), (400, 500))


def competition_rank(values: Mapping[str, float]) -> Dict[str, int]:
    """Standard competition ranking, highest first: ties share a rank, the next rank skips (1, 1, 3)."""
    ordered = sorted(values.items(), key=lambda kv: (-kv[1], kv[0]))
    ranks: Dict[str, int] = {}
    previous = None
    for position, (student_id, value) in enumerate(ordered, start=1):
        if previous is None or value != previous[1]:
            previous = (position, value)
        ranks[student_id] = previous[0]
    return ranks


def _summary(values: Sequence[float]) -> dict:
    if not values:
        return {"mean": 0.0, "min": 0.0, "max": 0.0, "std": 0.0}
    arr = np.asarray(values, dtype=float)
    return {
        "mean": quantize(float(arr.mean())),
        "min": quantize(float(arr.min())),
        "max": quantize(float(arr.max())),
        "std": quantize(float(arr.std())),
    }


def score_distribution(scores: Sequence[float]) -> List[dict]:
    """Counts per 100-point band; the top band includes 500."""
    rows = []
    for low, high in DISTRIBUTION_BUCKETS:
        last = high == DISTRIBUTION_BUCKETS[-1][1]
        count = sum(1 for s in scores if low <= s < high or (last and s == high))
        rows.append({"range": f"{low}-{high}", "count": count})
    return rows


def exam_statistics(results: Sequence[ScoredResult], scaled_scores: Mapping[str, float]) -> dict:
    """Participant count, net and scaled-score summaries, per-subject averages and score bands."""
    nets = [float(r.net) for r in results]
    subjects: Dict[str, List[Tuple[float, float]]] = {}
    for r in results:
        for s in r.subjects:
            subjects.setdefault(s.subject, []).append((float(s.net), s.success_rate))

    scores = [scaled_scores[r.student_id] for r in results if r.student_id in scaled_scores]
    return {
        "participants": len(results),
        "net": _summary(nets),
        "scaled_score": _summary(scores),
        "subjects": {
            code: {
                "mean_net": quantize(sum(n for n, _ in rows) / len(rows)),
                "mean_success_rate": quantize(sum(r for _, r in rows) / len(rows)),
            }
            for code, rows in subjects.items()
        },
        "distribution": score_distribution(scores),
    }
