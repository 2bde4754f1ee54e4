from dataclasses import dataclass, field
from typing import Dict

# bump when any analytics formula changes; stored on every snapshot
CALCULATION_VERSION = "1.0.0"

# LGS: 90 questions, Turkish/Math/Science weighted 4, the rest 1
DEFAULT_COEFFICIENT_TABLES: Dict[str, Dict[str, float]] = {
    "LGS": {"TUR": 4.0, "MAT": 4.0, "FEN": 4.0, "INK": 1.0, "DIN": 1.0, "ING": 1.0},
    "TYT": {"TUR": 3.3, "SOS": 3.4, "MAT": 3.3, "FEN": 3.4},
}


@dataclass(frozen=True)
class AnalyticsConfig:
    """Thresholds and coefficient tables for the analytics engine."""
    coefficient_tables: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_COEFFICIENT_TABLES.items()}
    )
    min_population_size: int = 5
    min_topic_questions: int = 2
    mastery_threshold: float = 0.70
    weak_threshold: float = 0.40
    critical_threshold: float = 0.25
    low_confidence_threshold: float = 0.50
    score_floor: float = 100.0
    score_ceiling: float = 500.0
    standard_mean: float = 50.0
    standard_std: float = 15.0
    calculation_version: str = CALCULATION_VERSION

    def fingerprint(self) -> dict:
        """Stable, JSON-serializable view used in snapshot input hashes."""
        return {
            "coefficient_tables": {k: dict(sorted(v.items())) for k, v in sorted(self.coefficient_tables.items())},
            "min_population_size": self.min_population_size,
            "min_topic_questions": self.min_topic_questions,
            "mastery_threshold": self.mastery_threshold,
            "weak_threshold": self.weak_threshold,
            "critical_threshold": self.critical_threshold,
            "low_confidence_threshold": self.low_confidence_threshold,
            "score_range": [self.score_floor, self.score_ceiling],
            "standard": [self.standard_mean, self.standard_std],
            "calculation_version": self.calculation_version,
        }
