"""
Persisted domain records shared by the repositories and services.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SnapshotState(str, Enum):
    MISSING = "missing"
    COMPUTING = "computing"
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True)
class AnalyticsSnapshot:
    exam_id: str
    student_id: str
    input_hash: str
    content_hash: str
    calculation_version: str
    computed_at: datetime
    payload: Dict[str, Any]
    is_stale: bool = False
    invalidation_reason: Optional[str] = None

    @property
    def key(self):
        return (self.exam_id, self.student_id)

    def marked_stale(self, reason: str) -> "AnalyticsSnapshot":
        return replace(self, is_stale=True, invalidation_reason=reason)

    def to_dict(self) -> dict:
        return {
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "input_hash": self.input_hash,
            "content_hash": self.content_hash,
            "calculation_version": self.calculation_version,
            "computed_at": self.computed_at.isoformat(),
            "is_stale": self.is_stale,
            "invalidation_reason": self.invalidation_reason,
            "analytics": self.payload,
        }


@dataclass
class RecomputeJob:
    id: str
    exam_id: str
    student_id: str
    status: JobStatus = JobStatus.PENDING
    reason: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
