"""
Persistence for answer keys, answer sheets, analytics snapshots and recompute jobs.

Snapshot writes are optimistic: a write never replaces a snapshot with a newer
``computed_at``. Every storage failure surfaces as PersistenceError.
"""
import copy
import logging
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.errors import PersistenceError
from ..models.domain import AnalyticsSnapshot, JobStatus, RecomputeJob, as_utc, utcnow
from ..models.orm import AnswerKeyRecord, AnswerSheetRecord, RecomputeJobRecord, SnapshotRecord
from .scoring import AnswerKey, BookletRotationMap, KeyItem, RawAnswerSheet

logger = logging.getLogger(__name__)

SUPERSEDED = "superseded"


class AnalyticsRepository:
    """Storage interface used by the orchestrator and the HTTP layer."""

    # answer keys and sheets
    def save_answer_key(self, key: AnswerKey, rotation: BookletRotationMap) -> None:
        raise NotImplementedError

    def get_answer_key(self, exam_id: str) -> Optional[Tuple[AnswerKey, BookletRotationMap]]:
        raise NotImplementedError

    def save_sheets(self, exam_id: str, sheets: Iterable[RawAnswerSheet]) -> int:
        raise NotImplementedError

    def get_sheet(self, exam_id: str, student_id: str) -> Optional[RawAnswerSheet]:
        raise NotImplementedError

    def list_sheets(self, exam_id: str) -> List[RawAnswerSheet]:
        raise NotImplementedError

    # snapshots
    def get_snapshot(self, exam_id: str, student_id: str) -> Optional[AnalyticsSnapshot]:
        raise NotImplementedError

    def save_snapshot(self, snapshot: AnalyticsSnapshot) -> bool:
        """Upsert unless the stored snapshot is newer. Returns whether it was written."""
        raise NotImplementedError

    def list_snapshots(self, exam_id: Optional[str] = None) -> List[AnalyticsSnapshot]:
        raise NotImplementedError

    def mark_stale(self, exam_id: str, reason: str, student_id: Optional[str] = None) -> int:
        raise NotImplementedError

    def student_history(self, student_id: str, exclude_exam_id: str) -> List[float]:
        """Total nets of the student's snapshots in other exams, oldest first."""
        raise NotImplementedError

    # recompute jobs
    def create_job(self, exam_id: str, student_id: str, reason: Optional[str] = None) -> RecomputeJob:
        raise NotImplementedError

    def update_job(self, job: RecomputeJob) -> None:
        raise NotImplementedError

    def get_job(self, job_id: str) -> Optional[RecomputeJob]:
        raise NotImplementedError

    def list_jobs(self, status: Optional[JobStatus] = None, exam_id: Optional[str] = None, limit: int = 100) -> List[RecomputeJob]:
        raise NotImplementedError

    def supersede_pending_jobs(self, exam_id: str, student_id: str) -> int:
        """Mark pending jobs for the key completed; a fresh snapshot already covers them."""
        raise NotImplementedError

    def close(self) -> None:
        pass


def _history_net(snapshot: AnalyticsSnapshot) -> Optional[float]:
    score = snapshot.payload.get("score") or {}
    return score.get("net")


class InMemoryAnalyticsRepository(AnalyticsRepository):
    """Thread-safe dict-backed repository for tests and single-process runs."""

    def __init__(self):
        self._lock = threading.RLock()
        self._keys: Dict[str, Tuple[AnswerKey, BookletRotationMap]] = {}
        self._sheets: Dict[str, Dict[str, RawAnswerSheet]] = {}
        self._snapshots: Dict[Tuple[str, str], AnalyticsSnapshot] = {}
        self._jobs: Dict[str, RecomputeJob] = {}

    def save_answer_key(self, key, rotation):
        rotation.validate(len(key))
        with self._lock:
            self._keys[key.exam_id] = (key, rotation)

    def get_answer_key(self, exam_id):
        with self._lock:
            return self._keys.get(exam_id)

    def save_sheets(self, exam_id, sheets):
        count = 0
        with self._lock:
            bucket = self._sheets.setdefault(exam_id, {})
            for sheet in sheets:
                bucket[sheet.student_id] = sheet
                count += 1
        return count

    def get_sheet(self, exam_id, student_id):
        with self._lock:
            return self._sheets.get(exam_id, {}).get(student_id)

    def list_sheets(self, exam_id):
        with self._lock:
            return [s for _, s in sorted(self._sheets.get(exam_id, {}).items())]

    def get_snapshot(self, exam_id, student_id):
        with self._lock:
            snap = self._snapshots.get((exam_id, student_id))
            return copy.deepcopy(snap) if snap else None

    def save_snapshot(self, snapshot):
        with self._lock:
            current = self._snapshots.get(snapshot.key)
            if current is not None and current.computed_at > snapshot.computed_at:
                return False
            self._snapshots[snapshot.key] = copy.deepcopy(snapshot)
            return True

    def list_snapshots(self, exam_id=None):
        with self._lock:
            return [
                copy.deepcopy(s) for k, s in sorted(self._snapshots.items())
                if exam_id is None or k[0] == exam_id
            ]

    def mark_stale(self, exam_id, reason, student_id=None):
        count = 0
        with self._lock:
            for key, snap in list(self._snapshots.items()):
                if key[0] == exam_id and (student_id is None or key[1] == student_id):
                    self._snapshots[key] = snap.marked_stale(reason)
                    count += 1
        return count

    def student_history(self, student_id, exclude_exam_id):
        with self._lock:
            snaps = [s for (e, sid), s in self._snapshots.items() if sid == student_id and e != exclude_exam_id]
        snaps.sort(key=lambda s: s.computed_at)
        return [n for n in (_history_net(s) for s in snaps) if n is not None]

    def create_job(self, exam_id, student_id, reason=None):
        job = RecomputeJob(id=str(uuid.uuid4()), exam_id=exam_id, student_id=student_id, reason=reason)
        with self._lock:
            self._jobs[job.id] = copy.copy(job)
        return job

    def update_job(self, job):
        job.updated_at = utcnow()
        with self._lock:
            self._jobs[job.id] = copy.copy(job)

    def get_job(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.copy(job) if job else None

    def list_jobs(self, status=None, exam_id=None, limit=100):
        with self._lock:
            jobs = [
                copy.copy(j) for j in self._jobs.values()
                if (status is None or j.status == status) and (exam_id is None or j.exam_id == exam_id)
            ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def supersede_pending_jobs(self, exam_id, student_id):
        count = 0
        with self._lock:
            for job in self._jobs.values():
                if (job.exam_id, job.student_id) == (exam_id, student_id) and job.status == JobStatus.PENDING:
                    job.status = JobStatus.COMPLETED
                    job.reason = SUPERSEDED
                    job.updated_at = utcnow()
                    count += 1
        return count


class SqlAnalyticsRepository(AnalyticsRepository):
    """SQLAlchemy-backed repository; one short transaction per call."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _run(self, action: str, fn):
        try:
            with self.session_factory() as db:
                with db.begin():
                    return fn(db)
        except SQLAlchemyError as e:
            logger.error(f"Database error during {action}: {e}")
            raise PersistenceError(f"{action} failed: {e}") from e

    # ---- answer keys and sheets ----

    def save_answer_key(self, key, rotation):
        rotation.validate(len(key))
        data = key.to_dict()

        def op(db):
            row = db.get(AnswerKeyRecord, key.exam_id)
            if row is None:
                row = AnswerKeyRecord(exam_id=key.exam_id)
                db.add(row)
            row.exam_type = key.exam_type
            row.options = data["options"]
            row.items = data["items"]
            row.rotations = rotation.to_dict()
            row.prerequisites = data["prerequisites"]
            row.topic_names = data["topic_names"]
            row.updated_at = utcnow()
        self._run("save_answer_key", op)

    def get_answer_key(self, exam_id):
        def op(db):
            row = db.get(AnswerKeyRecord, exam_id)
            if row is None:
                return None
            key = AnswerKey(
                exam_id=row.exam_id,
                exam_type=row.exam_type,
                options=tuple(row.options),
                items=tuple(
                    KeyItem(index=i["index"], subject=i["subject"], correct=i["correct"], topic=i.get("topic"), outcome=i.get("outcome"))
                    for i in row.items
                ),
                prerequisites={k: tuple(v) for k, v in (row.prerequisites or {}).items()},
                topic_names=dict(row.topic_names or {}),
            )
            return key, BookletRotationMap({k: tuple(v) for k, v in row.rotations.items()})
        return self._run("get_answer_key", op)

    def save_sheets(self, exam_id, sheets):
        sheets = list(sheets)

        def op(db):
            now = utcnow()
            for sheet in sheets:
                row = db.get(AnswerSheetRecord, {"exam_id": exam_id, "student_id": sheet.student_id})
                if row is None:
                    row = AnswerSheetRecord(exam_id=exam_id, student_id=sheet.student_id)
                    db.add(row)
                row.student_name = sheet.student_name
                row.class_name = sheet.class_name
                row.booklet = sheet.booklet
                row.answers = list(sheet.answers)
                row.updated_at = now
            return len(sheets)
        return self._run("save_sheets", op)

    @staticmethod
    def _sheet(row: AnswerSheetRecord) -> RawAnswerSheet:
        return RawAnswerSheet(
            student_id=row.student_id,
            booklet=row.booklet,
            answers=tuple(row.answers),
            student_name=row.student_name,
            class_name=row.class_name,
        )

    def get_sheet(self, exam_id, student_id):
        def op(db):
            row = db.get(AnswerSheetRecord, {"exam_id": exam_id, "student_id": student_id})
            return self._sheet(row) if row else None
        return self._run("get_sheet", op)

    def list_sheets(self, exam_id):
        def op(db):
            rows = db.scalars(
                select(AnswerSheetRecord).where(AnswerSheetRecord.exam_id == exam_id).order_by(AnswerSheetRecord.student_id)
            ).all()
            return [self._sheet(r) for r in rows]
        return self._run("list_sheets", op)

    # ---- snapshots ----

    @staticmethod
    def _snapshot(row: SnapshotRecord) -> AnalyticsSnapshot:
        return AnalyticsSnapshot(
            exam_id=row.exam_id,
            student_id=row.student_id,
            input_hash=row.input_hash,
            content_hash=row.content_hash,
            calculation_version=row.calculation_version,
            computed_at=as_utc(row.computed_at),
            payload=row.payload,
            is_stale=row.is_stale,
            invalidation_reason=row.invalidation_reason,
        )

    def get_snapshot(self, exam_id, student_id):
        def op(db):
            row = db.get(SnapshotRecord, {"exam_id": exam_id, "student_id": student_id})
            return self._snapshot(row) if row else None
        return self._run("get_snapshot", op)

    def save_snapshot(self, snapshot):
        def op(db):
            row = db.get(SnapshotRecord, {"exam_id": snapshot.exam_id, "student_id": snapshot.student_id}, with_for_update=True)
            if row is not None and as_utc(row.computed_at) > snapshot.computed_at:
                return False
            if row is None:
                row = SnapshotRecord(exam_id=snapshot.exam_id, student_id=snapshot.student_id)
                db.add(row)
            row.input_hash = snapshot.input_hash
            row.content_hash = snapshot.content_hash
            row.calculation_version = snapshot.calculation_version
            row.computed_at = snapshot.computed_at
            row.is_stale = snapshot.is_stale
            row.invalidation_reason = snapshot.invalidation_reason
            row.payload = snapshot.payload
            return True
        return self._run("save_snapshot", op)

    def list_snapshots(self, exam_id=None):
        def op(db):
            stmt = select(SnapshotRecord).order_by(SnapshotRecord.exam_id, SnapshotRecord.student_id)
            if exam_id is not None:
                stmt = stmt.where(SnapshotRecord.exam_id == exam_id)
            return [self._snapshot(r) for r in db.scalars(stmt).all()]
        return self._run("list_snapshots", op)

    def mark_stale(self, exam_id, reason, student_id=None):
        def op(db):
            stmt = update(SnapshotRecord).where(SnapshotRecord.exam_id == exam_id)
            if student_id is not None:
                stmt = stmt.where(SnapshotRecord.student_id == student_id)
            return db.execute(stmt.values(is_stale=True, invalidation_reason=reason)).rowcount
        return self._run("mark_stale", op)

    def student_history(self, student_id, exclude_exam_id):
        def op(db):
            rows = db.scalars(
                select(SnapshotRecord)
                .where(SnapshotRecord.student_id == student_id, SnapshotRecord.exam_id != exclude_exam_id)
                .order_by(SnapshotRecord.computed_at)
            ).all()
            return [n for n in (_history_net(self._snapshot(r)) for r in rows) if n is not None]
        return self._run("student_history", op)

    # ---- recompute jobs ----

    @staticmethod
    def _job(row: RecomputeJobRecord) -> RecomputeJob:
        return RecomputeJob(
            id=row.id,
            exam_id=row.exam_id,
            student_id=row.student_id,
            status=JobStatus(row.status),
            reason=row.reason,
            attempts=row.attempts,
            last_error=row.last_error,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    def create_job(self, exam_id, student_id, reason=None):
        job = RecomputeJob(id=str(uuid.uuid4()), exam_id=exam_id, student_id=student_id, reason=reason)

        def op(db):
            db.add(RecomputeJobRecord(
                id=job.id, exam_id=exam_id, student_id=student_id, status=job.status.value,
                reason=reason, attempts=0, created_at=job.created_at, updated_at=job.updated_at,
            ))
        self._run("create_job", op)
        return job

    def update_job(self, job):
        job.updated_at = utcnow()

        def op(db):
            db.execute(
                update(RecomputeJobRecord).where(RecomputeJobRecord.id == job.id).values(
                    status=job.status.value, reason=job.reason, attempts=job.attempts,
                    last_error=job.last_error, updated_at=job.updated_at,
                )
            )
        self._run("update_job", op)

    def get_job(self, job_id):
        def op(db):
            row = db.get(RecomputeJobRecord, job_id)
            return self._job(row) if row else None
        return self._run("get_job", op)

    def list_jobs(self, status=None, exam_id=None, limit=100):
        def op(db):
            stmt = select(RecomputeJobRecord).order_by(RecomputeJobRecord.created_at.desc()).limit(limit)
            if status is not None:
                stmt = stmt.where(RecomputeJobRecord.status == status.value)
            if exam_id is not None:
                stmt = stmt.where(RecomputeJobRecord.exam_id == exam_id)
            return [self._job(r) for r in db.scalars(stmt).all()]
        return self._run("list_jobs", op)

    def supersede_pending_jobs(self, exam_id, student_id):
        def op(db):
            stmt = update(RecomputeJobRecord).where(
                RecomputeJobRecord.exam_id == exam_id,
                RecomputeJobRecord.student_id == student_id,
                RecomputeJobRecord.status == JobStatus.PENDING.value,
            )
            return db.execute(
                stmt.values(status=JobStatus.COMPLETED.value, reason=SUPERSEDED, updated_at=utcnow())
            ).rowcount
        return self._run("supersede_pending_jobs", op)
