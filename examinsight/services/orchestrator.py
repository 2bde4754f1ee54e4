"""
Snapshot orchestrator: the single authority on whether a student's analytics
snapshot is fresh, and the only writer of snapshots.

Per (exam, student) the snapshot moves MISSING -> COMPUTING -> FRESH -> STALE ->
COMPUTING -> ... At most one compute per key runs at a time: callers in this
process share one future, and a TTL lock in the key-value store keeps other
processes out. Computes run on the orchestrator's own executor, so a caller that
gives up waiting does not cancel the work for anyone else.
"""
import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..analytics import AnalyticsEngine, AnalyticsInput
from ..core.cache import KeyValueStore
from ..core.errors import ComputeTimeout, ErrorKind, ExamInsightError, NotFound, PersistenceError, ValidationError
from ..core.locks import KeyedLock
from ..models.domain import AnalyticsSnapshot, JobStatus, RecomputeJob, SnapshotState, utcnow
from .repository import AnalyticsRepository
from .scoring import AnswerKey, BookletRotationMap, BookletScoringEngine, RawAnswerSheet

logger = logging.getLogger(__name__)

SnapshotKey = Tuple[str, str]


@dataclass(frozen=True)
class AnalyticsResult:
    """Explicit success/failure returned by every public orchestrator entry point."""
    success: bool
    data: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    served_stale: bool = False

    @classmethod
    def ok(cls, data, served_stale: bool = False) -> "AnalyticsResult":
        return cls(success=True, data=data, served_stale=served_stale)

    @classmethod
    def fail(cls, error: ErrorKind, message: str) -> "AnalyticsResult":
        return cls(success=False, error=error, message=message)

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": {"kind": self.error.value, "message": self.message}}
        data = self.data.to_dict() if hasattr(self.data, "to_dict") else self.data
        return {"success": True, "data": data, "served_stale": self.served_stale}


@dataclass(frozen=True)
class ExamInputs:
    answer_key: AnswerKey
    rotation: BookletRotationMap
    sheet: RawAnswerSheet
    sheets: Sequence[RawAnswerSheet]


def canonical_json(data) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_of(data) -> str:
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def population_digest(sheets: Sequence[RawAnswerSheet]) -> str:
    """Digest of every sheet in an exam, independent of storage order."""
    return sha256_of(sorted(
        (s.student_id, s.booklet, list(s.answers), s.class_name or "") for s in sheets
    ))


class SnapshotOrchestrator:
    def __init__(
        self,
        repository: AnalyticsRepository,
        store: KeyValueStore,
        engine: AnalyticsEngine = None,
        scorer: BookletScoringEngine = None,
        snapshot_ttl_seconds: float = 24 * 3600,
        lock_ttl_seconds: float = 60,
        wait_timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
        retry_max_backoff_seconds: float = 2.0,
        recompute_concurrency: int = 4,
        recompute_batch_limit: Optional[int] = None,
        poll_interval_seconds: float = 0.1,
        max_workers: int = 8,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.engine = engine or AnalyticsEngine()
        self.scorer = scorer or BookletScoringEngine()
        self.snapshot_ttl = timedelta(seconds=snapshot_ttl_seconds)
        self.lock_ttl_seconds = lock_ttl_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_max_backoff_seconds = retry_max_backoff_seconds
        self.recompute_concurrency = recompute_concurrency
        self.recompute_batch_limit = recompute_batch_limit
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock

        self._lock = KeyedLock(store, "snapshot-lock", lock_ttl_seconds)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="snapshot-compute")
        self._inflight: Dict[SnapshotKey, Future] = {}
        self._inflight_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.computations = 0

    @classmethod
    def from_settings(cls, settings, repository: AnalyticsRepository, store: KeyValueStore) -> "SnapshotOrchestrator":
        return cls(
            repository,
            store,
            engine=AnalyticsEngine(settings.analytics_config()),
            snapshot_ttl_seconds=settings.SNAPSHOT_TTL_SECONDS,
            lock_ttl_seconds=settings.SNAPSHOT_LOCK_TTL_SECONDS,
            wait_timeout_seconds=settings.COMPUTE_WAIT_TIMEOUT_SECONDS,
            retry_attempts=settings.PERSIST_RETRY_ATTEMPTS,
            retry_backoff_seconds=settings.PERSIST_RETRY_BACKOFF_SECONDS,
            retry_max_backoff_seconds=settings.PERSIST_RETRY_MAX_BACKOFF_SECONDS,
            recompute_concurrency=settings.RECOMPUTE_CONCURRENCY,
            recompute_batch_limit=settings.RECOMPUTE_BATCH_LIMIT,
        )

    # ============= Hashing and freshness =============

    def load_inputs(self, exam_id: str, student_id: str) -> ExamInputs:
        found = self.repository.get_answer_key(exam_id)
        if found is None:
            raise NotFound(f"No answer key for exam {exam_id}")
        sheet = self.repository.get_sheet(exam_id, student_id)
        if sheet is None:
            raise NotFound(f"No answer sheet for student {student_id} in exam {exam_id}")
        key, rotation = found
        return ExamInputs(key, rotation, sheet, self.repository.list_sheets(exam_id))

    def input_hash(self, inputs: ExamInputs, population: Optional[str] = None) -> str:
        """Hash of everything the student's snapshot depends on.

        Normalization, rank and confidence read the whole exam, so the digest of
        every sheet is part of the hash. Pass ``population`` to reuse a digest
        already taken for the same sheets.
        """
        return sha256_of({
            "answer_key": inputs.answer_key.to_dict(),
            "rotation": inputs.rotation.to_dict(),
            "sheet": inputs.sheet.to_dict(),
            "population": population or population_digest(inputs.sheets),
            "config": self.engine.config.fingerprint(),
        })

    def staleness_reason(self, snapshot: Optional[AnalyticsSnapshot], expected_hash: str) -> Optional[str]:
        """None when the snapshot can be served as is."""
        if snapshot is None:
            return "missing"
        if snapshot.is_stale:
            return snapshot.invalidation_reason or "invalidated"
        if snapshot.calculation_version != self.engine.config.calculation_version:
            return f"version mismatch: {snapshot.calculation_version} -> {self.engine.config.calculation_version}"
        if snapshot.input_hash != expected_hash:
            return "input changed"
        if self._clock() - snapshot.computed_at > self.snapshot_ttl:
            return "expired"
        return None

    def snapshot_state(self, exam_id: str, student_id: str) -> SnapshotState:
        key = (exam_id, student_id)
        with self._inflight_lock:
            running = key in self._inflight and not self._inflight[key].done()
        if running or self._lock.is_locked(self._lock_name(key)):
            return SnapshotState.COMPUTING
        snapshot = self.repository.get_snapshot(exam_id, student_id)
        if snapshot is None:
            return SnapshotState.MISSING
        try:
            expected = self.input_hash(self.load_inputs(exam_id, student_id))
        except NotFound:
            return SnapshotState.STALE
        return SnapshotState.FRESH if self.staleness_reason(snapshot, expected) is None else SnapshotState.STALE

    # ============= Public API =============

    def get_student_analytics(self, exam_id: str, student_id: str) -> AnalyticsResult:
        previous = None
        try:
            previous = self.repository.get_snapshot(exam_id, student_id)
            inputs = self.load_inputs(exam_id, student_id)
            if self.staleness_reason(previous, self.input_hash(inputs)) is None:
                return AnalyticsResult.ok(previous)
            future = self._submit((exam_id, student_id))
            return AnalyticsResult.ok(future.result(timeout=self.wait_timeout_seconds))
        except NotFound as e:
            return AnalyticsResult.fail(ErrorKind.NOT_FOUND, str(e))
        except ValidationError as e:
            return AnalyticsResult.fail(ErrorKind.VALIDATION, str(e))
        except (FutureTimeout, ComputeTimeout) as e:
            logger.warning(f"Snapshot compute for {exam_id}/{student_id} still running after wait: {e}")
            return self._degrade(previous, ErrorKind.COMPUTE_TIMEOUT, "Analytics are still being computed")
        except PersistenceError as e:
            logger.error(f"Snapshot for {exam_id}/{student_id} could not be produced: {e}")
            return self._degrade(previous, ErrorKind.ANALYTICS_UNAVAILABLE, "Analytics unavailable")
        except Exception as e:
            logger.exception(f"Unexpected error computing analytics for {exam_id}/{student_id}")
            return self._degrade(previous, ErrorKind.ANALYTICS_UNAVAILABLE, f"Analytics unavailable: {e}")

    def _degrade(self, previous: Optional[AnalyticsSnapshot], kind: ErrorKind, message: str) -> AnalyticsResult:
        """Serve the last good snapshot flagged stale, or fail explicitly when there is none."""
        if previous is None:
            return AnalyticsResult.fail(kind, message)
        stale = previous if previous.is_stale else previous.marked_stale("recompute failed")
        return AnalyticsResult.ok(stale, served_stale=True)

    def invalidate(self, exam_id: str, student_id: str, reason: str) -> int:
        count = self.repository.mark_stale(exam_id, reason, student_id=student_id)
        logger.info(f"Invalidated snapshot {exam_id}/{student_id}: {reason}")
        return count

    def invalidate_exam(self, exam_id: str, reason: str) -> int:
        count = self.repository.mark_stale(exam_id, reason)
        logger.info(f"Invalidated {count} snapshots of exam {exam_id}: {reason}")
        return count

    def exam_statistics(self, exam_id: str) -> AnalyticsResult:
        try:
            found = self.repository.get_answer_key(exam_id)
            if found is None:
                return AnalyticsResult.fail(ErrorKind.NOT_FOUND, f"No answer key for exam {exam_id}")
            key, rotation = found
            results, rejected = self.scorer.score_many(self.repository.list_sheets(exam_id), key, rotation)
        except ValidationError as e:
            return AnalyticsResult.fail(ErrorKind.VALIDATION, str(e))
        except PersistenceError as e:
            return AnalyticsResult.fail(ErrorKind.ANALYTICS_UNAVAILABLE, str(e))
        stats = self.engine.exam_statistics(results, key.exam_type)
        stats["exam_id"] = exam_id
        stats["ranking"] = self.engine.ranking(results, key.exam_type)
        stats["rejected"] = rejected
        return AnalyticsResult.ok(stats)

    # ============= Single-flight compute =============

    @staticmethod
    def _lock_name(key: SnapshotKey) -> str:
        return f"{key[0]}:{key[1]}"

    def _submit(self, key: SnapshotKey) -> Future:
        created = False
        with self._inflight_lock:
            future = self._inflight.get(key)
            if future is None or future.done():
                future = self._executor.submit(self._compute_guarded, key)
                self._inflight[key] = future
                created = True
        if created:
            future.add_done_callback(lambda f: self._forget(key, f))
        return future

    def _forget(self, key: SnapshotKey, future: Future) -> None:
        with self._inflight_lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def _fresh_snapshot(self, key: SnapshotKey) -> Optional[AnalyticsSnapshot]:
        snapshot = self.repository.get_snapshot(*key)
        if snapshot is None:
            return None
        expected = self.input_hash(self.load_inputs(*key))
        return snapshot if self.staleness_reason(snapshot, expected) is None else None

    def _compute_guarded(self, key: SnapshotKey) -> AnalyticsSnapshot:
        name = self._lock_name(key)
        deadline = time.monotonic() + self.lock_ttl_seconds + self.poll_interval_seconds
        token = self._lock.acquire(name)
        while token is None:
            # another process is computing this key; its snapshot is as good as ours
            snapshot = self._fresh_snapshot(key)
            if snapshot is not None:
                return snapshot
            if time.monotonic() >= deadline:
                raise ComputeTimeout(f"Snapshot lock {name} not released within {self.lock_ttl_seconds}s")
            time.sleep(self.poll_interval_seconds)
            token = self._lock.acquire(name)

        try:
            inputs = self.load_inputs(*key)
            expected = self.input_hash(inputs)
            current = self.repository.get_snapshot(*key)
            if self.staleness_reason(current, expected) is None:
                return current
            with self._lock.renewing(name, token):
                snapshot = self._compute(inputs, expected)
                self._persist(snapshot)
            superseded = self.repository.supersede_pending_jobs(*key)
            if superseded:
                logger.info(f"Marked {superseded} pending recompute jobs for {name} as superseded")
            return snapshot
        finally:
            self._lock.release(name, token)

    def _compute(self, inputs: ExamInputs, input_hash: str) -> AnalyticsSnapshot:
        key, sheet = inputs.answer_key, inputs.sheet
        logger.info(f"Computing analytics snapshot for {key.exam_id}/{sheet.student_id}")
        started = time.monotonic()
        with self._stats_lock:
            self.computations += 1

        result = self.scorer.score(sheet, key, inputs.rotation)
        population, _ = self.scorer.score_many(inputs.sheets, key, inputs.rotation)
        if not any(r.student_id == result.student_id for r in population):
            population.append(result)
        class_ids = {s.student_id for s in inputs.sheets if sheet.class_name and s.class_name == sheet.class_name}
        class_ids.add(sheet.student_id)
        classmates = [r for r in population if r.student_id in class_ids] if sheet.class_name else []
        payload = self.engine.analyze(AnalyticsInput(
            result=result,
            answer_key=key,
            exam_results=population,
            class_results=classmates,
            class_name=sheet.class_name,
            history=tuple(self.repository.student_history(sheet.student_id, key.exam_id)),
        ))
        snapshot = AnalyticsSnapshot(
            exam_id=key.exam_id,
            student_id=sheet.student_id,
            input_hash=input_hash,
            content_hash=sha256_of(payload),
            calculation_version=self.engine.config.calculation_version,
            computed_at=self._clock(),
            payload=payload,
        )
        logger.info(f"Computed snapshot {key.exam_id}/{sheet.student_id} in {time.monotonic() - started:.3f}s")
        return snapshot

    def _persist(self, snapshot: AnalyticsSnapshot) -> None:
        retryer = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=self.retry_max_backoff_seconds),
            retry=retry_if_exception_type(PersistenceError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        written = retryer(self.repository.save_snapshot, snapshot)
        if not written:
            logger.info(f"Kept newer stored snapshot for {snapshot.exam_id}/{snapshot.student_id}")

    # ============= Stale sweep =============

    def find_stale(self, exam_id: Optional[str] = None) -> List[Tuple[AnalyticsSnapshot, str]]:
        stale = []
        digests: Dict[str, str] = {}
        for snapshot in self.repository.list_snapshots(exam_id):
            try:
                inputs = self.load_inputs(snapshot.exam_id, snapshot.student_id)
            except NotFound as e:
                logger.warning(f"Skipping snapshot {snapshot.exam_id}/{snapshot.student_id}: {e}")
                continue
            if snapshot.exam_id not in digests:
                digests[snapshot.exam_id] = population_digest(inputs.sheets)
            reason = self.staleness_reason(snapshot, self.input_hash(inputs, digests[snapshot.exam_id]))
            if reason is not None:
                stale.append((snapshot, reason))
        return stale

    def recompute_stale_snapshots(self, limit: Optional[int] = None, exam_id: Optional[str] = None) -> Dict[str, int]:
        """Recompute every stale snapshot with bounded concurrency.

        Returns ``{"processed", "completed", "failed"}``. A failed job leaves the
        previous snapshot in place.
        """
        limit = limit if limit is not None else self.recompute_batch_limit
        stale = self.find_stale(exam_id)
        if limit is not None:
            stale = stale[:limit]
        jobs = [self.repository.create_job(s.exam_id, s.student_id, reason) for s, reason in stale]
        logger.info(f"Recompute sweep: {len(jobs)} stale snapshots")
        if not jobs:
            return {"processed": 0, "completed": 0, "failed": 0}

        with ThreadPoolExecutor(max_workers=self.recompute_concurrency, thread_name_prefix="snapshot-sweep") as pool:
            outcomes = list(pool.map(self._run_job, jobs))
        completed = sum(1 for ok in outcomes if ok)
        summary = {"processed": len(jobs), "completed": completed, "failed": len(jobs) - completed}
        logger.info(f"Recompute sweep finished: {summary}")
        return summary

    def _run_job(self, job: RecomputeJob) -> bool:
        key = (job.exam_id, job.student_id)
        try:
            job.status = JobStatus.RUNNING
            job.attempts += 1
            self.repository.update_job(job)
            self._submit(key).result()
            job.status = JobStatus.COMPLETED
            job.last_error = None
            self.repository.update_job(job)
            return True
        except (ExamInsightError, FutureTimeout) as e:
            logger.error(f"Recompute job {job.id} for {key[0]}/{key[1]} failed: {e}")
            return self._fail_job(job, e)
        except Exception as e:
            logger.exception(f"Unexpected error in recompute job {job.id} for {key[0]}/{key[1]}")
            return self._fail_job(job, e)

    def _fail_job(self, job: RecomputeJob, error: Exception) -> bool:
        job.status = JobStatus.FAILED
        job.last_error = str(error) or error.__class__.__name__
        try:
            self.repository.update_job(job)
        except PersistenceError as update_error:
            logger.error(f"Could not record failure of job {job.id}: {update_error}")
        return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
