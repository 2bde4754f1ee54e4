"""
AI coaching commentary with a content-addressed cache and single-flight generation.

The cache key hashes (exam, student, role, snapshot content hash), so new
analytics get a new key and old entries simply age out. Before calling the
model a generator must hold the key's TTL lock; everyone else waits for its
result (bounded) or is told the commentary is still generating. Model failures
are never cached: the caller gets templated fallback text tagged ``fallback``.
"""
import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from ..core.cache import KeyValueStore
from ..core.errors import AIServiceError, PersistenceError
from ..core.locks import KeyedLock
from ..models.domain import AnalyticsSnapshot, utcnow
from .ai_client import CoachModel
from .fallback_coach import fallback_commentary

logger = logging.getLogger(__name__)

SOURCE_AI = "ai"
SOURCE_CACHE = "cache"
SOURCE_FALLBACK = "fallback"
STATUS_READY = "ready"
STATUS_GENERATING = "generating"


class CoachRole(str, Enum):
    STUDENT = "student"
    PARENT = "parent"
    TEACHER = "teacher"


# ============= Role handlers =============

class RoleHandler:
    role: CoachRole
    system_prompt: str
    instructions: str

    def context_for(self, payload: dict) -> dict:
        """The part of the snapshot the model gets to see."""
        score = payload.get("score") or {}
        topics = payload.get("topics") or {}
        gaps = payload.get("gaps") or {}
        return {
            "exam_type": payload.get("exam_type"),
            "net": score.get("net"),
            "correct": score.get("correct"),
            "wrong": score.get("wrong"),
            "blank": score.get("blank"),
            "subjects": score.get("subjects", []),
            "composite": payload.get("composite"),
            "normalized": payload.get("normalized"),
            "strengths": topics.get("strengths", []),
            "weaknesses": topics.get("weaknesses", []),
            "priorities": topics.get("priorities", [])[:5],
            "gaps": [
                {k: g.get(k) for k in ("name", "subject", "mastery", "severity", "root_cause", "blocked_by")}
                for g in gaps.get("gaps", [])[:8]
            ],
            "confidence": (payload.get("confidence") or {}).get("level"),
            "low_confidence": (payload.get("confidence") or {}).get("low_confidence"),
        }

    def build_messages(self, snapshot: AnalyticsSnapshot, context: Optional[dict] = None) -> List[Dict[str, str]]:
        facts = self.context_for(snapshot.payload)
        if context:
            facts["caller_context"] = context
        user = f"{self.instructions}\n\nExam analytics (JSON):\n{json.dumps(facts, ensure_ascii=False, sort_keys=True)}"
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": user},
        ]

    def fallback(self, snapshot: AnalyticsSnapshot) -> str:
        return fallback_commentary(self.role.value, snapshot.payload)


class StudentHandler(RoleHandler):
    role = CoachRole.STUDENT
    system_prompt = (
        "You are an encouraging exam coach talking directly to a middle-school student. "
        "Be warm, concrete and brief. Never invent numbers that are not in the data."
    )
    instructions = (
        "Write 2-3 short paragraphs: how the exam went, what the student is good at, "
        "and the first two topics to work on next with one concrete study tip each."
    )


class ParentHandler(RoleHandler):
    role = CoachRole.PARENT
    system_prompt = (
        "You are an educational advisor writing to a student's parent. "
        "Be respectful and reassuring, avoid jargon, and never invent numbers."
    )
    instructions = (
        "Summarize the result, name the strongest areas and the areas that need support, "
        "and suggest how the parent can help at home."
    )


class TeacherHandler(RoleHandler):
    role = CoachRole.TEACHER
    system_prompt = (
        "You are an assessment analyst writing for a teacher. Be precise and diagnostic, "
        "and refer to topics, severities and prerequisites from the data."
    )
    instructions = (
        "Give a diagnostic summary: performance relative to the population, root-cause gaps "
        "in prerequisite order, and a prioritized intervention plan. Mention low confidence if flagged."
    )


ROLE_HANDLERS: Dict[CoachRole, RoleHandler] = {
    CoachRole.STUDENT: StudentHandler(),
    CoachRole.PARENT: ParentHandler(),
    CoachRole.TEACHER: TeacherHandler(),
}


# ============= Results =============

@dataclass(frozen=True)
class CommentaryResult:
    status: str
    role: CoachRole
    cache_key: str
    source: Optional[str] = None
    text: Optional[str] = None
    model: Optional[str] = None
    generated_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_READY

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "role": self.role.value,
            "cache_key": self.cache_key,
            "source": self.source,
            "text": self.text,
            "model": self.model,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class CoachOptions:
    bypass_cache: bool = False


def commentary_cache_key(exam_id: str, student_id: str, role: CoachRole, content_hash: str) -> str:
    raw = "|".join((exam_id, student_id, role.value, content_hash))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ============= Cache =============

class AICoachCache:
    def __init__(
        self,
        store: KeyValueStore,
        model: CoachModel,
        cache_ttl_seconds: float = 7 * 24 * 3600,
        lock_ttl_seconds: float = 45,
        wait_timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 0.25,
        max_workers: int = 4,
    ):
        self.store = store
        self.model = model
        self.cache_ttl_seconds = cache_ttl_seconds
        self.lock_ttl_seconds = lock_ttl_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._lock = KeyedLock(store, "ai-coach-lock", lock_ttl_seconds)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ai-coach")
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, store: KeyValueStore, model: CoachModel) -> "AICoachCache":
        return cls(
            store,
            model,
            cache_ttl_seconds=settings.AI_CACHE_TTL_SECONDS,
            lock_ttl_seconds=settings.AI_LOCK_TTL_SECONDS,
            wait_timeout_seconds=settings.AI_WAIT_TIMEOUT_SECONDS,
            poll_interval_seconds=settings.AI_LOCK_POLL_INTERVAL_SECONDS,
        )

    @staticmethod
    def _entry_key(cache_key: str) -> str:
        return f"ai-coach:{cache_key}"

    def _read_cache(self, cache_key: str, role: CoachRole) -> Optional[CommentaryResult]:
        raw = self.store.get(self._entry_key(cache_key))
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
            return CommentaryResult(
                status=STATUS_READY,
                role=role,
                cache_key=cache_key,
                source=SOURCE_CACHE,
                text=entry["text"],
                model=entry.get("model"),
                generated_at=datetime.fromisoformat(entry["created_at"]),
            )
        except (ValueError, KeyError) as e:
            logger.warning(f"Discarding unreadable commentary cache entry {cache_key}: {e}")
            return None

    def _write_cache(self, result: CommentaryResult) -> None:
        entry = {"text": result.text, "model": result.model, "created_at": result.generated_at.isoformat(), "role": result.role.value}
        try:
            self.store.set(self._entry_key(result.cache_key), json.dumps(entry), ttl=self.cache_ttl_seconds)
        except PersistenceError as e:
            logger.error(f"Could not cache commentary {result.cache_key}: {e}")

    def get_commentary(
        self,
        snapshot: AnalyticsSnapshot,
        role: CoachRole,
        context: Optional[dict] = None,
        bypass_cache: bool = False,
    ) -> CommentaryResult:
        role = CoachRole(role)
        cache_key = commentary_cache_key(snapshot.exam_id, snapshot.student_id, role, snapshot.content_hash)
        if not bypass_cache:
            cached = self._read_cache(cache_key, role)
            if cached is not None:
                return cached

        future = self._submit(cache_key, snapshot, role, context, bypass_cache)
        try:
            return future.result(timeout=self.wait_timeout_seconds)
        except FutureTimeout:
            logger.info(f"Commentary {cache_key} still generating after {self.wait_timeout_seconds}s")
            return CommentaryResult(status=STATUS_GENERATING, role=role, cache_key=cache_key)

    def _submit(self, cache_key, snapshot, role, context, bypass_cache) -> Future:
        created = False
        with self._inflight_lock:
            future = self._inflight.get(cache_key)
            if future is None:
                future = self._executor.submit(self._generate, cache_key, snapshot, role, context, bypass_cache)
                self._inflight[cache_key] = future
                created = True
        if created:
            future.add_done_callback(lambda f: self._forget(cache_key, f))
        return future

    def _forget(self, cache_key: str, future: Future) -> None:
        with self._inflight_lock:
            if self._inflight.get(cache_key) is future:
                del self._inflight[cache_key]

    def _fallback(self, cache_key: str, snapshot: AnalyticsSnapshot, role: CoachRole, error: str) -> CommentaryResult:
        return CommentaryResult(
            status=STATUS_READY,
            role=role,
            cache_key=cache_key,
            source=SOURCE_FALLBACK,
            text=ROLE_HANDLERS[role].fallback(snapshot),
            model="fallback",
            generated_at=utcnow(),
            error=error,
        )

    def _generate(self, cache_key, snapshot, role, context, bypass_cache) -> CommentaryResult:
        try:
            token, waited = self._acquire(cache_key)
        except PersistenceError as e:
            logger.error(f"Commentary lock unavailable for {cache_key}: {e}")
            return self._fallback(cache_key, snapshot, role, str(e))

        if token is None:
            cached = self._read_cache(cache_key, role)
            if cached is not None:
                return cached
            return CommentaryResult(status=STATUS_GENERATING, role=role, cache_key=cache_key)

        try:
            # a generation that finished while we waited counts as fresh
            if waited or not bypass_cache:
                cached = self._read_cache(cache_key, role)
                if cached is not None:
                    return cached
            handler = ROLE_HANDLERS[role]
            started = time.monotonic()
            try:
                with self._lock.renewing(cache_key, token):
                    text = self.model.generate(handler.build_messages(snapshot, context))
            except AIServiceError as e:
                logger.warning(f"AI coach failed for {snapshot.exam_id}/{snapshot.student_id} ({role.value}): {e}")
                return self._fallback(cache_key, snapshot, role, str(e))
            except Exception as e:
                logger.exception(f"Unexpected AI coach error for {snapshot.exam_id}/{snapshot.student_id} ({role.value})")
                return self._fallback(cache_key, snapshot, role, str(e))

            result = CommentaryResult(
                status=STATUS_READY,
                role=role,
                cache_key=cache_key,
                source=SOURCE_AI,
                text=text,
                model=self.model.name,
                generated_at=utcnow(),
            )
            self._write_cache(result)
            logger.info(f"Generated {role.value} commentary for {snapshot.exam_id}/{snapshot.student_id} in {time.monotonic() - started:.2f}s")
            return result
        finally:
            try:
                self._lock.release(cache_key, token)
            except PersistenceError as e:
                logger.error(f"Could not release commentary lock {cache_key}; it expires in {self.lock_ttl_seconds}s: {e}")

    def _acquire(self, cache_key: str):
        """Take the generation lock, waiting out another holder until its TTL. Returns (token, waited)."""
        token = self._lock.acquire(cache_key)
        waited = False
        deadline = time.monotonic() + self.lock_ttl_seconds + self.poll_interval_seconds
        while token is None:
            waited = True
            if self.store.get(self._entry_key(cache_key)) is not None or time.monotonic() >= deadline:
                return None, waited
            time.sleep(self.poll_interval_seconds)
            token = self._lock.acquire(cache_key)
        return token, waited

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class AICoach:
    """Role entry points over the commentary cache."""

    def __init__(self, cache: AICoachCache):
        self.cache = cache

    def _run(self, role: CoachRole, snapshot: AnalyticsSnapshot, context: Optional[dict], options: Optional[CoachOptions]) -> CommentaryResult:
        options = options or CoachOptions()
        return self.cache.get_commentary(snapshot, role, context=context, bypass_cache=options.bypass_cache)

    def student(self, snapshot, context=None, options=None) -> CommentaryResult:
        return self._run(CoachRole.STUDENT, snapshot, context, options)

    def parent(self, snapshot, context=None, options=None) -> CommentaryResult:
        return self._run(CoachRole.PARENT, snapshot, context, options)

    def teacher(self, snapshot, context=None, options=None) -> CommentaryResult:
        return self._run(CoachRole.TEACHER, snapshot, context, options)

    def for_role(self, role: CoachRole, snapshot, context=None, options=None) -> CommentaryResult:
        handler = {
            CoachRole.STUDENT: self.student,
            CoachRole.PARENT: self.parent,
            CoachRole.TEACHER: self.teacher,
        }[CoachRole(role)]
        return handler(snapshot, context, options)
