import threading
import time

import pytest

from examinsight.analytics import AnalyticsConfig, AnalyticsEngine
from examinsight.core.cache import MemoryStore
from examinsight.core.errors import AIServiceError
from examinsight.services.ai_client import CoachModel
from examinsight.services.orchestrator import SnapshotOrchestrator
from examinsight.services.repository import InMemoryAnalyticsRepository
from examinsight.services.scoring import AnswerKey, BookletRotationMap, KeyItem, RawAnswerSheet

EXAM_ID = "EXAM-1"
CORRECT = "ABCDABCDAB"
SUBJECTS = ["TUR"] * 4 + ["MAT"] * 4 + ["FEN"] * 2
TOPICS = ["T1", "T1", "T2", "T2", "M1", "M1", "M2", "M2", "F1", "F1"]


def make_key(exam_id=EXAM_ID, exam_type="LGS"):
    items = tuple(
        KeyItem(index=i, subject=SUBJECTS[i], correct=CORRECT[i], topic=TOPICS[i])
        for i in range(len(CORRECT))
    )
    return AnswerKey(
        exam_id=exam_id,
        items=items,
        exam_type=exam_type,
        prerequisites={"T2": ("T1",), "M2": ("M1",)},
        topic_names={"T1": "Reading", "T2": "Grammar", "M1": "Fractions", "M2": "Equations", "F1": "Cells"},
    )


def make_rotation(length=10):
    return BookletRotationMap({"A": tuple(range(length)), "B": tuple(reversed(range(length)))})


def sheet(student_id, answers, booklet="A", class_name="8A"):
    return RawAnswerSheet(student_id=student_id, booklet=booklet, answers=tuple(answers), class_name=class_name)


# six students, all on booklet A; s1 is perfect, s6 left everything blank
SHEETS = [
    sheet("s1", "ABCDABCDAB"),
    sheet("s2", "ABCDABCDBA"),
    sheet("s3", "ABCCAB--AB", class_name="8B"),
    sheet("s4", "BBCDDDDDAB"),
    sheet("s5", "ABDDACBDCC", class_name="8B"),
    sheet("s6", "----------"),
]


@pytest.fixture
def answer_key():
    return make_key()


@pytest.fixture
def rotation():
    return make_rotation()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def repository(answer_key, rotation):
    repo = InMemoryAnalyticsRepository()
    repo.save_answer_key(answer_key, rotation)
    repo.save_sheets(EXAM_ID, SHEETS)
    return repo


class SlowEngine(AnalyticsEngine):
    """Analytics engine that holds every compute long enough for callers to pile up."""

    def __init__(self, delay=0.2, config=None):
        super().__init__(config or AnalyticsConfig())
        self.delay = delay

    def analyze(self, data):
        time.sleep(self.delay)
        return super().analyze(data)


@pytest.fixture
def orchestrator(repository, store):
    orch = SnapshotOrchestrator(
        repository,
        store,
        engine=SlowEngine(delay=0.05),
        retry_backoff_seconds=0.001,
        retry_max_backoff_seconds=0.002,
        poll_interval_seconds=0.01,
    )
    yield orch
    orch.shutdown()


class StubModel(CoachModel):
    """Counts calls; optionally slow or failing."""

    name = "stub-model"

    def __init__(self, delay=0.0, failures=0, text="Great progress, keep it up."):
        self.delay = delay
        self.failures = failures
        self.text = text
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, messages):
        with self._lock:
            self.calls += 1
            fail = self.failures > 0
            if fail:
                self.failures -= 1
        time.sleep(self.delay)
        if fail:
            raise AIServiceError("model unavailable")
        return self.text
