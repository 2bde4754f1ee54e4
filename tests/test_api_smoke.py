import pytest
from fastapi.testclient import TestClient

from examinsight.bootstrap import create_services
from examinsight.core.cache import MemoryStore
from examinsight.core.config import Settings
from examinsight.main import create_app
from examinsight.services.repository import InMemoryAnalyticsRepository

from .conftest import CORRECT, SHEETS, SUBJECTS, TOPICS, StubModel

EXAM = "LGS-2026-1"


@pytest.fixture
def services():
    settings = Settings(
        _env_file=None,
        ENVIRONMENT="testing",
        PERSIST_RETRY_BACKOFF_SECONDS=0.001,
        AI_LOCK_POLL_INTERVAL_SECONDS=0.01,
    )
    svc = create_services(settings, store=MemoryStore(), repository=InMemoryAnalyticsRepository(), model=StubModel())
    yield svc
    svc.close()


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def key_rows():
    return [
        {"Ders": SUBJECTS[i], "Cevap": CORRECT[i], "Konu": TOPICS[i], "A": i + 1, "B": 10 - i}
        for i in range(10)
    ]


def upload_exam(client):
    r = client.put(f"/v1/exams/{EXAM}/answer-key", json={"rows": key_rows(), "prerequisites": {"M2": ["M1"]}})
    assert r.status_code == 200
    sheets = [
        {"student_id": s.student_id, "booklet": s.booklet, "answers": "".join(s.answers), "class_name": s.class_name}
        for s in SHEETS
    ]
    r = client.post(f"/v1/exams/{EXAM}/sheets", json={"sheets": sheets, "optical_txt": "too short"})
    assert r.status_code == 200
    return r.json()


def test_health(client):
    r = client.get("/health"); assert r.status_code == 200


def test_answer_key_upload(client):
    r = client.put(f"/v1/exams/{EXAM}/answer-key", json={"rows": key_rows()})
    body = r.json()
    assert body["question_count"] == 10
    assert body["exam_type"] == "LGS"
    assert body["booklets"] == ["A", "B"]
    assert body["subjects"] == {"TUR": 4, "MAT": 4, "FEN": 2}


def test_bad_answer_key_is_rejected(client):
    r = client.put(f"/v1/exams/{EXAM}/answer-key", json={"rows": [{"Konu": "T1"}]})
    assert r.status_code == 422


def test_sheets_need_an_answer_key(client):
    r = client.post("/v1/exams/NOPE/sheets", json={"sheets": []})
    assert r.status_code == 404


def test_student_analytics_flow(client):
    uploaded = upload_exam(client)
    assert uploaded["saved"] == 6
    assert len(uploaded["rejected"]) == 1

    r = client.get(f"/v1/exams/{EXAM}/students/s1/analytics")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] and not body["served_stale"]
    assert body["data"]["analytics"]["composite"]["scaled_score"] == 500.0

    r = client.get(f"/v1/exams/{EXAM}/students/s1/analytics/state")
    assert r.json()["state"] == "fresh"

    r = client.get(f"/v1/exams/{EXAM}/students/ghost/analytics")
    assert r.status_code == 404
    assert r.json()["error"]["kind"] == "NOT_FOUND"


def test_coach_commentary(client, services):
    upload_exam(client)
    first = client.post(f"/v1/exams/{EXAM}/students/s4/coach/student")
    second = client.post(f"/v1/exams/{EXAM}/students/s4/coach/student", json={"context": {"goal": 450}})
    assert first.status_code == 200
    assert first.json()["source"] == "ai"
    assert second.json()["source"] == "cache"
    assert services.coach_cache.model.calls == 1
    assert client.post(f"/v1/exams/{EXAM}/students/s4/coach/principal").status_code == 422


def test_statistics(client):
    upload_exam(client)
    r = client.get(f"/v1/exams/{EXAM}/statistics")
    data = r.json()["data"]
    assert data["participants"] == 6
    assert data["ranking"][0]["student_id"] == "s1"


def test_invalidate_and_recompute(client):
    upload_exam(client)
    client.get(f"/v1/exams/{EXAM}/students/s1/analytics")
    r = client.post(f"/v1/admin/exams/{EXAM}/invalidate", json={"reason": "key corrected"})
    assert r.json()["invalidated"] == 1

    r = client.post("/v1/admin/recompute/run", json={})
    assert r.json() == {"processed": 1, "completed": 1, "failed": 0}
    jobs = client.get("/v1/admin/recompute/jobs").json()
    assert [(j["student_id"], j["status"]) for j in jobs] == [("s1", "completed")]
