from datetime import timedelta

import pytest

from examinsight.core.database import init_db, make_engine, make_session_factory
from examinsight.models.domain import AnalyticsSnapshot, JobStatus, utcnow
from examinsight.services.repository import SUPERSEDED, SqlAnalyticsRepository

from .conftest import EXAM_ID, SHEETS, make_key, make_rotation, sheet


@pytest.fixture
def sql_repository(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield SqlAnalyticsRepository(make_session_factory(engine))
    engine.dispose()


def snapshot(student_id="s1", exam_id=EXAM_ID, computed_at=None, net=10.0):
    return AnalyticsSnapshot(
        exam_id=exam_id,
        student_id=student_id,
        input_hash="in",
        content_hash="out",
        calculation_version="1.0.0",
        computed_at=computed_at or utcnow(),
        payload={"score": {"net": net}},
    )


def test_answer_key_round_trip(sql_repository):
    key, rotation = make_key(), make_rotation()
    sql_repository.save_answer_key(key, rotation)
    loaded_key, loaded_rotation = sql_repository.get_answer_key(EXAM_ID)
    assert loaded_key == key
    assert loaded_rotation.to_dict() == rotation.to_dict()
    assert sql_repository.get_answer_key("missing") is None


def test_sheets_upsert(sql_repository):
    assert sql_repository.save_sheets(EXAM_ID, SHEETS) == 6
    sql_repository.save_sheets(EXAM_ID, [sheet("s1", "----------", class_name="8C")])
    assert len(sql_repository.list_sheets(EXAM_ID)) == 6
    s1 = sql_repository.get_sheet(EXAM_ID, "s1")
    assert s1.answers == tuple("----------")
    assert s1.class_name == "8C"
    assert sql_repository.get_sheet(EXAM_ID, "nobody") is None


def test_older_snapshot_never_replaces_newer(sql_repository):
    now = utcnow()
    assert sql_repository.save_snapshot(snapshot(computed_at=now, net=12.0))
    assert not sql_repository.save_snapshot(snapshot(computed_at=now - timedelta(seconds=5), net=3.0))
    stored = sql_repository.get_snapshot(EXAM_ID, "s1")
    assert stored.payload == {"score": {"net": 12.0}}
    assert stored.computed_at == now


def test_mark_stale(sql_repository):
    for sid in ("s1", "s2"):
        sql_repository.save_snapshot(snapshot(sid))
    assert sql_repository.mark_stale(EXAM_ID, "key corrected", student_id="s1") == 1
    assert sql_repository.get_snapshot(EXAM_ID, "s1").invalidation_reason == "key corrected"
    assert not sql_repository.get_snapshot(EXAM_ID, "s2").is_stale
    assert sql_repository.mark_stale(EXAM_ID, "new sheets") == 2
    assert all(s.is_stale for s in sql_repository.list_snapshots(EXAM_ID))


def test_student_history_excludes_current_exam(sql_repository):
    start = utcnow()
    sql_repository.save_snapshot(snapshot(exam_id="E0", computed_at=start, net=5.0))
    sql_repository.save_snapshot(snapshot(exam_id="E1", computed_at=start + timedelta(days=1), net=7.0))
    sql_repository.save_snapshot(snapshot(exam_id=EXAM_ID, computed_at=start + timedelta(days=2), net=9.0))
    assert sql_repository.student_history("s1", EXAM_ID) == [5.0, 7.0]


def test_jobs(sql_repository):
    job = sql_repository.create_job(EXAM_ID, "s1", "input changed")
    other = sql_repository.create_job(EXAM_ID, "s2", "expired")
    job.status = JobStatus.FAILED
    job.attempts = 1
    job.last_error = "boom"
    sql_repository.update_job(job)

    stored = sql_repository.get_job(job.id)
    assert (stored.status, stored.attempts, stored.last_error) == (JobStatus.FAILED, 1, "boom")
    assert [j.id for j in sql_repository.list_jobs(status=JobStatus.FAILED)] == [job.id]
    assert sql_repository.supersede_pending_jobs(EXAM_ID, "s2") == 1
    superseded = sql_repository.get_job(other.id)
    assert superseded.status == JobStatus.COMPLETED
    assert superseded.reason == SUPERSEDED
    assert sql_repository.supersede_pending_jobs(EXAM_ID, "s2") == 0
