from examinsight.bootstrap import create_services
from examinsight.core.cache import MemoryStore
from examinsight.core.config import Settings
from examinsight.jobs.recompute_job import recompute_stale_job

from .conftest import EXAM_ID, StubModel


def test_recompute_job_outside_worker(repository):
    services = create_services(Settings(_env_file=None), store=MemoryStore(), repository=repository, model=StubModel())
    try:
        services.orchestrator.get_student_analytics(EXAM_ID, "s1")
        services.orchestrator.invalidate_exam(EXAM_ID, "rescored")
        assert recompute_stale_job(exam_id=EXAM_ID, services=services) == {"processed": 1, "completed": 1, "failed": 0}
        assert recompute_stale_job(exam_id=EXAM_ID, services=services)["processed"] == 0
    finally:
        services.close()
