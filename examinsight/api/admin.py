from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from redis.exceptions import RedisError
from rq.exceptions import NoSuchJobError
from rq.job import Job

from ..bootstrap import Services
from ..jobs.queue import get_queue
from ..jobs.recompute_job import recompute_stale_job
from ..models.domain import JobStatus
from .deps import get_services

router = APIRouter()


class InvalidateRequest(BaseModel):
    reason: str = "manual invalidation"
    student_id: Optional[str] = None


@router.post("/exams/{exam_id}/invalidate")
def invalidate(exam_id: str, payload: InvalidateRequest, services: Services = Depends(get_services)):
    if payload.student_id:
        count = services.orchestrator.invalidate(exam_id, payload.student_id, payload.reason)
    else:
        count = services.orchestrator.invalidate_exam(exam_id, payload.reason)
    return {"exam_id": exam_id, "invalidated": count}


class RecomputeRequest(BaseModel):
    limit: Optional[int] = None
    exam_id: Optional[str] = None


class RecomputeSummary(BaseModel):
    processed: int
    completed: int
    failed: int


@router.post("/recompute/run", response_model=RecomputeSummary)
def run_recompute(payload: RecomputeRequest, services: Services = Depends(get_services)):
    return services.orchestrator.recompute_stale_snapshots(limit=payload.limit, exam_id=payload.exam_id)


@router.post("/recompute/start")
def start_recompute(payload: RecomputeRequest, services: Services = Depends(get_services)):
    try:
        job = get_queue(services.settings).enqueue(recompute_stale_job, payload.limit, payload.exam_id, job_timeout=3600)
    except RedisError as e:
        raise HTTPException(503, f"Job queue unavailable: {e}")
    return {"job_id": job.get_id()}


class RecomputeStatus(BaseModel):
    state: str
    processed: Optional[int] = None
    completed: Optional[int] = None
    failed: Optional[int] = None


@router.get("/recompute/status", response_model=RecomputeStatus)
def recompute_status(job_id: str, services: Services = Depends(get_services)):
    queue = get_queue(services.settings)
    try:
        job = Job.fetch(job_id, connection=queue.connection)
    except NoSuchJobError:
        raise HTTPException(404, f"Unknown job {job_id}")
    except RedisError as e:
        raise HTTPException(503, f"Job queue unavailable: {e}")
    meta = job.meta or {}
    return RecomputeStatus(
        state=meta.get("state") or job.get_status(),
        processed=meta.get("processed"),
        completed=meta.get("completed"),
        failed=meta.get("failed"),
    )


class JobRow(BaseModel):
    id: str
    exam_id: str
    student_id: str
    status: str
    reason: Optional[str] = None
    attempts: int
    last_error: Optional[str] = None
    created_at: str
    updated_at: str


@router.get("/recompute/jobs", response_model=List[JobRow])
def list_jobs(status: Optional[JobStatus] = None, exam_id: Optional[str] = None, limit: int = 100, services: Services = Depends(get_services)):
    return [JobRow(**j.to_dict()) for j in services.repository.list_jobs(status=status, exam_id=exam_id, limit=limit)]
