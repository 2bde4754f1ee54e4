import logging
from typing import Optional

from rq import get_current_job

from ..bootstrap import create_services

logger = logging.getLogger(__name__)


def recompute_stale_job(limit: Optional[int] = None, exam_id: Optional[str] = None, services=None) -> dict:
    """rq entry point for the stale-snapshot sweep. Progress is mirrored into job.meta."""
    job = get_current_job()
    if job is not None:
        job.meta.update({"state": "running", "exam_id": exam_id, "limit": limit})
        job.save_meta()

    owned = services is None
    services = services or create_services()
    try:
        summary = services.orchestrator.recompute_stale_snapshots(limit=limit, exam_id=exam_id)
    except Exception:
        logger.exception("Recompute sweep crashed")
        if job is not None:
            job.meta.update({"state": "failed"})
            job.save_meta()
        raise
    finally:
        if owned:
            services.close()

    if job is not None:
        job.meta.update({"state": "done", **summary})
        job.save_meta()
    return summary
