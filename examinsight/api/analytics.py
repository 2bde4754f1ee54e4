from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..bootstrap import Services
from ..services.ai_coach import CoachOptions, CoachRole
from .deps import get_services, result_response

router = APIRouter()


@router.get("/{exam_id}/students/{student_id}/analytics")
def get_student_analytics(exam_id: str, student_id: str, services: Services = Depends(get_services)):
    return result_response(services.orchestrator.get_student_analytics(exam_id, student_id))


@router.get("/{exam_id}/students/{student_id}/analytics/state")
def get_snapshot_state(exam_id: str, student_id: str, services: Services = Depends(get_services)):
    return {"exam_id": exam_id, "student_id": student_id, "state": services.orchestrator.snapshot_state(exam_id, student_id).value}


class CoachRequest(BaseModel):
    context: Optional[Dict[str, Any]] = None
    bypass_cache: bool = False


@router.post("/{exam_id}/students/{student_id}/coach/{role}")
def post_coach(exam_id: str, student_id: str, role: CoachRole, payload: CoachRequest = None, services: Services = Depends(get_services)):
    payload = payload or CoachRequest()
    analytics = services.orchestrator.get_student_analytics(exam_id, student_id)
    if not analytics.success:
        return result_response(analytics)
    commentary = services.coach.for_role(role, analytics.data, payload.context, CoachOptions(bypass_cache=payload.bypass_cache))
    return JSONResponse(status_code=200 if commentary.success else 202, content=commentary.to_dict())
