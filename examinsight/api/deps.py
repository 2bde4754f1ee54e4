from fastapi import Request
from fastapi.responses import JSONResponse

from ..bootstrap import Services
from ..core.errors import ErrorKind
from ..services.orchestrator import AnalyticsResult

ERROR_STATUS = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.COMPUTE_TIMEOUT: 202,
    ErrorKind.ANALYTICS_UNAVAILABLE: 503,
}


def get_services(request: Request) -> Services:
    return request.app.state.services


def result_response(result: AnalyticsResult) -> JSONResponse:
    status = 200 if result.success else ERROR_STATUS[result.error]
    return JSONResponse(status_code=status, content=result.to_dict())
