"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.admin import router as admin_router
from .api.analytics import router as analytics_router
from .api.exams import router as exams_router
from .bootstrap import Services, create_services
from .core.config import get_settings
from .core.errors import ErrorKind, PersistenceError, ValidationError
from .core.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(services: Services = None) -> FastAPI:
    """Build the app. Injected services are used as-is and not closed on shutdown."""
    settings = services.settings if services is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}...")
        owned = services is None
        app.state.services = services or create_services(settings)
        yield
        logger.info(f"Shutting down {settings.APP_NAME}...")
        if owned:
            app.state.services.close()
        logger.info("Shutdown complete")

    app = FastAPI(title=settings.APP_NAME, description=settings.APP_DESCRIPTION, version=settings.APP_VERSION, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
    app.include_router(exams_router, prefix="/v1/exams", tags=["exams"])
    app.include_router(analytics_router, prefix="/v1/exams", tags=["analytics"])
    app.include_router(admin_router, prefix="/v1/admin", tags=["admin"])

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"success": False, "error": {"kind": ErrorKind.VALIDATION.value, "message": str(exc)}})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"Storage failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"success": False, "error": {"kind": ErrorKind.ANALYTICS_UNAVAILABLE.value, "message": "Storage unavailable"}})

    @app.get("/health")
    def health(): return {"status": "ok"}

    return app


def build_app() -> FastAPI:
    """uvicorn factory: ``uvicorn examinsight.main:build_app --factory``."""
    configure_logging(get_settings())
    return create_app()
