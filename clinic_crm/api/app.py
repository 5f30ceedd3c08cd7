"""FastAPI application for the clinic CRM scheduling core."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_crm import __version__
from clinic_crm.api.middleware import RequestLoggingMiddleware
from clinic_crm.api.routes import doctors, health, patients, scheduling
from clinic_crm.config import get_settings
from clinic_crm.scheduling.errors import (
    ConflictError,
    NotFoundError,
    SchedulingError,
    StoreError,
    ValidationError,
)
from clinic_crm.scheduling.service import SchedulingServices

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[SchedulingError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    StoreError: 503,
}


def status_for(exc: SchedulingError) -> int:
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting clinic CRM API")

    engine = None
    if getattr(app.state, "services", None) is None:
        from clinic_crm.core.database import create_engine_for_url, create_session_factory, init_db
        from clinic_crm.scheduling.service import build_store

        settings = get_settings()
        engine = create_engine_for_url(settings.database_url)
        await init_db(engine)
        store = build_store(create_session_factory(engine), settings)
        app.state.services = SchedulingServices.create(store, settings=settings)

    logger.info("Clinic CRM API started successfully")

    yield

    logger.info("Shutting down clinic CRM API")
    if engine is not None:
        await engine.dispose()


def create_app(services: Optional[SchedulingServices] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Passing *services* skips the database setup in the lifespan handler.
    """
    settings = get_settings()

    app = FastAPI(
        title="Clinic CRM API",
        description="Multi-tenant clinic scheduling: bookings, holds and patient milestones",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, tags=["health"])
    app.include_router(scheduling.router, prefix="/api/v1", tags=["scheduling"])
    app.include_router(patients.router, prefix="/api/v1", tags=["patients"])
    app.include_router(doctors.router, prefix="/api/v1", tags=["doctors"])

    @app.exception_handler(SchedulingError)
    async def scheduling_exception_handler(request: Request, exc: SchedulingError):
        status_code = status_for(exc)
        content = {"error": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, ConflictError):
            content["doctor_id"] = exc.doctor_id
            content["start"] = exc.start.isoformat()
            content["end"] = exc.end.isoformat()
        if isinstance(exc, StoreError):
            logger.warning(f"Store unavailable: {exc}")
            content["retryable"] = True
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.debug_mode else None,
            },
        )

    return app
