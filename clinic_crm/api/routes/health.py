"""Health check endpoints."""

from fastapi import APIRouter, Request

from clinic_crm import __version__

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "clinic-crm",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict:
    """Readiness check - verifies the scheduling services are wired."""
    ready = getattr(request.app.state, "services", None) is not None
    return {
        "status": "ready" if ready else "not_ready",
        "services": ready,
    }
