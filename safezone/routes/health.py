"""
Health check endpoints.
Used for monitoring, deployment readiness checks and per-component statistics.
"""

from fastapi import APIRouter, HTTPException
from safezone.core.settings import settings
from safezone.services.guardian import get_guardian_services
from safezone.utils.timeutils import utc_now


router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def health_check():
    """
    Liveness check.
    Returns 200 while the service container is running, 503 otherwise.
    """
    services = get_guardian_services()
    health = services.get_health_status()
    if health["status"] != "healthy":
        raise HTTPException(status_code=503, detail=health)
    return {
        **health,
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": utc_now().isoformat(),
    }


@router.get("/stats")
async def health_stats():
    """Per-component counters (geofences, tracker, cases, escalation, bus, outbound)."""
    return {
        "timestamp": utc_now().isoformat(),
        "stats": get_guardian_services().get_stats(),
    }
