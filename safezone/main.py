"""
SafeZone Guardian - FastAPI operations entry point.

Geofence monitoring and missing-person case coordination run as an
in-process library (safezone.services.guardian). This app only owns the
container's lifecycle and exposes health endpoints.

Run with:
    uvicorn safezone.main:app
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from safezone.core.errors import GuardianError, NotFound, ServiceUnavailable
from safezone.core.settings import settings
from safezone.routes import health
from safezone.services.guardian import get_guardian_services

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


# Initialize FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Geofence monitoring and missing-person case coordination",
    debug=settings.DEBUG,
)


@app.exception_handler(GuardianError)
async def guardian_exception_handler(request: Request, exc: GuardianError):
    """Map core errors to HTTP responses."""
    if isinstance(exc, NotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ServiceUnavailable):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions and log them with full traceback."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": f"Internal server error: {str(exc)}"},
    )


# Application lifecycle events
@app.on_event("startup")
async def startup_event():
    """Restore state from the store and start the periodic workers."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    get_guardian_services().initialize()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop workers and drain in-flight work."""
    get_guardian_services().shutdown()
    logger.info(f"Shut down {settings.APP_NAME}")


# Include routers
app.include_router(health.router)


# Root endpoint
@app.get("/")
async def root():
    """
    Root endpoint - API information.
    """
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/docs",
        "health": "/health",
    }
