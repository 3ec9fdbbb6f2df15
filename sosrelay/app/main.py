"""
FastAPI application entry point for the backend of record.

Run with:
    uvicorn sosrelay.app.main:app --port 3001

Or:
    python -m sosrelay.app.main

Devices point BACKEND_URL at this service; they push originated alerts to
it and poll it for alerts raised elsewhere.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── Core infrastructure ──
from sosrelay.app.core.config import settings
from sosrelay.app.core.logging_config import setup_logging
from sosrelay.app.core.errors import register_error_handlers
from sosrelay.app.core.middleware import RequestLoggingMiddleware
from sosrelay.app.emergency.registry import EmergencyRegistry, default_registry

# ── API routers ──
from sosrelay.app.api.v1.emergencies import router as emergencies_router
from sosrelay.app.api.v1.sos import router as sos_router

# ── Initialise logging ──
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s] with %d stored emergencies",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        len(app.state.registry),
    )
    yield
    logger.info("Shutting down %s", settings.APP_NAME)


def create_app(registry: Optional[EmergencyRegistry] = None) -> FastAPI:
    """Build the API around ``registry`` (a fresh default one when omitted)."""
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Backend of record for rural SOS alerts. Devices push alerts "
            "raised locally and poll for alerts raised elsewhere; downstream "
            "roles update status and assignment."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.registry = registry if registry is not None else default_registry()

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)

    app.include_router(emergencies_router)
    app.include_router(sos_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "endpoints": [
                f"{settings.BACKEND_API_PREFIX}/emergencies",
                f"{settings.BACKEND_API_PREFIX}/sos-alert",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Registry summary."""
        registry = app.state.registry
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "emergencies": len(registry),
            "by_status": registry.counts_by_status(),
        }

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Liveness probe — is the process alive?"""
        return {"status": "alive"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sosrelay.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
    )
