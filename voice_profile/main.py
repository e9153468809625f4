"""Main FastAPI application for the voice profile service."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voice_profile.api.enrollment import get_session_registry, router as enrollment_router
from voice_profile.api.voice_profile import router as voice_profile_router
from voice_profile.config import settings
from voice_profile.middleware import (
    MetricsMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    get_metrics,
)
from voice_profile.models.api_models import HealthResponse
from voice_profile.observability import instrument_fastapi_app, setup_observability
from voice_profile.services.voice_profile_service import get_voice_profile_service

SERVICE_VERSION = "1.0.0"


# Configure structured logging
logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "Starting voice profile service",
        port=settings.port,
        host=settings.host,
        extraction_worker=settings.use_extraction_worker
    )

    yield

    logger.info("Shutting down voice profile service")
    await get_session_registry().close()
    get_voice_profile_service().close()


def create_app() -> FastAPI:
    """Build the application with its middleware and routers."""
    app = FastAPI(
        title="Voice Profile Service",
        description="Voice profile enrollment and speaker verification for voice-gated assistants",
        version=SERVICE_VERSION,
        lifespan=lifespan
    )

    if settings.enable_tracing:
        setup_observability(
            service_name="voice-profile-service",
            service_version=SERVICE_VERSION,
            otlp_endpoint=settings.otlp_endpoint,
            enable_console_export=False
        )
        instrument_fastapi_app(app)

    # Add middleware (order matters - last added is executed first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(voice_profile_router)
    app.include_router(enrollment_router)

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            version=SERVICE_VERSION
        )

    @app.get("/metrics")
    async def metrics_endpoint():
        """Application metrics endpoint."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": get_metrics()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voice_profile.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
