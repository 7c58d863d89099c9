"""FastAPI application entrypoint.

Configures CORS, includes routers, initializes observability and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .deps import get_settings
from .routers import attribution as attribution_router
from .telemetry import init_observability
from .workers import arq_enqueue
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    # Sentry must be initialized before the app so the FastAPI integration hooks in
    status = init_observability()
    logger.info("[STARTUP] Observability initialized: %s", status)

    app = FastAPI(
        title="Attribution Engine API",
        description="""
        Multi-touch attribution credit engine.

        This API provides endpoints for:
        - Triggering incremental attribution runs and full recomputes
        - Reading and updating per-tenant attribution settings
        - Reading daily channel summaries (revenue, ROAS, CPA by channel)
        - Inspecting attribution run records

        Runs execute on the ARQ worker; trigger endpoints only enqueue.
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS can be a comma-separated list
    allowed_origins = [
        origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()
    ]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(attribution_router.router)
    app.add_event_handler("shutdown", arq_enqueue.reset_arq_pool)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        Does not touch the database or Redis; suitable for load balancer checks.
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
