"""
Main FastAPI application for the Lead Engagement Engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from .routes import engine as engine_routes
from config.settings import Settings, get_settings
from database.session import init_db
from scheduler.engine import build_engine

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    logger.info("Lead Engagement Engine starting up...")

    database = await init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    app.state.database = database
    app.state.engine = build_engine(settings, database)
    logger.info("Lead Engagement Engine ready")
    yield
    logger.info("Lead Engagement Engine shutting down...")

    try:
        await app.state.engine.close()
    finally:
        await database.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.api_title,
        description="Lead engagement orchestration: conversation analysis, triggers, scoring, scheduling and learning.",
        version=settings.api_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(engine_routes.router, prefix="/api/v1", tags=["Engine"])

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "operational",
            "docs": "/docs",
        }

    # Health check
    @app.get("/health")
    async def health(request: Request):
        engine = getattr(request.app.state, "engine", None)
        gateway_ok = False
        if engine is not None:
            gateway_ok = await engine.services.dispatcher.gateway.health_check()
        return {
            "status": "healthy" if engine is not None else "degraded",
            "services": {
                "engine": engine is not None,
                "gateway": gateway_ok,
                "llm_provider": settings.llm_provider,
                "learning_queue": engine.learning.pending if engine is not None else 0,
            },
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    _settings = get_settings()
    uvicorn.run(app, host=_settings.api_host, port=_settings.api_port)
