"""FastAPI application factory for the vetting webhook."""

from __future__ import annotations

import os

from fastapi import FastAPI
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.pipeline.metrics import PipelineMetrics
from src.pipeline.vetting.ingestor import ResultIngestor

# Rate limiter (shared instance)
limiter = Limiter(key_func=get_remote_address)


def create_app(
    session_factory: async_sessionmaker[AsyncSession],
    ingestor: ResultIngestor,
    *,
    webhook_secret: str = "",
    metrics: PipelineMetrics | None = None,
) -> FastAPI:
    """Build the app around the pipeline's own session factory and ingestor."""
    app = FastAPI(
        title="Token Vetting Pipeline",
        version="0.1.0",
        docs_url="/api/docs" if os.getenv("API_DEBUG") else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if os.getenv("API_DEBUG") else None,
    )

    app.state.session_factory = session_factory
    app.state.ingestor = ingestor
    app.state.webhook_secret = webhook_secret
    app.state.metrics = metrics

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    from src.api.routers.health import router as health_router
    from src.api.routers.vetting import router as vetting_router

    app.include_router(health_router)
    app.include_router(vetting_router)
    return app
