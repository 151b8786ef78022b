"""Health check: no auth required."""

from __future__ import annotations

from fastapi import APIRouter, Request
from loguru import logger
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter(prefix="/api/v1", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_sec: int
    db_ok: bool
    stats: dict


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check DB connectivity and report pipeline counters."""
    db_ok = False
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
        db_ok = True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"[API] Health DB check failed: {e}")

    summary: dict = {}
    metrics = request.app.state.metrics
    if metrics is not None:
        summary = metrics.get_summary()

    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version="0.1.0",
        uptime_sec=summary.get("uptime_sec", 0),
        db_ok=db_ok,
        stats=summary,
    )
