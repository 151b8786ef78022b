"""FastAPI dependency injection: DB session and pipeline objects from app.state."""

from __future__ import annotations

import hmac
from collections.abc import AsyncGenerator

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.pipeline.vetting.ingestor import ResultIngestor


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async DB session (auto-closes)."""
    async with request.app.state.session_factory() as session:
        yield session


def get_ingestor(request: Request) -> ResultIngestor:
    return request.app.state.ingestor


async def verify_webhook_secret(request: Request) -> None:
    """Check X-Webhook-Secret when a secret is configured."""
    expected: str = request.app.state.webhook_secret
    if not expected:
        return
    provided = request.headers.get("X-Webhook-Secret", "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )
