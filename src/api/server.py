"""Webhook server: runs uvicorn inside the existing asyncio event loop."""

from __future__ import annotations

import uvicorn
from fastapi import FastAPI
from loguru import logger


async def run_api_server(app: FastAPI, port: int) -> None:
    """Serve the webhook API as an asyncio task alongside the scheduler.

    Uses ``uvicorn.Server.serve()`` which is fully async.
    """
    config = uvicorn.Config(
        app=app,
        host="0.0.0.0",
        port=port,
        log_level="warning",
        loop="none",  # use the existing event loop
    )
    server = uvicorn.Server(config)
    logger.info(f"Vetting webhook API starting on http://0.0.0.0:{port}")
    await server.serve()
