"""Entry point for the token vetting pipeline."""

import asyncio
import signal

from loguru import logger

from config.settings import Settings, settings
from src.api.app import create_app
from src.api.server import run_api_server
from src.db.database import build_engine, build_session_factory
from src.db.redis import connect_redis
from src.pipeline.birdeye.client import BirdeyeClient
from src.pipeline.dexscreener.client import DexScreenerClient
from src.pipeline.metrics import PipelineMetrics
from src.pipeline.rate_limiter import ProviderThrottle
from src.pipeline.scheduler import Scheduler
from src.pipeline.solana_rpc.client import SolanaRpcClient
from src.pipeline.vetting.workflow_client import VettingWorkflowClient
from src.utils.logger import setup_logger


def _throttle(cfg: Settings, max_rps: float) -> ProviderThrottle:
    return ProviderThrottle(
        max_rps,
        base_delay=cfg.rate_limit_backoff_sec,
        max_delay=cfg.rate_limit_backoff_max_sec,
        mode=cfg.rate_limit_backoff_mode,
    )


async def main() -> None:
    setup_logger(json_logs=settings.log_json, level=settings.log_level, log_dir=settings.log_dir)
    logger.info("Starting token vetting pipeline...")

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    redis = connect_redis(settings.redis_url)
    metrics = PipelineMetrics()

    timeout = settings.provider_timeout_sec
    market = DexScreenerClient(
        throttle=_throttle(settings, settings.dexscreener_max_rps), timeout=timeout
    )
    metadata = None
    if settings.birdeye_api_key:
        metadata = BirdeyeClient(
            settings.birdeye_api_key,
            throttle=_throttle(settings, settings.birdeye_max_rps),
            timeout=timeout,
        )
    else:
        logger.warning("BIRDEYE_API_KEY not set, metadata provider disabled")
    rpc = None
    if settings.solana_rpc_url:
        rpc = SolanaRpcClient(
            settings.solana_rpc_url,
            throttle=_throttle(settings, settings.rpc_max_rps),
            timeout=timeout,
        )
    if not settings.vetting_webhook_url:
        logger.warning("VETTING_WEBHOOK_URL not set, every dispatch will fail")
    workflow = VettingWorkflowClient(
        settings.vetting_webhook_url,
        settings.vetting_status_url,
        timeout=settings.vetting_timeout_sec,
        secret=settings.vetting_webhook_secret,
    )

    scheduler = Scheduler(
        settings,
        session_factory,
        market=market,
        metadata=metadata,
        rpc=rpc,
        workflow=workflow,
        metrics=metrics,
        redis=redis,
    )

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    scheduler.start()
    waiters = [asyncio.create_task(shutdown_event.wait(), name="shutdown")]
    if settings.api_enabled:
        app = create_app(
            session_factory,
            scheduler.ingestor,
            webhook_secret=settings.vetting_webhook_secret,
            metrics=metrics,
        )
        waiters.append(
            asyncio.create_task(run_api_server(app, settings.api_port), name="api_server")
        )

    # Wait for either the API server to exit or a shutdown signal
    done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    for task in done:
        if task.exception() is not None:
            logger.error(f"{task.get_name()} exited: {task.exception()}")

    # Cancel remaining tasks
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    await scheduler.stop()
    for client in (market, metadata, rpc, workflow):
        if client is not None:
            await client.close()
    if redis is not None:
        await redis.aclose()
    await engine.dispose()
    logger.info("Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
