"""Scheduler: owns the discovery, sweep and monitor drivers.

Each driver ticks on its own interval and starts a cycle in the background.
A tick that finds the previous run of the same kind still going is skipped,
not queued. With Redis configured, a lease extends that rule across
replicas. Cycles of different kinds may run at the same time.
"""

import asyncio
import time
from enum import StrEnum

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from src.db.redis import CycleLease
from src.pipeline.cycles import (
    MarketIndex,
    PipelineContext,
    ProviderClient,
    run_discovery_cycle,
    run_monitor_cycle,
    run_sweep_cycle,
)
from src.pipeline.metrics import PipelineMetrics
from src.pipeline.vetting.dispatcher import VettingDispatcher
from src.pipeline.vetting.ingestor import ResultIngestor
from src.pipeline.vetting.tiers import RiskTierMap
from src.pipeline.vetting.workflow_client import VettingWorkflowClient

STATS_INTERVAL_SEC = 60


class CycleKind(StrEnum):
    DISCOVERY = "discovery"
    SWEEP = "sweep"
    MONITOR = "monitor"


class Scheduler:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        market: MarketIndex,
        metadata: ProviderClient | None,
        rpc: ProviderClient | None,
        workflow: VettingWorkflowClient,
        metrics: PipelineMetrics | None = None,
        redis: Redis | None = None,
    ) -> None:
        self._settings = settings
        self._market = market
        self._redis = redis
        self.metrics = metrics or PipelineMetrics()

        # Merge priority is decided by each client's ``source``, not list order
        providers = [p for p in (metadata, market, rpc) if p is not None]
        self.ingestor = ResultIngestor(
            RiskTierMap(settings.risk_tier_thresholds), self.metrics
        )
        self.context = PipelineContext(
            session_factory=session_factory,
            providers=providers,
            dispatcher=VettingDispatcher(workflow, self.metrics, self.ingestor),
            ingestor=self.ingestor,
            workflow=workflow,
            metrics=self.metrics,
            min_age_days=settings.min_age_days,
            # Covers a full 429 backoff wait plus the request itself
            provider_deadline_sec=(
                settings.provider_timeout_sec + settings.rate_limit_backoff_max_sec
            ),
        )
        self._locks = {kind: asyncio.Lock() for kind in CycleKind}
        self._tasks: list[asyncio.Task] = []
        self._runs: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def is_cycle_running(self, kind: CycleKind) -> bool:
        return self._locks[kind].locked()

    def start(self) -> None:
        if self._tasks:
            return
        s = self._settings
        self._tasks = [
            asyncio.create_task(
                self._drive(CycleKind.DISCOVERY, s.discovery_interval_sec),
                name="discovery_driver",
            ),
            asyncio.create_task(
                self._drive(CycleKind.SWEEP, s.sweep_interval_sec), name="sweep_driver"
            ),
            asyncio.create_task(
                self._drive(CycleKind.MONITOR, s.monitor_interval_sec), name="monitor_driver"
            ),
            asyncio.create_task(self._stats_reporter(), name="stats_reporter"),
        ]
        logger.info(
            f"[SCHEDULER] Started: discovery every {s.discovery_interval_sec}s, "
            f"sweep every {s.sweep_interval_sec}s, monitor every {s.monitor_interval_sec}s, "
            f"min age {s.min_age_days}d"
        )

    async def stop(self) -> None:
        tasks = self._tasks + list(self._runs)
        self._tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
        logger.info("[SCHEDULER] Stopped")

    async def _drive(self, kind: CycleKind, interval: int) -> None:
        while True:
            run = asyncio.create_task(self.run_cycle(kind), name=f"{kind}_cycle")
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)
            await asyncio.sleep(interval)

    async def run_cycle(self, kind: CycleKind) -> bool:
        """Run one cycle now. Returns False if it was skipped."""
        lock = self._locks[kind]
        if lock.locked():
            logger.info(f"[SCHEDULER] {kind} still running, tick skipped")
            self.metrics.record_cycle_skipped(kind)
            return False

        async with lock:
            lease = None
            if self._redis is not None:
                lease = CycleLease(self._redis, kind, self._settings.cycle_lease_ttl_sec)
                try:
                    acquired = await lease.acquire()
                except RedisError as e:
                    # Redis down: fall back to the local lock only
                    logger.warning(f"[SCHEDULER] {kind} lease unavailable: {e}")
                    acquired, lease = True, None
                if not acquired:
                    logger.info(f"[SCHEDULER] {kind} running on another replica, skipped")
                    self.metrics.record_cycle_skipped(kind)
                    return False

            started = time.monotonic()
            failed = False
            addresses = 0
            try:
                outcomes = await self._execute(kind)
                addresses = sum(outcomes.values())
            except Exception as e:
                failed = True
                logger.error(f"[SCHEDULER] {kind} cycle failed: {type(e).__name__}: {e}")
            finally:
                if lease is not None:
                    try:
                        await lease.release()
                    except RedisError as e:
                        logger.warning(f"[SCHEDULER] Releasing {kind} lease failed: {e}")
            self.metrics.record_cycle(
                kind,
                (time.monotonic() - started) * 1000,
                addresses=addresses,
                failed=failed,
            )
            return True

    async def _execute(self, kind: CycleKind):
        s = self._settings
        if kind == CycleKind.DISCOVERY:
            return await run_discovery_cycle(
                self.context,
                self._market,
                chains=s.discovery_chains,
                limit=s.discovery_limit,
                workers=s.discovery_workers,
            )
        if kind == CycleKind.MONITOR:
            return await run_monitor_cycle(
                self.context,
                batch_size=s.monitor_batch_size,
                workers=s.monitor_workers,
                stale_sec=s.monitor_stale_sec,
            )
        return await run_sweep_cycle(
            self.context,
            batch_size=s.sweep_batch_size,
            workers=s.sweep_workers,
            staleness_sec=s.submission_staleness_sec,
        )

    async def _stats_reporter(self) -> None:
        """Log pipeline stats every minute."""
        while True:
            await asyncio.sleep(STATS_INTERVAL_SEC)
            logger.info(f"[STATS] {self.metrics.format_stats_line()}")
