"""Discovery, sweep and monitor cycles.

All cycles push (address, chain) pairs through the same per-address
worker: load listing -> fetch providers in parallel -> aggregate -> gate ->
persist -> dispatch. Workers run in a bounded pool per cycle; a failure in
one address never stops the others.

Phase layout of a sweep:
  1. expire stale in-flight submissions
  2. poll the workflow for in-flight results (when a status URL is set)
  3. re-run unvetted listings, least recently evaluated first

The monitor cycle re-enriches vetted listings whose data has gone stale.
"""

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Protocol

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.listing import VettingState
from src.pipeline import persistence
from src.pipeline.aggregator import aggregate
from src.pipeline.eligibility import DEFAULT_MIN_AGE_DAYS, GateDecision, decide
from src.pipeline.exceptions import (
    ProviderRateLimitedError,
    ProviderTransientError,
    VettingWorkflowError,
)
from src.pipeline.metrics import PipelineMetrics
from src.pipeline.rate_limiter import ProviderThrottle
from src.pipeline.snapshot import PartialSnapshot, utcnow
from src.pipeline.vetting.dispatcher import DispatchStatus, VettingDispatcher
from src.pipeline.vetting.ingestor import IngestResult, ResultIngestor
from src.pipeline.vetting.workflow_client import VettingWorkflowClient


class ProviderClient(Protocol):
    name: str
    throttle: ProviderThrottle

    async def fetch(self, address: str, chain: str) -> PartialSnapshot | None: ...


class MarketIndex(Protocol):
    name: str
    throttle: ProviderThrottle

    async def list_new_tokens(self, chains: list[str], limit: int) -> list[tuple[str, str]]: ...


class ProcessOutcome(StrEnum):
    INCONCLUSIVE = "inconclusive"
    REFRESHED = "refreshed"
    NOT_ELIGIBLE = "skip_too_young"
    IN_FLIGHT = "skip_in_flight"
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"
    ERROR = "worker_error"


@dataclass
class PipelineContext:
    """Everything a worker needs; built once in main, shared by every cycle."""

    session_factory: async_sessionmaker[AsyncSession]
    providers: list[ProviderClient]
    dispatcher: VettingDispatcher
    ingestor: ResultIngestor
    workflow: VettingWorkflowClient
    metrics: PipelineMetrics = field(default_factory=PipelineMetrics)
    min_age_days: int = DEFAULT_MIN_AGE_DAYS
    provider_deadline_sec: float | None = None

    def reset_throttles(self) -> None:
        for provider in self.providers:
            provider.throttle.reset()


async def _fetch_one(
    provider: ProviderClient,
    address: str,
    chain: str,
    metrics: PipelineMetrics,
    deadline: float | None,
) -> PartialSnapshot | None:
    try:
        partial = await asyncio.wait_for(provider.fetch(address, chain), timeout=deadline)
    except TimeoutError:
        metrics.record_provider_error(provider.name, "transient")
        logger.debug(f"[{provider.name.upper()}] {address[:12]}: deadline exceeded")
    except ProviderRateLimitedError as e:
        delay = provider.throttle.record_rate_limited(e.retry_after)
        metrics.record_provider_error(provider.name, "rate_limited")
        logger.warning(f"[{provider.name.upper()}] 429, backing off {delay:.1f}s")
    except ProviderTransientError as e:
        metrics.record_provider_error(provider.name, "transient")
        logger.debug(f"[{provider.name.upper()}] {address[:12]}: {e}")
    else:
        if partial is not None:
            for bucket in partial.errors:
                metrics.record_provider_error(provider.name, bucket)
        return partial
    return None


async def fetch_partials(
    providers: Iterable[ProviderClient],
    address: str,
    chain: str,
    metrics: PipelineMetrics,
    deadline: float | None = None,
) -> list[PartialSnapshot]:
    """Query every provider concurrently. Failed providers contribute nothing."""
    results = await asyncio.gather(
        *(_fetch_one(p, address, chain, metrics, deadline) for p in providers)
    )
    return [r for r in results if r is not None]


async def process_address(
    ctx: PipelineContext, address: str, chain: str, *, source: str | None = None
) -> ProcessOutcome:
    """Evaluate one token end to end. Never raises."""
    try:
        outcome = await _process(ctx, address, chain, source)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"[WORKER] {chain}:{address} failed: {type(e).__name__}: {e}")
        outcome = ProcessOutcome.ERROR
        ctx.metrics.record_outcome(outcome)
        return outcome

    # Dispatcher counts its own outcomes
    if outcome not in (ProcessOutcome.DISPATCHED, ProcessOutcome.DISPATCH_FAILED):
        ctx.metrics.record_outcome(outcome)
    return outcome


async def _process(
    ctx: PipelineContext, address: str, chain: str, source: str | None
) -> ProcessOutcome:
    async with ctx.session_factory() as session:
        listing = await persistence.get_listing(session, address, chain)
        partials = await fetch_partials(
            ctx.providers, address, chain, ctx.metrics, ctx.provider_deadline_sec
        )
        now = utcnow()
        snapshot = aggregate(address, chain, partials, listing, now)

        if listing is None:
            listing = await persistence.ensure_listing(
                session, address=address, chain=chain, source=source or "sweep", now=now
            )

        if snapshot is None:
            # Nothing fetched: keep base fields, retry next sweep
            listing.last_evaluated_at = now
            await session.commit()
            return ProcessOutcome.INCONCLUSIVE

        if listing.vetting_state == VettingState.VETTED:
            persistence.apply_snapshot(listing, snapshot, now=now)
            await session.commit()
            return ProcessOutcome.REFRESHED

        in_flight = await persistence.has_in_flight_submission(session, address, chain)
        decision = decide(snapshot, in_flight, ctx.min_age_days)

        if decision == GateDecision.SKIP_IN_FLIGHT:
            persistence.apply_snapshot(listing, snapshot, now=now)
            await session.commit()
            return ProcessOutcome.IN_FLIGHT

        if decision == GateDecision.SKIP_TOO_YOUNG:
            persistence.apply_snapshot(
                listing, snapshot, now=now, vetting_state=VettingState.NOT_ELIGIBLE
            )
            await session.commit()
            logger.debug(f"[GATE] {chain}:{address} too young (age={snapshot.age_days})")
            return ProcessOutcome.NOT_ELIGIBLE

        persistence.apply_snapshot(listing, snapshot, now=now)
        result = await ctx.dispatcher.submit(session, listing, snapshot)

    if result.status == DispatchStatus.SUBMITTED:
        return ProcessOutcome.DISPATCHED
    if result.status == DispatchStatus.IN_FLIGHT:
        return ProcessOutcome.IN_FLIGHT
    return ProcessOutcome.DISPATCH_FAILED


async def run_pool(
    items: list[tuple[str, str]],
    workers: int,
    handler: Callable[[str, str], Awaitable[ProcessOutcome]],
) -> Counter[str]:
    """Drain ``items`` with at most ``workers`` concurrent handlers."""
    queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)
    outcomes: Counter[str] = Counter()

    async def _worker() -> None:
        while True:
            try:
                address, chain = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcomes[await handler(address, chain)] += 1

    await asyncio.gather(*(_worker() for _ in range(min(workers, len(items)))))
    return outcomes


async def run_discovery_cycle(
    ctx: PipelineContext,
    market: MarketIndex,
    *,
    chains: list[str],
    limit: int,
    workers: int,
) -> Counter[str]:
    ctx.reset_throttles()
    try:
        candidates = await market.list_new_tokens(chains, limit)
    except ProviderRateLimitedError as e:
        market.throttle.record_rate_limited(e.retry_after)
        ctx.metrics.record_provider_error(market.name, "rate_limited")
        logger.warning(f"[DISCOVERY] {market.name} rate limited, skipping this cycle")
        return Counter()
    except ProviderTransientError as e:
        ctx.metrics.record_provider_error(market.name, "transient")
        logger.warning(f"[DISCOVERY] Listing new tokens failed: {e}")
        return Counter()

    async def _handle(address: str, chain: str) -> ProcessOutcome:
        return await process_address(ctx, address, chain, source=market.name)

    outcomes = await run_pool(candidates, workers, _handle)
    logger.info(f"[DISCOVERY] {len(candidates)} candidates: {dict(outcomes)}")
    return outcomes


async def poll_in_flight(ctx: PipelineContext, limit: int) -> int:
    """Ask the workflow about in-flight submissions and ingest finished ones."""
    if not ctx.workflow.can_poll:
        return 0

    async with ctx.session_factory() as session:
        submission_ids = [
            s.submission_id
            for s in await persistence.list_in_flight_submissions(session, limit)
        ]

    applied = 0
    for submission_id in submission_ids:
        try:
            outcome = await ctx.workflow.get_status(submission_id)
        except VettingWorkflowError as e:
            logger.debug(f"[SWEEP] Status poll for {submission_id} failed: {e}")
            continue
        if outcome is None or not outcome.is_final:
            continue
        try:
            async with ctx.session_factory() as session:
                result = await ctx.ingestor.ingest(session, submission_id, outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[SWEEP] Ingesting {submission_id} failed: {type(e).__name__}: {e}")
            ctx.metrics.record_outcome(ProcessOutcome.ERROR)
            continue
        if result == IngestResult.APPLIED:
            applied += 1
    return applied


async def run_sweep_cycle(
    ctx: PipelineContext,
    *,
    batch_size: int,
    workers: int,
    staleness_sec: int,
) -> Counter[str]:
    ctx.reset_throttles()

    async with ctx.session_factory() as session:
        expired = await persistence.expire_stale_submissions(
            session, staleness_sec=staleness_sec, now=utcnow()
        )
        await session.commit()
    if expired:
        ctx.metrics.record_outcome("expired", expired)

    polled = await poll_in_flight(ctx, batch_size)

    async with ctx.session_factory() as session:
        candidates = await persistence.list_sweep_candidates(session, batch_size)

    async def _handle(address: str, chain: str) -> ProcessOutcome:
        return await process_address(ctx, address, chain)

    outcomes = await run_pool(candidates, workers, _handle)
    logger.info(
        f"[SWEEP] expired={expired} polled={polled} "
        f"re-evaluated={len(candidates)}: {dict(outcomes)}"
    )
    return outcomes


async def run_monitor_cycle(
    ctx: PipelineContext,
    *,
    batch_size: int,
    workers: int,
    stale_sec: int,
) -> Counter[str]:
    """Re-enrich vetted listings whose market data is older than ``stale_sec``.

    Scores are never touched here; only catalog fields move.
    """
    ctx.reset_throttles()
    async with ctx.session_factory() as session:
        candidates = await persistence.list_refresh_candidates(
            session,
            stale_before=utcnow() - timedelta(seconds=stale_sec),
            limit=batch_size,
        )

    async def _handle(address: str, chain: str) -> ProcessOutcome:
        return await process_address(ctx, address, chain)

    outcomes = await run_pool(candidates, workers, _handle)
    logger.info(f"[MONITOR] {len(candidates)} vetted listings refreshed: {dict(outcomes)}")
    return outcomes
