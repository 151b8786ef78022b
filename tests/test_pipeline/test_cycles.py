"""End-to-end tests of the per-address worker and the cycles.

SQLite runs every session on one shared connection, so DB-backed cycles
here use a single worker.
"""

import asyncio
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import select

from src.models.listing import Listing, SubmissionState, VettingState, VettingSubmission
from src.pipeline import persistence
from src.pipeline.cycles import (
    PipelineContext,
    ProcessOutcome,
    poll_in_flight,
    process_address,
    run_discovery_cycle,
    run_monitor_cycle,
    run_pool,
    run_sweep_cycle,
)
from src.pipeline.dexscreener.client import DexScreenerClient
from src.pipeline.exceptions import ProviderRateLimitedError, ProviderTransientError
from src.pipeline.metrics import PipelineMetrics
from src.pipeline.rate_limiter import ProviderThrottle
from src.pipeline.snapshot import PartialSnapshot, ProviderSource, utcnow
from src.pipeline.vetting.dispatcher import VettingDispatcher
from src.pipeline.vetting.ingestor import IngestResult, ResultIngestor
from src.pipeline.vetting.tiers import RiskTierMap
from src.pipeline.vetting.workflow_client import SubmitReceipt, VettingOutcome

MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
MINT_2 = "So11111111111111111111111111111111111111112"
TIERS = RiskTierMap([(70.0, "Low-Risk"), (50.0, "Medium-Risk"), (0.0, "High-Risk")])


class FakeProvider:
    def __init__(self, name: str, source: ProviderSource, partial=None, error=None) -> None:
        self.name = name
        self.source = source
        self.throttle = ProviderThrottle(1000, base_delay=0.01)
        self.partial = partial
        self.error = error
        self.calls = 0

    async def fetch(self, address: str, chain: str) -> PartialSnapshot | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.partial


def _metadata(age_days: int, **kw) -> FakeProvider:
    partial = PartialSnapshot(
        source=ProviderSource.METADATA,
        symbol="POPCAT",
        name="Popcat",
        decimals=9,
        creation_timestamp=utcnow() - timedelta(days=age_days, minutes=1),
        **kw,
    )
    return FakeProvider("birdeye", ProviderSource.METADATA, partial)


def _market(liquidity: str = "40000") -> FakeProvider:
    partial = PartialSnapshot(
        source=ProviderSource.MARKET,
        liquidity_usd=Decimal(liquidity),
        lp_burn_pct=Decimal(100),
        pair_address="Pair1111111111111111111111111111111111111111",
    )
    return FakeProvider("dexscreener", ProviderSource.MARKET, partial)


def _workflow(can_poll: bool = False) -> MagicMock:
    workflow = MagicMock()
    workflow.can_poll = can_poll
    workflow.submit = AsyncMock(return_value=SubmitReceipt(external_id="wf-1"))
    workflow.get_status = AsyncMock(return_value=None)
    return workflow


def _context(session_factory, providers, workflow=None) -> PipelineContext:
    metrics = PipelineMetrics()
    workflow = workflow or _workflow()
    return PipelineContext(
        session_factory=session_factory,
        providers=providers,
        dispatcher=VettingDispatcher(workflow, metrics),
        ingestor=ResultIngestor(TIERS, metrics),
        workflow=workflow,
        metrics=metrics,
        min_age_days=14,
    )


async def _load(session_factory, address: str = MINT) -> tuple[Listing | None, list]:
    async with session_factory() as session:
        listing = await persistence.get_listing(session, address, "solana")
        subs = (await session.execute(select(VettingSubmission))).scalars().all()
        return listing, list(subs)


@pytest.mark.asyncio
async def test_young_token_persisted_not_eligible(session_factory):
    """Scenario: 5-day-old token is skipped and stored unscored."""
    ctx = _context(session_factory, [_metadata(5), _market()])

    outcome = await process_address(ctx, MINT, "solana", source="dexscreener")

    assert outcome == ProcessOutcome.NOT_ELIGIBLE
    listing, subs = await _load(session_factory)
    assert listing.vetting_state == VettingState.NOT_ELIGIBLE
    assert listing.risk_score is None
    assert listing.symbol == "POPCAT"
    assert listing.liquidity_usd == Decimal(40000)
    assert listing.source == "dexscreener"
    assert subs == []
    ctx.workflow.submit.assert_not_awaited()
    assert ctx.metrics.outcome("skip_too_young") == 1


@pytest.mark.asyncio
async def test_old_token_dispatched(session_factory):
    """Scenario: 20-day-old token goes in flight and pending."""
    ctx = _context(session_factory, [_metadata(20), _market()])

    outcome = await process_address(ctx, MINT, "solana", source="dexscreener")

    assert outcome == ProcessOutcome.DISPATCHED
    listing, subs = await _load(session_factory)
    assert listing.vetting_state == VettingState.PENDING_VETTING
    assert listing.risk_score is None
    assert len(subs) == 1
    assert subs[0].state == SubmissionState.IN_FLIGHT
    payload_snapshot = ctx.workflow.submit.await_args.args[0]
    assert payload_snapshot.age_days == 20
    assert payload_snapshot.liquidity_usd == Decimal(40000)


@pytest.mark.asyncio
async def test_rerun_is_idempotent(session_factory):
    ctx = _context(session_factory, [_metadata(20), _market()])
    await process_address(ctx, MINT, "solana")
    first, _ = await _load(session_factory)

    outcome = await process_address(ctx, MINT, "solana")

    assert outcome == ProcessOutcome.IN_FLIGHT
    second, subs = await _load(session_factory)
    assert len(subs) == 1
    assert second.updated_at == first.updated_at
    assert second.last_evaluated_at >= first.last_evaluated_at
    assert ctx.workflow.submit.await_count == 1


@pytest.mark.asyncio
async def test_young_rerun_does_not_churn_updated_at(session_factory):
    ctx = _context(session_factory, [_metadata(5), _market()])
    await process_address(ctx, MINT, "solana")
    first, _ = await _load(session_factory)
    await asyncio.sleep(0.01)

    await process_address(ctx, MINT, "solana")

    second, subs = await _load(session_factory)
    assert second.updated_at == first.updated_at
    assert second.last_evaluated_at > first.last_evaluated_at
    assert subs == []


@pytest.mark.asyncio
async def test_token_ages_into_eligibility_on_sweep(session_factory):
    """Scenario: 10-day-old record re-swept five days later is dispatched."""
    ctx = _context(session_factory, [_metadata(10), _market()])
    assert await process_address(ctx, MINT, "solana") == ProcessOutcome.NOT_ELIGIBLE

    later = utcnow() + timedelta(days=5)
    with patch("src.pipeline.cycles.utcnow", return_value=later):
        outcomes = await run_sweep_cycle(ctx, batch_size=10, workers=1, staleness_sec=3600)

    assert outcomes == {ProcessOutcome.DISPATCHED: 1}
    listing, subs = await _load(session_factory)
    assert listing.vetting_state == VettingState.PENDING_VETTING
    assert len(subs) == 1
    assert ctx.workflow.submit.await_args.args[0].age_days == 15


@pytest.mark.asyncio
async def test_all_providers_failing_is_inconclusive(session_factory):
    limited = FakeProvider(
        "birdeye", ProviderSource.METADATA, error=ProviderRateLimitedError("429", retry_after=1.0)
    )
    broken = FakeProvider("dexscreener", ProviderSource.MARKET, error=ProviderTransientError("502"))
    ctx = _context(session_factory, [limited, broken])

    outcome = await process_address(ctx, MINT, "solana", source="dexscreener")

    assert outcome == ProcessOutcome.INCONCLUSIVE
    listing, subs = await _load(session_factory)
    assert listing.vetting_state == VettingState.NOT_ELIGIBLE
    assert listing.last_evaluated_at is not None
    assert subs == []
    assert limited.throttle.strikes == 1
    assert ctx.metrics.provider_errors("birdeye") == {"rate_limited": 1}
    assert ctx.metrics.provider_errors("dexscreener") == {"transient": 1}


@pytest.mark.asyncio
async def test_partial_provider_failure_still_evaluates(session_factory):
    broken = FakeProvider("dexscreener", ProviderSource.MARKET, error=ProviderTransientError("502"))
    ctx = _context(session_factory, [_metadata(30), broken])
    assert await process_address(ctx, MINT, "solana") == ProcessOutcome.DISPATCHED


@pytest.mark.asyncio
async def test_partial_with_failed_subrequest_is_counted(session_factory):
    metadata = _metadata(30)
    metadata.partial = replace(metadata.partial, errors=("transient",))
    ctx = _context(session_factory, [metadata, _market()])

    assert await process_address(ctx, MINT, "solana") == ProcessOutcome.DISPATCHED
    assert ctx.metrics.provider_errors("birdeye") == {"transient": 1}
    listing, _ = await _load(session_factory)
    assert listing.symbol == "POPCAT"


@pytest.mark.asyncio
async def test_hung_provider_hits_deadline(session_factory):
    class HungProvider(FakeProvider):
        async def fetch(self, address: str, chain: str) -> PartialSnapshot | None:
            await asyncio.sleep(10)

    hung = HungProvider("dexscreener", ProviderSource.MARKET)
    ctx = _context(session_factory, [_metadata(30), hung])
    ctx.provider_deadline_sec = 0.05

    assert await process_address(ctx, MINT, "solana") == ProcessOutcome.DISPATCHED
    assert ctx.metrics.provider_errors("dexscreener") == {"transient": 1}


@pytest.mark.asyncio
async def test_date_retry_after_throttles_without_losing_token(session_factory):
    market = DexScreenerClient(max_rps=1000)
    resp = httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
    ctx = _context(session_factory, [_metadata(30), market])

    with patch.object(market, "_client") as mock_http:
        mock_http.get = AsyncMock(return_value=resp)
        outcome = await process_address(ctx, MINT, "solana")

    assert outcome == ProcessOutcome.DISPATCHED
    assert market.throttle.strikes == 1
    assert ctx.metrics.provider_errors("dexscreener") == {"rate_limited": 1}
    listing, _ = await _load(session_factory)
    assert listing.symbol == "POPCAT"


@pytest.mark.asyncio
async def test_vetted_listing_only_refreshed(session_factory):
    async with session_factory() as session:
        listing = await persistence.ensure_listing(
            session, address=MINT, chain="solana", source="dexscreener", now=utcnow()
        )
        persistence.mark_vetted(
            listing, score=Decimal(75), risk_tier="Low-Risk", listing_tier="none", now=utcnow()
        )
        await session.commit()

    ctx = _context(session_factory, [_metadata(40), _market("99000")])
    outcome = await process_address(ctx, MINT, "solana")

    assert outcome == ProcessOutcome.REFRESHED
    listing, subs = await _load(session_factory)
    assert listing.vetting_state == VettingState.VETTED
    assert listing.risk_score == Decimal(75)
    assert listing.liquidity_usd == Decimal(99000)
    assert subs == []
    ctx.workflow.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_dispatch_failure_leaves_token_for_next_sweep(session_factory):
    from src.pipeline.exceptions import VettingWorkflowError

    workflow = _workflow()
    workflow.submit = AsyncMock(side_effect=VettingWorkflowError("down"))
    ctx = _context(session_factory, [_metadata(20), _market()], workflow)

    assert await process_address(ctx, MINT, "solana") == ProcessOutcome.DISPATCH_FAILED
    listing, subs = await _load(session_factory)
    assert listing.vetting_state == VettingState.NOT_ELIGIBLE
    assert subs == []

    async with session_factory() as session:
        candidates = await persistence.list_sweep_candidates(session, 10)
    assert candidates == [(MINT, "solana")]


@pytest.mark.asyncio
async def test_worker_error_is_isolated(session_factory):
    class Exploding(FakeProvider):
        async def fetch(self, address, chain):
            if address == MINT:
                raise RuntimeError("bad payload shape")
            return await super().fetch(address, chain)

    exploding = Exploding("birdeye", ProviderSource.METADATA, partial=_metadata(20).partial)
    ctx = _context(session_factory, [exploding, _market()])

    async def _handle(address, chain):
        return await process_address(ctx, address, chain)

    outcomes = await run_pool([(MINT, "solana"), (MINT_2, "solana")], 1, _handle)

    assert outcomes == {ProcessOutcome.ERROR: 1, ProcessOutcome.DISPATCHED: 1}
    assert ctx.metrics.outcome("worker_error") == 1


@pytest.mark.asyncio
async def test_discovery_cycle_processes_new_tokens(session_factory):
    market = _market()
    market.list_new_tokens = AsyncMock(return_value=[(MINT, "solana"), (MINT_2, "solana")])
    ctx = _context(session_factory, [_metadata(25), market])

    outcomes = await run_discovery_cycle(ctx, market, chains=["solana"], limit=50, workers=1)

    assert outcomes == {ProcessOutcome.DISPATCHED: 2}
    market.list_new_tokens.assert_awaited_once_with(["solana"], 50)
    listing, subs = await _load(session_factory, MINT_2)
    assert listing.source == "dexscreener"
    assert len(subs) == 2


@pytest.mark.asyncio
async def test_discovery_cycle_backs_off_when_index_rate_limited(session_factory):
    market = _market()
    market.list_new_tokens = AsyncMock(side_effect=ProviderRateLimitedError("429"))
    ctx = _context(session_factory, [market])

    outcomes = await run_discovery_cycle(ctx, market, chains=["solana"], limit=50, workers=2)

    assert outcomes == {}
    assert market.throttle.strikes == 1
    assert market.calls == 0


@pytest.mark.asyncio
async def test_cycle_start_resets_backoff(session_factory):
    market = _market()
    market.throttle.record_rate_limited()
    market.list_new_tokens = AsyncMock(return_value=[])
    ctx = _context(session_factory, [market])

    await run_discovery_cycle(ctx, market, chains=["solana"], limit=50, workers=2)

    assert market.throttle.strikes == 0


@pytest.mark.asyncio
async def test_sweep_polls_and_ingests_results(session_factory):
    workflow = _workflow(can_poll=True)
    ctx = _context(session_factory, [_metadata(20), _market()], workflow)
    await process_address(ctx, MINT, "solana")
    _, subs = await _load(session_factory)
    workflow.get_status = AsyncMock(
        return_value=VettingOutcome(status="completed", score=Decimal(64))
    )

    outcomes = await run_sweep_cycle(ctx, batch_size=10, workers=1, staleness_sec=3600)

    workflow.get_status.assert_awaited_once_with(subs[0].submission_id)
    listing, subs = await _load(session_factory)
    assert listing.vetting_state == VettingState.VETTED
    assert listing.risk_tier == "Medium-Risk"
    assert subs[0].state == SubmissionState.COMPLETED
    # Vetted now, so the re-run phase has nothing to do
    assert outcomes == {}


@pytest.mark.asyncio
async def test_poll_counts_only_applied_results(session_factory):
    workflow = _workflow(can_poll=True)
    ctx = _context(session_factory, [_metadata(20), _market()], workflow)
    await process_address(ctx, MINT, "solana")
    workflow.get_status = AsyncMock(
        return_value=VettingOutcome(status="completed", score=Decimal(64))
    )
    ctx.ingestor = MagicMock()
    ctx.ingestor.ingest = AsyncMock(return_value=IngestResult.UNKNOWN)

    assert await poll_in_flight(ctx, limit=10) == 0
    ctx.ingestor.ingest.assert_awaited_once()


@pytest.mark.asyncio
async def test_ingest_failure_during_poll_does_not_stop_sweep(session_factory):
    workflow = _workflow(can_poll=True)
    ctx = _context(session_factory, [_metadata(20), _market()], workflow)
    await process_address(ctx, MINT, "solana")
    workflow.get_status = AsyncMock(
        return_value=VettingOutcome(status="completed", score=Decimal(64))
    )
    ctx.ingestor = MagicMock()
    ctx.ingestor.ingest = AsyncMock(side_effect=RuntimeError("db gone"))

    outcomes = await run_sweep_cycle(ctx, batch_size=10, workers=1, staleness_sec=3600)

    # Re-run phase still happened: the token is pending and in flight
    assert outcomes == {ProcessOutcome.IN_FLIGHT: 1}
    assert ctx.metrics.outcome("worker_error") == 1
    listing, _ = await _load(session_factory)
    assert listing.vetting_state == VettingState.PENDING_VETTING


@pytest.mark.asyncio
async def test_sweep_expires_and_redispatches(session_factory):
    ctx = _context(session_factory, [_metadata(20), _market()])
    await process_address(ctx, MINT, "solana")

    later = utcnow() + timedelta(hours=2)
    with patch("src.pipeline.cycles.utcnow", return_value=later):
        outcomes = await run_sweep_cycle(ctx, batch_size=10, workers=1, staleness_sec=3600)

    assert outcomes == {ProcessOutcome.DISPATCHED: 1}
    _, subs = await _load(session_factory)
    assert sorted(s.state for s in subs) == [SubmissionState.EXPIRED, SubmissionState.IN_FLIGHT]
    assert ctx.metrics.outcome("expired") == 1


@pytest.mark.asyncio
async def test_monitor_refreshes_only_stale_vetted_listings(session_factory):
    now = utcnow()
    async with session_factory() as session:
        for address, evaluated in ((MINT, now - timedelta(hours=1)), (MINT_2, now)):
            listing = await persistence.ensure_listing(
                session, address=address, chain="solana", source="dexscreener", now=now
            )
            persistence.mark_vetted(
                listing, score=Decimal(75), risk_tier="Low-Risk", listing_tier="none", now=now
            )
            listing.last_evaluated_at = evaluated
        await session.commit()

    ctx = _context(session_factory, [_metadata(40), _market("99000")])
    outcomes = await run_monitor_cycle(ctx, batch_size=10, workers=1, stale_sec=1800)

    assert outcomes == {ProcessOutcome.REFRESHED: 1}
    stale, subs = await _load(session_factory)
    fresh, _ = await _load(session_factory, MINT_2)
    assert stale.liquidity_usd == Decimal(99000)
    assert stale.risk_score == Decimal(75)
    assert stale.last_evaluated_at > now - timedelta(minutes=1)
    assert fresh.liquidity_usd is None
    assert subs == []
    ctx.workflow.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_monitor_ignores_unvetted_listings(session_factory):
    async with session_factory() as session:
        await persistence.ensure_listing(
            session, address=MINT, chain="solana", source="dexscreener", now=utcnow()
        )
        await session.commit()

    market = _market()
    ctx = _context(session_factory, [market])
    outcomes = await run_monitor_cycle(ctx, batch_size=10, workers=1, stale_sec=1800)

    assert outcomes == {}
    assert market.calls == 0


@pytest.mark.asyncio
async def test_pool_bounds_concurrency():
    active = 0
    peak = 0

    async def _handler(address, chain):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return ProcessOutcome.REFRESHED

    items = [(f"addr{i}", "solana") for i in range(10)]
    outcomes = await run_pool(items, 3, _handler)

    assert peak == 3
    assert outcomes == {ProcessOutcome.REFRESHED: 10}


@pytest.mark.asyncio
async def test_pool_with_no_items():
    handler = AsyncMock()
    assert await run_pool([], 4, handler) == {}
    handler.assert_not_awaited()
