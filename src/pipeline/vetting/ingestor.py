"""Result ingestor: apply a workflow outcome to the catalog.

Used by both the webhook route and the sweep's status polling. Each call
is one transaction: the listing and its submission change together or not
at all.
"""

from decimal import Decimal
from enum import StrEnum

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.listing import Listing, SubmissionState, VettingState
from src.pipeline import persistence
from src.pipeline.metrics import PipelineMetrics
from src.pipeline.snapshot import compute_age_days, utcnow
from src.pipeline.vetting.tiers import RiskTierMap, is_valid_score, listing_tier_for
from src.pipeline.vetting.workflow_client import VettingOutcome


class IngestResult(StrEnum):
    APPLIED = "applied"
    UNKNOWN = "unknown"
    PENDING = "pending"


class ResultIngestor:
    def __init__(self, tier_map: RiskTierMap, metrics: PipelineMetrics | None = None) -> None:
        self._tier_map = tier_map
        self._metrics = metrics

    async def ingest(
        self, session: AsyncSession, correlation_key: str, outcome: VettingOutcome
    ) -> IngestResult:
        submission = await persistence.find_in_flight_submission(session, correlation_key)
        if submission is None:
            # Expired, already completed, or never ours
            logger.info(f"[INGEST] Unknown correlation key {correlation_key}, discarded")
            self._count("ingest_unknown")
            return IngestResult.UNKNOWN

        if not outcome.is_final:
            return IngestResult.PENDING

        listing = await session.get(Listing, submission.listing_id)
        now = utcnow()

        score = outcome.score
        if outcome.status == "completed" and is_valid_score(score):
            score = Decimal(score)
            risk_tier = self._tier_map.tier_for(score)
            if listing is not None:
                persistence.mark_vetted(
                    listing,
                    score=score,
                    risk_tier=risk_tier,
                    listing_tier=listing_tier_for(
                        score,
                        age_days=compute_age_days(listing.creation_timestamp, now),
                        liquidity_usd=listing.liquidity_usd,
                        lp_burn_pct=listing.lp_burn_pct,
                    ),
                    now=now,
                )
            submission.score = score
            logger.info(
                f"[INGEST] {submission.chain}:{submission.contract_address} "
                f"vetted score={score} tier={risk_tier}"
            )
            self._count("ingested")
        else:
            if listing is not None:
                persistence.mark_state(listing, VettingState.VETTING_FAILED, now=now)
            logger.warning(
                f"[INGEST] {submission.chain}:{submission.contract_address} vetting failed "
                f"(status={outcome.status}, score={outcome.score})"
            )
            self._count("vetting_failed")

        submission.state = SubmissionState.COMPLETED
        submission.completed_at = now
        submission.result_payload = outcome.raw or None
        await session.commit()
        return IngestResult.APPLIED

    def _count(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_outcome(outcome)
