"""Vetting dispatcher: claim the in-flight slot, then hand the token over.

The claim is committed before the HTTP call, so a concurrent cycle that
reaches the same token sees the slot taken and backs off. A failed POST
gives the slot back; the next sweep retries.

The move to pending_vetting is conditional on the submission still being
open, since a webhook result can arrive before the POST response does.
Workflows that answer synchronously have their result ingested on the spot.
"""

import uuid
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.listing import Listing
from src.pipeline import persistence
from src.pipeline.exceptions import VettingWorkflowError
from src.pipeline.metrics import PipelineMetrics
from src.pipeline.snapshot import TokenSnapshot, utcnow
from src.pipeline.vetting.ingestor import ResultIngestor
from src.pipeline.vetting.workflow_client import VettingWorkflowClient


class DispatchStatus(StrEnum):
    SUBMITTED = "submitted"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    submission_id: str | None = None
    error: str | None = None


class VettingDispatcher:
    def __init__(
        self,
        workflow: VettingWorkflowClient,
        metrics: PipelineMetrics | None = None,
        ingestor: ResultIngestor | None = None,
    ) -> None:
        self._workflow = workflow
        self._metrics = metrics
        self._ingestor = ingestor

    async def submit(
        self, session: AsyncSession, listing: Listing, snapshot: TokenSnapshot
    ) -> DispatchResult:
        submission_id = uuid.uuid4().hex
        claimed = await persistence.claim_submission(
            session, listing, submission_id=submission_id, now=utcnow()
        )
        # Commit the claim together with any pending snapshot writes
        await session.commit()
        if not claimed:
            logger.debug(f"[DISPATCH] {listing.contract_address[:12]} already in flight")
            return DispatchResult(DispatchStatus.IN_FLIGHT)

        try:
            receipt = await self._workflow.submit(snapshot, submission_id)
        except VettingWorkflowError as e:
            await persistence.release_submission(session, submission_id)
            await session.commit()
            logger.warning(
                f"[DISPATCH] Failed for {listing.chain}:{listing.contract_address}: {e}"
            )
            self._count("dispatch_failed")
            return DispatchResult(DispatchStatus.FAILED, error=str(e))

        external_id = receipt.external_id
        if external_id:
            await persistence.set_external_id(session, submission_id, external_id)

        if receipt.outcome is not None and self._ingestor is not None:
            # Synchronous workflow: the score came back with the POST
            await session.commit()
            await self._ingestor.ingest(session, submission_id, receipt.outcome)
        else:
            moved = await persistence.mark_pending_if_in_flight(
                session, listing, submission_id, now=utcnow()
            )
            await session.commit()
            if not moved:
                logger.debug(
                    f"[DISPATCH] {listing.contract_address[:12]} result already in "
                    f"({listing.vetting_state}), left as is"
                )

        logger.info(
            f"[DISPATCH] {listing.symbol or '?'} ({listing.chain}:{listing.contract_address}) "
            f"submitted as {submission_id}"
            + (f" / {external_id}" if external_id else "")
        )
        self._count("dispatched")
        return DispatchResult(DispatchStatus.SUBMITTED, submission_id=submission_id)

    def _count(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_outcome(outcome)
