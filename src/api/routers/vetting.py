"""Vetting result callback: the workflow reports finished scores here."""

from decimal import Decimal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.app import limiter
from src.api.dependencies import get_ingestor, get_session, verify_webhook_secret
from src.pipeline.vetting.ingestor import ResultIngestor
from src.pipeline.vetting.workflow_client import VettingOutcome

router = APIRouter(prefix="/api/v1/vetting", tags=["vetting"])


class VettingResultRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    correlationKey: str = Field(min_length=1, max_length=64)
    status: str = Field(default="completed", max_length=32)
    score: Decimal | None = None
    summary: str | None = None


class VettingResultResponse(BaseModel):
    result: str


@router.post(
    "/results",
    response_model=VettingResultResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
@limiter.limit("120/minute")
async def receive_result(
    request: Request,
    body: VettingResultRequest,
    session: AsyncSession = Depends(get_session),
    ingestor: ResultIngestor = Depends(get_ingestor),
) -> VettingResultResponse:
    """Apply a workflow result. Unknown keys are acknowledged and dropped."""
    outcome = VettingOutcome.from_payload(body.model_dump(mode="json"))
    result = await ingestor.ingest(session, body.correlationKey, outcome)
    return VettingResultResponse(result=result.value)
