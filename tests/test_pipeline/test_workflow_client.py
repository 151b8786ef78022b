"""Tests for the external vetting workflow client."""

from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.pipeline.exceptions import VettingWorkflowError
from src.pipeline.snapshot import TokenSnapshot
from src.pipeline.vetting.workflow_client import (
    VettingOutcome,
    VettingWorkflowClient,
    build_payload,
)

MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"


def _snapshot() -> TokenSnapshot:
    return TokenSnapshot(
        contract_address=MINT,
        chain="solana",
        symbol="POPCAT",
        name="Popcat",
        decimals=9,
        creation_timestamp=datetime(2026, 1, 1, 0, 0, 0),
        liquidity_usd=Decimal("125000.5"),
        top10_holder_pct=Decimal("23.15"),
        mint_authority_enabled=False,
        freeze_authority_enabled=False,
        lp_burn_pct=Decimal(100),
        age_days=20,
    )


def test_payload_shape():
    payload = build_payload(_snapshot(), "abc123")
    assert payload["contractAddress"] == MINT
    assert payload["correlationKey"] == "abc123"
    assert payload["tokenAge"] == 20
    assert payload["tokenInfo"] == {"name": "Popcat", "symbol": "POPCAT", "decimals": 9}
    assert payload["security"] == {
        "isMintable": False,
        "isFreezable": False,
        "lpBurnPercentage": 100.0,
    }
    assert payload["holders"] == {"top10Percentage": 23.15}
    assert payload["trading"] == {"liquidity": 125000.5}
    assert payload["createdAt"] == "2026-01-01T00:00:00Z"
    assert payload["triggerType"] == "vetting"


@pytest.mark.asyncio
async def test_submit_returns_external_id():
    client = VettingWorkflowClient("http://flows.test/hook")
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(
            return_value=httpx.Response(200, json={"success": True, "vettingId": "wf-77"})
        )
        receipt = await client.submit(_snapshot(), "abc123")

    assert receipt.external_id == "wf-77"
    assert receipt.outcome is None
    method, url = mock_http.request.await_args.args
    assert (method, url) == ("POST", "http://flows.test/hook")
    assert mock_http.request.await_args.kwargs["json"]["correlationKey"] == "abc123"


@pytest.mark.asyncio
async def test_submit_accepts_empty_body():
    client = VettingWorkflowClient("http://flows.test/hook")
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(return_value=httpx.Response(202))
        receipt = await client.submit(_snapshot(), "abc123")
    assert receipt.external_id is None
    assert receipt.outcome is None


@pytest.mark.asyncio
async def test_submit_returns_inline_result():
    """Synchronous workflows answer with the finished vetting in the POST body."""
    body = {
        "success": True,
        "vettingId": "wf-78",
        "vettingResults": {"overallScore": 74, "riskLevel": "low", "summary": "clean"},
    }
    client = VettingWorkflowClient("http://flows.test/hook")
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(return_value=httpx.Response(200, json=body))
        receipt = await client.submit(_snapshot(), "abc123")

    assert receipt.external_id == "wf-78"
    assert receipt.outcome.status == "completed"
    assert receipt.outcome.score == Decimal(74)
    assert receipt.outcome.summary == "clean"


@pytest.mark.asyncio
async def test_submit_accepted_status_has_no_outcome():
    client = VettingWorkflowClient("http://flows.test/hook")
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(
            return_value=httpx.Response(200, json={"vettingId": "wf-79", "status": "queued"})
        )
        receipt = await client.submit(_snapshot(), "abc123")
    assert receipt.external_id == "wf-79"
    assert receipt.outcome is None

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(400, json={"error": "bad payload"}),
        httpx.Response(200, json={"success": False, "error": "queue full"}),
    ],
)
async def test_submit_failures_raise(response):
    client = VettingWorkflowClient("http://flows.test/hook")
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(return_value=response)
        with pytest.raises(VettingWorkflowError):
            await client.submit(_snapshot(), "abc123")


@pytest.mark.asyncio
async def test_submit_unreachable_raises():
    client = VettingWorkflowClient("http://flows.test/hook")
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(VettingWorkflowError):
            await client.submit(_snapshot(), "abc123")


@pytest.mark.asyncio
async def test_submit_without_url_raises():
    client = VettingWorkflowClient("")
    with pytest.raises(VettingWorkflowError):
        await client.submit(_snapshot(), "abc123")


@pytest.mark.asyncio
async def test_get_status_formats_url():
    client = VettingWorkflowClient("http://flows.test/hook", "http://flows.test/status/{submission_id}")
    assert client.can_poll
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(
            return_value=httpx.Response(200, json={"status": "completed", "score": 72})
        )
        outcome = await client.get_status("abc123")

    assert mock_http.request.await_args.args == ("GET", "http://flows.test/status/abc123")
    assert outcome.status == "completed"
    assert outcome.score == Decimal(72)


@pytest.mark.asyncio
async def test_get_status_unknown_id():
    client = VettingWorkflowClient("http://flows.test/hook", "http://flows.test/status/{submission_id}")
    with patch.object(client, "_client") as mock_http:
        mock_http.request = AsyncMock(return_value=httpx.Response(404))
        assert await client.get_status("nope") is None


@pytest.mark.asyncio
async def test_get_status_disabled_without_url():
    client = VettingWorkflowClient("http://flows.test/hook")
    assert not client.can_poll
    assert await client.get_status("abc123") is None


def test_outcome_normalisation():
    assert VettingOutcome.from_payload({"status": "SUCCESS", "score": "55.5"}).status == "completed"
    assert VettingOutcome.from_payload({"status": "error"}).status == "failed"
    assert VettingOutcome.from_payload({"status": "running"}).status == "pending"

    nested = VettingOutcome.from_payload(
        {"vettingResults": {"overallScore": 81, "summary": "clean"}}
    )
    assert nested.status == "completed"
    assert nested.score == Decimal(81)
    assert nested.summary == "clean"

    garbage = VettingOutcome.from_payload({"status": "completed", "score": "n/a"})
    assert garbage.score is None
