"""HTTP client for the external risk-scoring workflow.

The workflow is fire-and-forget: ``submit`` only hands the token over and
returns the workflow's own id. Results come back later, through the webhook
route or through ``get_status`` polling from the sweep cycle.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from loguru import logger

from src.pipeline.exceptions import VettingWorkflowError
from src.pipeline.snapshot import TokenSnapshot

_DONE_STATUSES = {"completed", "complete", "success", "succeeded", "done"}
_FAILED_STATUSES = {"failed", "failure", "error"}


@dataclass
class VettingOutcome:
    """Result reported by the workflow for one submission."""

    status: str  # "completed", "failed" or "pending"
    score: Decimal | None = None
    summary: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.status in ("completed", "failed")

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "VettingOutcome":
        """Normalise a workflow result body.

        The score may sit at the top level (``score`` / ``riskScore``) or in
        ``vettingResults.overallScore``.
        """
        results = data.get("vettingResults") or {}
        raw_score = data.get("score")
        if raw_score is None:
            raw_score = data.get("riskScore")
        if raw_score is None and isinstance(results, dict):
            raw_score = results.get("overallScore")

        status = str(data.get("status") or "").lower()
        if status in _DONE_STATUSES:
            status = "completed"
        elif status in _FAILED_STATUSES or data.get("success") is False:
            status = "failed"
        elif not status and raw_score is not None:
            status = "completed"
        else:
            status = "pending"

        summary = data.get("summary")
        if summary is None and isinstance(results, dict):
            summary = results.get("summary")
        return cls(status=status, score=_parse_score(raw_score), summary=summary, raw=data)


@dataclass(frozen=True)
class SubmitReceipt:
    external_id: str | None = None
    outcome: VettingOutcome | None = None


def _parse_score(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        score = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return score if score.is_finite() else None


def build_payload(snapshot: TokenSnapshot, submission_id: str) -> dict[str, Any]:
    """Request body sent to the workflow. Numbers go out as JSON floats."""
    return {
        "contractAddress": snapshot.contract_address,
        "chain": snapshot.chain,
        "correlationKey": submission_id,
        "tokenAge": snapshot.age_days,
        "tokenInfo": {
            "name": snapshot.name,
            "symbol": snapshot.symbol,
            "decimals": snapshot.decimals,
        },
        "security": {
            "isMintable": snapshot.mint_authority_enabled,
            "isFreezable": snapshot.freeze_authority_enabled,
            "lpBurnPercentage": _as_float(snapshot.lp_burn_pct),
        },
        "holders": {"top10Percentage": _as_float(snapshot.top10_holder_pct)},
        "trading": {"liquidity": _as_float(snapshot.liquidity_usd)},
        "createdAt": (
            snapshot.creation_timestamp.isoformat() + "Z"
            if snapshot.creation_timestamp
            else None
        ),
        "triggerType": "vetting",
    }


def _as_float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


class VettingWorkflowClient:
    def __init__(
        self,
        webhook_url: str,
        status_url: str = "",
        timeout: float = 30.0,
        secret: str = "",
    ) -> None:
        self._webhook_url = webhook_url
        self._status_url = status_url
        headers = {"Content-Type": "application/json"}
        if secret:
            headers["X-Webhook-Secret"] = secret
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers)

    @property
    def can_poll(self) -> bool:
        return bool(self._status_url)

    async def submit(self, snapshot: TokenSnapshot, submission_id: str) -> SubmitReceipt:
        """POST the vetting request.

        Asynchronous workflows answer with their own id only. Synchronous ones
        put the finished result in the same response body; it is returned as
        ``receipt.outcome``.
        """
        if not self._webhook_url:
            raise VettingWorkflowError("vetting webhook URL is not configured")

        payload = build_payload(snapshot, submission_id)
        data = await self._send("POST", self._webhook_url, json=payload)
        if data.get("success") is False:
            raise VettingWorkflowError(
                f"workflow rejected {snapshot.contract_address}: {data.get('error')}"
            )
        external_id = data.get("vettingId") or data.get("id")
        outcome = VettingOutcome.from_payload(data) if data else None
        return SubmitReceipt(
            external_id=str(external_id) if external_id else None,
            outcome=outcome if outcome is not None and outcome.is_final else None,
        )

    async def get_status(self, submission_id: str) -> VettingOutcome | None:
        """Poll one submission. None when polling is off or the id is unknown."""
        if not self._status_url:
            return None
        url = self._status_url.format(submission_id=submission_id)
        data = await self._send("GET", url, not_found_ok=True)
        if not data:
            return None
        return VettingOutcome.from_payload(data)

    async def _send(
        self, method: str, url: str, *, not_found_ok: bool = False, **kwargs: Any
    ) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise VettingWorkflowError(f"workflow timeout: {url}") from e
        except httpx.RequestError as e:
            raise VettingWorkflowError(f"workflow unreachable: {type(e).__name__}") from e

        if resp.status_code == 404 and not_found_ok:
            return {}
        if resp.status_code >= 400:
            raise VettingWorkflowError(
                f"workflow HTTP {resp.status_code}: {resp.text[:200]}"
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            logger.debug(f"[DISPATCH] Non-JSON workflow response: {resp.text[:200]}")
            return {}
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        await self._client.aclose()
