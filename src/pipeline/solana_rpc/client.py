"""Solana JSON-RPC client: mint account state and holder concentration.

getAccountInfo (jsonParsed) gives decimals, supply and the mint/freeze
authorities; getTokenLargestAccounts gives the top holders. Lowest merge
priority: only fills what Birdeye and DexScreener left empty.
"""

from decimal import Decimal
from typing import Any

import httpx
from loguru import logger

from src.pipeline.exceptions import ProviderRateLimitedError, ProviderTransientError
from src.pipeline.rate_limiter import ProviderThrottle, parse_retry_after
from src.pipeline.snapshot import PartialSnapshot, ProviderSource

# RPC error codes that mean "bad or unknown account", not an outage
_NOT_FOUND_CODES = {-32602, -32600}


class SolanaRpcClient:
    name = "solana_rpc"
    source = ProviderSource.RPC
    chains = frozenset({"solana"})

    def __init__(
        self,
        rpc_url: str,
        throttle: ProviderThrottle | None = None,
        max_rps: float = 5.0,
        timeout: float = 8.0,
    ) -> None:
        self._rpc_url = rpc_url
        self.throttle = throttle or ProviderThrottle(max_rps)
        self._client = httpx.AsyncClient(timeout=timeout)

    async def _call(self, method: str, params: list[Any]) -> Any | None:
        """One JSON-RPC call. Returns ``result`` or None for unknown accounts."""
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        await self.throttle.acquire()
        try:
            resp = await self._client.post(self._rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"[RPC] {method} timeout") from e
        except httpx.RequestError as e:
            raise ProviderTransientError(f"[RPC] {method} {type(e).__name__}") from e

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise ProviderRateLimitedError(
                f"[RPC] {method} rate limited",
                retry_after=parse_retry_after(retry_after),
            )
        if resp.status_code != 200:
            raise ProviderTransientError(f"[RPC] {method} HTTP {resp.status_code}")

        self.throttle.record_success()
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderTransientError(f"[RPC] {method} invalid JSON") from e

        error = data.get("error")
        if error:
            if error.get("code") in _NOT_FOUND_CODES:
                logger.debug(f"[RPC] {method} rejected: {error.get('message')}")
                return None
            raise ProviderTransientError(f"[RPC] {method} error: {error}")
        return data.get("result")

    async def get_mint_info(self, address: str) -> dict[str, Any] | None:
        result = await self._call(
            "getAccountInfo", [address, {"encoding": "jsonParsed"}]
        )
        value = (result or {}).get("value")
        if not value:
            return None
        data = value.get("data")
        parsed = data.get("parsed") if isinstance(data, dict) else None
        if not parsed or parsed.get("type") != "mint":
            return None
        return parsed.get("info")

    async def get_largest_accounts(self, address: str) -> list[dict[str, Any]]:
        result = await self._call("getTokenLargestAccounts", [address])
        value = (result or {}).get("value")
        return value if isinstance(value, list) else []

    async def fetch(self, address: str, chain: str) -> PartialSnapshot | None:
        if chain not in self.chains:
            return None

        info = await self.get_mint_info(address)
        if info is None:
            return None

        top10_pct = None
        supply = _to_decimal(info.get("supply"))
        if supply:
            holders = await self.get_largest_accounts(address)
            if holders:
                top = sum(
                    (_to_decimal(h.get("amount")) or Decimal(0)) for h in holders[:10]
                )
                top10_pct = (top / supply * 100).quantize(Decimal("0.0001"))

        return PartialSnapshot(
            source=self.source,
            decimals=info.get("decimals"),
            mint_authority_enabled=info.get("mintAuthority") is not None,
            freeze_authority_enabled=info.get("freezeAuthority") is not None,
            top10_holder_pct=top10_pct,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None
