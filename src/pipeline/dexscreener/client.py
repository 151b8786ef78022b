from decimal import Decimal
from typing import Any

import httpx
from loguru import logger

from src.pipeline.addresses import is_valid_address, normalize_chain
from src.pipeline.dexscreener.models import DexScreenerPair, DexScreenerTokenProfile
from src.pipeline.exceptions import ProviderRateLimitedError, ProviderTransientError
from src.pipeline.rate_limiter import ProviderThrottle, parse_retry_after
from src.pipeline.snapshot import PartialSnapshot, ProviderSource, utc_from_unix

BASE_URL = "https://api.dexscreener.com"


class DexScreenerClient:
    """Market index: recency feed of new tokens and per-token pair snapshots.

    Public API, no auth. Never retries: a 429 raises ProviderRateLimitedError
    so the caller can back off, everything else transient raises
    ProviderTransientError and waits for the next cycle.
    """

    name = "dexscreener"
    source = ProviderSource.MARKET

    def __init__(
        self,
        throttle: ProviderThrottle | None = None,
        max_rps: float = 4.0,
        timeout: float = 8.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=BASE_URL,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        self.throttle = throttle or ProviderThrottle(max_rps)

    async def _get(self, path: str) -> Any | None:
        await self.throttle.acquire()
        try:
            response = await self._client.get(path)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"[DEXSCREENER] timeout: {path}") from e
        except httpx.RequestError as e:
            raise ProviderTransientError(f"[DEXSCREENER] {type(e).__name__}: {path}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderRateLimitedError(
                f"[DEXSCREENER] 429 rate limited: {path}",
                retry_after=parse_retry_after(retry_after),
            )
        if response.status_code >= 500:
            raise ProviderTransientError(f"[DEXSCREENER] HTTP {response.status_code}: {path}")
        if response.status_code >= 400:
            logger.debug(f"[DEXSCREENER] HTTP {response.status_code} for {path}")
            return None

        self.throttle.record_success()
        try:
            return response.json()
        except ValueError as e:
            raise ProviderTransientError(f"[DEXSCREENER] invalid JSON: {path}") from e

    async def list_new_tokens(
        self, chains: list[str], limit: int = 100
    ) -> list[tuple[str, str]]:
        """Newest token profiles as (address, chain), filtered to ``chains``."""
        data = await self._get("/token-profiles/latest/v1")
        if not isinstance(data, list):
            return []

        wanted = {normalize_chain(c) for c in chains}
        seen: set[tuple[str, str]] = set()
        result: list[tuple[str, str]] = []
        for raw in data:
            profile = DexScreenerTokenProfile.model_validate(raw)
            chain = normalize_chain(profile.chainId)
            if chain is None or chain not in wanted:
                continue
            if not is_valid_address(profile.tokenAddress, chain):
                logger.debug(f"[DEXSCREENER] Skipping invalid {chain} address: {profile.tokenAddress}")
                continue
            key = (profile.tokenAddress, chain)
            if key in seen:
                continue
            seen.add(key)
            result.append(key)
            if len(result) >= limit:
                break
        return result

    async def get_token_pairs(self, address: str, chain: str) -> list[DexScreenerPair]:
        """All pairs for a token on one chain."""
        data = await self._get(f"/token-pairs/v1/{chain}/{address}")
        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("pairs") or []
        if not isinstance(data, list):
            return []
        return [DexScreenerPair.model_validate(p) for p in data]

    async def fetch(self, address: str, chain: str) -> PartialSnapshot | None:
        """Snapshot from the deepest pair where the token is the base token."""
        pairs = [
            p
            for p in await self.get_token_pairs(address, chain)
            if p.baseToken and _same_address(p.baseToken.address, address)
        ]
        if not pairs:
            return None

        best = max(pairs, key=_liquidity_usd)
        liquidity = best.liquidity
        return PartialSnapshot(
            source=self.source,
            symbol=best.baseToken.symbol or None,
            name=best.baseToken.name or None,
            pair_created_at=utc_from_unix(best.pairCreatedAt),
            liquidity_usd=liquidity.usd if liquidity else None,
            lp_burn_pct=liquidity.lockedPercentage if liquidity else None,
            pair_address=best.pairAddress or None,
            quote_address=best.quoteToken.address if best.quoteToken else None,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _liquidity_usd(pair: DexScreenerPair) -> Decimal:
    if pair.liquidity and pair.liquidity.usd is not None:
        return pair.liquidity.usd
    return Decimal(-1)


def _same_address(a: str, b: str) -> bool:
    # EVM addresses are case-insensitive, base58 is not
    if a.startswith("0x") and b.startswith("0x"):
        return a.lower() == b.lower()
    return a == b
