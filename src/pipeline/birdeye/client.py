"""Birdeye Data Services API client: token metadata and security.

Metadata provider of the pipeline: name, symbol, decimals, creation time,
mint/freeze authority and top-10 holder concentration. Highest merge
priority. No inline retries; 429 surfaces as ProviderRateLimitedError.
"""

from typing import Any

import httpx
from loguru import logger

from src.pipeline.birdeye.models import BirdeyeTokenMetadata, BirdeyeTokenSecurity
from src.pipeline.exceptions import ProviderRateLimitedError, ProviderTransientError
from src.pipeline.rate_limiter import ProviderThrottle, parse_retry_after
from src.pipeline.snapshot import PartialSnapshot, ProviderSource, utc_from_unix

BASE_URL = "https://public-api.birdeye.so"


class BirdeyeClient:
    """Async client for Birdeye Data Services API."""

    name = "birdeye"
    source = ProviderSource.METADATA

    def __init__(
        self,
        api_key: str,
        throttle: ProviderThrottle | None = None,
        max_rps: float = 10.0,
        timeout: float = 8.0,
    ) -> None:
        self._api_key = api_key
        self.throttle = throttle or ProviderThrottle(max_rps)
        self._client = httpx.AsyncClient(
            base_url=BASE_URL,
            timeout=timeout,
            headers={
                "X-API-KEY": api_key,
                "Accept": "application/json",
            },
        )

    async def _request(self, path: str, address: str, chain: str) -> dict[str, Any] | None:
        """GET one endpoint. None when Birdeye has no data for the token."""
        await self.throttle.acquire()
        try:
            resp = await self._client.get(
                path, params={"address": address}, headers={"x-chain": chain}
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"[BIRDEYE] timeout: {path}") from e
        except httpx.RequestError as e:
            raise ProviderTransientError(f"[BIRDEYE] {type(e).__name__}: {path}") from e

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise ProviderRateLimitedError(
                f"[BIRDEYE] 429 rate limited: {path}",
                retry_after=parse_retry_after(retry_after),
            )
        if resp.status_code in (401, 403):
            raise ProviderTransientError(f"[BIRDEYE] auth rejected ({resp.status_code})")
        if resp.status_code >= 500:
            raise ProviderTransientError(f"[BIRDEYE] HTTP {resp.status_code}: {path}")
        if resp.status_code >= 400:
            logger.debug(f"[BIRDEYE] HTTP {resp.status_code} for {address}")
            return None

        self.throttle.record_success()
        try:
            body = resp.json()
        except ValueError as e:
            raise ProviderTransientError(f"[BIRDEYE] invalid JSON: {path}") from e
        if not body.get("success", True):
            logger.debug(f"[BIRDEYE] {path} unsuccessful: {body.get('message', 'unknown')}")
            return None
        data = body.get("data")
        return data if isinstance(data, dict) and data else None

    async def get_token_metadata(self, address: str, chain: str = "solana") -> BirdeyeTokenMetadata | None:
        data = await self._request("/defi/v3/token/meta-data/single", address, chain)
        return BirdeyeTokenMetadata.model_validate(data) if data else None

    async def get_token_security(self, address: str, chain: str = "solana") -> BirdeyeTokenSecurity | None:
        data = await self._request("/defi/token_security", address, chain)
        if not data:
            return None
        security = BirdeyeTokenSecurity.model_validate(data)
        return None if security.is_blank else security

    async def fetch(self, address: str, chain: str) -> PartialSnapshot | None:
        """Metadata, then security.

        A security failure after metadata arrived keeps the metadata fields;
        the failure is reported through ``PartialSnapshot.errors``.
        """
        meta = await self.get_token_metadata(address, chain)
        errors: tuple[str, ...] = ()
        try:
            security = await self.get_token_security(address, chain)
        except ProviderRateLimitedError as e:
            if meta is None:
                raise
            delay = self.throttle.record_rate_limited(e.retry_after)
            logger.warning(f"[BIRDEYE] 429 on security, backing off {delay:.1f}s")
            security, errors = None, ("rate_limited",)
        except ProviderTransientError as e:
            if meta is None:
                raise
            logger.debug(f"[BIRDEYE] {address[:12]}: security skipped: {e}")
            security, errors = None, ("transient",)
        if meta is None and security is None:
            return None

        partial = PartialSnapshot(
            source=self.source,
            symbol=meta.symbol if meta else None,
            name=meta.name if meta else None,
            decimals=meta.decimals if meta else None,
            creation_timestamp=utc_from_unix(security.creationTime) if security else None,
            top10_holder_pct=security.top10_pct if security else None,
            mint_authority_enabled=security.is_mintable if security else None,
            freeze_authority_enabled=security.is_freezable if security else None,
            errors=errors,
        )
        return None if partial.is_empty() else partial

    async def close(self) -> None:
        await self._client.aclose()
