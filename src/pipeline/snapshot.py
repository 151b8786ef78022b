"""Typed token snapshots exchanged between providers, aggregator and store.

Each provider returns a PartialSnapshot with only the fields it knows; the
aggregator folds them into one TokenSnapshot by provider priority.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import UTC, datetime
from decimal import Decimal
from enum import IntEnum

SECONDS_PER_DAY = 86400


class ProviderSource(IntEnum):
    """Provider identity. Lower value = higher merge priority."""

    METADATA = 0  # Birdeye
    MARKET = 1  # DexScreener
    RPC = 2  # Solana JSON-RPC


@dataclass(frozen=True)
class PartialSnapshot:
    source: ProviderSource
    symbol: str | None = None
    name: str | None = None
    decimals: int | None = None
    creation_timestamp: datetime | None = None
    pair_created_at: datetime | None = None
    liquidity_usd: Decimal | None = None
    top10_holder_pct: Decimal | None = None
    mint_authority_enabled: bool | None = None
    freeze_authority_enabled: bool | None = None
    lp_burn_pct: Decimal | None = None
    pair_address: str | None = None
    quote_address: str | None = None
    # Error buckets of sub-requests that failed while others succeeded
    errors: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return all(
            getattr(self, f.name) is None
            for f in fields(self)
            if f.name not in ("source", "errors")
        )


# Fields merged by plain priority; creation_timestamp has its own rule.
MERGED_FIELDS = (
    "symbol",
    "name",
    "decimals",
    "liquidity_usd",
    "top10_holder_pct",
    "mint_authority_enabled",
    "freeze_authority_enabled",
    "lp_burn_pct",
    "pair_address",
    "quote_address",
)


@dataclass
class TokenSnapshot:
    contract_address: str
    chain: str
    symbol: str | None = None
    name: str | None = None
    decimals: int | None = None
    creation_timestamp: datetime | None = None
    liquidity_usd: Decimal | None = None
    top10_holder_pct: Decimal | None = None
    mint_authority_enabled: bool | None = None
    freeze_authority_enabled: bool | None = None
    lp_burn_pct: Decimal | None = None
    pair_address: str | None = None
    quote_address: str | None = None
    age_days: int | None = None
    sources: tuple[ProviderSource, ...] = ()

    def catalog_fields(self) -> dict[str, object]:
        """Columns written to the listing record (derived age excluded)."""
        return {
            "symbol": self.symbol,
            "name": self.name,
            "decimals": self.decimals,
            "creation_timestamp": self.creation_timestamp,
            "liquidity_usd": self.liquidity_usd,
            "top10_holder_pct": self.top10_holder_pct,
            "mint_authority_enabled": self.mint_authority_enabled,
            "freeze_authority_enabled": self.freeze_authority_enabled,
            "lp_burn_pct": self.lp_burn_pct,
            "pair_address": self.pair_address,
            "quote_address": self.quote_address,
        }


def compute_age_days(creation_timestamp: datetime | None, now: datetime) -> int | None:
    """Whole days since creation, truncated. Future timestamps count as 0."""
    if creation_timestamp is None:
        return None
    elapsed = (now - creation_timestamp).total_seconds()
    if elapsed <= 0:
        return 0
    return int(elapsed // SECONDS_PER_DAY)


def utcnow() -> datetime:
    """Naive UTC now: the catalog stores naive UTC datetimes."""
    return datetime.now(UTC).replace(tzinfo=None)


def utc_from_unix(value: int | float | None) -> datetime | None:
    """Unix time in seconds or milliseconds (> 1e12) to naive UTC."""
    if not value or value < 0:
        return None
    seconds = value / 1000 if value > 1e12 else value
    return datetime.fromtimestamp(seconds, UTC).replace(tzinfo=None)
