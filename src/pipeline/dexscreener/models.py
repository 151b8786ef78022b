from decimal import Decimal

from pydantic import BaseModel


class DexScreenerToken(BaseModel):
    address: str
    name: str | None = None
    symbol: str | None = None

    model_config = {"extra": "ignore"}


class DexScreenerLiquidity(BaseModel):
    usd: Decimal | None = None
    base: Decimal | None = None
    quote: Decimal | None = None
    lockedPercentage: Decimal | None = None

    model_config = {"extra": "ignore"}


class DexScreenerPair(BaseModel):
    chainId: str = ""
    dexId: str = ""
    pairAddress: str = ""
    baseToken: DexScreenerToken | None = None
    quoteToken: DexScreenerToken | None = None
    priceUsd: str | None = None
    liquidity: DexScreenerLiquidity | None = None
    fdv: Decimal | None = None
    pairCreatedAt: int | None = None

    model_config = {"extra": "ignore"}


class DexScreenerTokenProfile(BaseModel):
    """Entry of /token-profiles/latest/v1: newest listed tokens first."""

    chainId: str = ""
    tokenAddress: str = ""
    url: str | None = None

    model_config = {"extra": "ignore"}
