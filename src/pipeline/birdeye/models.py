"""Pydantic models for Birdeye Data Services API responses."""

from decimal import Decimal

from pydantic import BaseModel


class BirdeyeTokenMetadata(BaseModel):
    """Response from /defi/v3/token/meta-data/single. 5 CU."""

    address: str = ""
    name: str | None = None
    symbol: str | None = None
    decimals: int | None = None
    logoURI: str | None = None

    model_config = {"extra": "ignore"}


class BirdeyeTokenSecurity(BaseModel):
    """Response from /defi/token_security. 50 CU."""

    creatorAddress: str | None = None
    creationTx: str | None = None
    creationTime: int | None = None
    top10HolderPercent: Decimal | None = None  # ratio 0..1
    totalSupply: Decimal | None = None
    isToken2022: bool | None = None
    freezeAuthority: str | None = None
    mintAuthority: str | None = None

    model_config = {"extra": "ignore"}

    @property
    def is_mintable(self) -> bool:
        return self.mintAuthority is not None

    @property
    def is_freezable(self) -> bool:
        return self.freezeAuthority is not None

    @property
    def top10_pct(self) -> Decimal | None:
        if self.top10HolderPercent is None:
            return None
        return self.top10HolderPercent * 100

    @property
    def is_blank(self) -> bool:
        """Birdeye answers unknown tokens with an all-null security object."""
        return self.creationTime is None and self.top10HolderPercent is None and (
            self.totalSupply is None
        )
