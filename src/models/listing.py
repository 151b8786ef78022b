from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class VettingState(StrEnum):
    NOT_ELIGIBLE = "not_eligible"
    PENDING_VETTING = "pending_vetting"
    VETTED = "vetted"
    VETTING_FAILED = "vetting_failed"


class SubmissionState(StrEnum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Listing(Base):
    """Catalog record, one per (contract_address, chain).

    Written only by the pipeline; the API layer reads it and trusts that
    risk_score is set exactly when vetting_state is 'vetted'.
    """

    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(primary_key=True)
    contract_address: Mapped[str] = mapped_column(String(64))
    chain: Mapped[str] = mapped_column(String(20))
    symbol: Mapped[str | None] = mapped_column(String(50))
    name: Mapped[str | None] = mapped_column(String(255))
    decimals: Mapped[int | None] = mapped_column(Integer)
    source: Mapped[str | None] = mapped_column(String(20))

    # Snapshot fields
    creation_timestamp: Mapped[datetime | None] = mapped_column(DateTime)
    liquidity_usd: Mapped[Decimal | None] = mapped_column(Numeric)
    top10_holder_pct: Mapped[Decimal | None] = mapped_column(Numeric)
    mint_authority_enabled: Mapped[bool | None] = mapped_column(Boolean)
    freeze_authority_enabled: Mapped[bool | None] = mapped_column(Boolean)
    lp_burn_pct: Mapped[Decimal | None] = mapped_column(Numeric)
    pair_address: Mapped[str | None] = mapped_column(String(64))
    quote_address: Mapped[str | None] = mapped_column(String(64))

    # Vetting outcome
    risk_score: Mapped[Decimal | None] = mapped_column(Numeric)
    risk_tier: Mapped[str | None] = mapped_column(String(30))
    listing_tier: Mapped[str | None] = mapped_column(String(20))
    vetting_state: Mapped[str] = mapped_column(
        String(20), default=VettingState.NOT_ELIGIBLE
    )

    last_evaluated_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("contract_address", "chain", name="uq_listing_address_chain"),
        CheckConstraint(
            "(vetting_state = 'vetted' AND risk_score IS NOT NULL)"
            " OR (vetting_state <> 'vetted' AND risk_score IS NULL)",
            name="ck_listing_score_matches_state",
        ),
        Index("idx_listings_state_evaluated", "vetting_state", "last_evaluated_at"),
    )


class VettingSubmission(Base):
    """Outbound vetting request, correlated with its asynchronous result."""

    __tablename__ = "vetting_submissions"

    id: Mapped[int] = mapped_column(primary_key=True)
    submission_id: Mapped[str] = mapped_column(String(32), unique=True)
    external_id: Mapped[str | None] = mapped_column(String(128))
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id", ondelete="CASCADE"))
    contract_address: Mapped[str] = mapped_column(String(64))
    chain: Mapped[str] = mapped_column(String(20))
    state: Mapped[str] = mapped_column(String(20), default=SubmissionState.IN_FLIGHT)
    submitted_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    score: Mapped[Decimal | None] = mapped_column(Numeric)
    result_payload: Mapped[dict | None] = mapped_column(JSON)

    __table_args__ = (
        # At most one in-flight submission per token: the dispatch claim
        Index(
            "uq_submission_in_flight",
            "contract_address",
            "chain",
            unique=True,
            postgresql_where=text("state = 'in_flight'"),
            sqlite_where=text("state = 'in_flight'"),
        ),
        Index("idx_submissions_external_id", "external_id"),
        Index("idx_submissions_state_submitted", "state", "submitted_at"),
    )
