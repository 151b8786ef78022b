"""Catalog store: listing and vetting-submission writes.

All state transitions of a listing go through this module so that
risk_score stays set exactly when vetting_state is 'vetted'.
Functions flush but never commit; the caller owns the transaction.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from loguru import logger
from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.listing import Listing, SubmissionState, VettingState, VettingSubmission
from src.pipeline.snapshot import TokenSnapshot


def _insert(session: AsyncSession, model: type):
    """Dialect-specific INSERT supporting ON CONFLICT (PostgreSQL or SQLite)."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _sanitize(val: str | None) -> str | None:
    """Strip null bytes and control chars that PostgreSQL rejects."""
    if val is None:
        return None
    return val.replace("\x00", "").strip() or None


async def get_listing(session: AsyncSession, address: str, chain: str) -> Listing | None:
    result = await session.execute(
        select(Listing).where(Listing.contract_address == address, Listing.chain == chain)
    )
    return result.scalar_one_or_none()


async def ensure_listing(
    session: AsyncSession,
    *,
    address: str,
    chain: str,
    source: str,
    now: datetime,
) -> Listing:
    """Insert the base record if absent and return it. Safe under concurrent cycles."""
    stmt = (
        _insert(session, Listing)
        .values(
            contract_address=address,
            chain=chain,
            source=source,
            vetting_state=VettingState.NOT_ELIGIBLE,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["contract_address", "chain"])
    )
    await session.execute(stmt)
    listing = await get_listing(session, address, chain)
    if listing is None:
        raise RuntimeError(f"listing {chain}:{address} missing after insert")
    return listing


def apply_snapshot(
    listing: Listing,
    snapshot: TokenSnapshot,
    *,
    now: datetime,
    vetting_state: VettingState | None = None,
) -> bool:
    """Copy snapshot fields onto the record; bump updated_at only on real change.

    ``vetting_state`` may only move the record between unscored states.
    Returns True when any catalog field changed.
    """
    changed = False
    for field_name, value in snapshot.catalog_fields().items():
        if isinstance(value, str):
            value = _sanitize(value)
        if value is None:
            # A provider outage must not erase what the catalog already knows
            continue
        if getattr(listing, field_name) != value:
            setattr(listing, field_name, value)
            changed = True

    if vetting_state is not None and listing.vetting_state != vetting_state:
        _set_unscored_state(listing, vetting_state)
        changed = True

    if changed:
        listing.updated_at = now
    listing.last_evaluated_at = now
    return changed


def _set_unscored_state(listing: Listing, state: VettingState) -> None:
    if state == VettingState.VETTED:
        raise ValueError("use mark_vetted() to enter the vetted state")
    listing.vetting_state = state
    listing.risk_score = None
    listing.risk_tier = None
    listing.listing_tier = None


def mark_vetted(
    listing: Listing,
    *,
    score: Decimal,
    risk_tier: str,
    listing_tier: str,
    now: datetime,
) -> None:
    listing.risk_score = score
    listing.risk_tier = risk_tier
    listing.listing_tier = listing_tier
    listing.vetting_state = VettingState.VETTED
    listing.updated_at = now


def mark_state(listing: Listing, state: VettingState, *, now: datetime) -> None:
    if listing.vetting_state == state:
        return
    _set_unscored_state(listing, state)
    listing.updated_at = now


async def mark_pending_if_in_flight(
    session: AsyncSession, listing: Listing, submission_id: str, *, now: datetime
) -> bool:
    """Move the listing to pending_vetting while its submission is still open.

    Conditional in SQL: a result ingested in the meantime (webhook faster
    than the POST response) has already completed the submission and is
    left untouched. The listing is reloaded either way.
    """
    still_open = (
        select(VettingSubmission.id)
        .where(
            VettingSubmission.submission_id == submission_id,
            VettingSubmission.state == SubmissionState.IN_FLIGHT,
        )
        .exists()
    )
    result = await session.execute(
        update(Listing)
        .where(
            Listing.id == listing.id,
            Listing.vetting_state != VettingState.VETTED,
            still_open,
        )
        .values(
            vetting_state=VettingState.PENDING_VETTING,
            risk_score=None,
            risk_tier=None,
            listing_tier=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.refresh(listing)
    return result.rowcount > 0


async def set_external_id(session: AsyncSession, submission_id: str, external_id: str) -> None:
    await session.execute(
        update(VettingSubmission)
        .where(VettingSubmission.submission_id == submission_id)
        .values(external_id=external_id)
        .execution_options(synchronize_session=False)
    )


async def has_in_flight_submission(session: AsyncSession, address: str, chain: str) -> bool:
    result = await session.execute(
        select(VettingSubmission.id).where(
            VettingSubmission.contract_address == address,
            VettingSubmission.chain == chain,
            VettingSubmission.state == SubmissionState.IN_FLIGHT,
        )
    )
    return result.first() is not None


async def claim_submission(
    session: AsyncSession,
    listing: Listing,
    *,
    submission_id: str,
    now: datetime,
) -> bool:
    """Insert-if-absent of the in-flight slot for this token.

    One conditional write against the partial unique index: of two cycles
    racing on the same token, exactly one gets True.
    """
    stmt = (
        _insert(session, VettingSubmission)
        .values(
            submission_id=submission_id,
            listing_id=listing.id,
            contract_address=listing.contract_address,
            chain=listing.chain,
            state=SubmissionState.IN_FLIGHT,
            submitted_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["contract_address", "chain"],
            index_where=text("state = 'in_flight'"),
        )
        .returning(VettingSubmission.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def release_submission(session: AsyncSession, submission_id: str) -> None:
    """Drop a claim whose request never reached the workflow."""
    await session.execute(
        delete(VettingSubmission).where(
            VettingSubmission.submission_id == submission_id,
            VettingSubmission.state == SubmissionState.IN_FLIGHT,
        )
    )


async def get_submission(session: AsyncSession, submission_id: str) -> VettingSubmission | None:
    result = await session.execute(
        select(VettingSubmission).where(VettingSubmission.submission_id == submission_id)
    )
    return result.scalar_one_or_none()


async def find_in_flight_submission(
    session: AsyncSession, correlation_key: str
) -> VettingSubmission | None:
    """Match our submission id or the workflow's own id, in-flight only."""
    result = await session.execute(
        select(VettingSubmission)
        .where(
            VettingSubmission.state == SubmissionState.IN_FLIGHT,
            or_(
                VettingSubmission.submission_id == correlation_key,
                VettingSubmission.external_id == correlation_key,
            ),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_in_flight_submissions(
    session: AsyncSession, limit: int = 100
) -> list[VettingSubmission]:
    result = await session.execute(
        select(VettingSubmission)
        .where(VettingSubmission.state == SubmissionState.IN_FLIGHT)
        .order_by(VettingSubmission.submitted_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_sweep_candidates(session: AsyncSession, limit: int) -> list[tuple[str, str]]:
    """Unvetted listings, least recently evaluated first."""
    result = await session.execute(
        select(Listing.contract_address, Listing.chain)
        .where(Listing.vetting_state != VettingState.VETTED)
        .order_by(Listing.last_evaluated_at.asc().nulls_first(), Listing.id)
        .limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]


async def list_refresh_candidates(
    session: AsyncSession, *, stale_before: datetime, limit: int
) -> list[tuple[str, str]]:
    """Vetted listings not re-enriched since ``stale_before``, oldest first."""
    result = await session.execute(
        select(Listing.contract_address, Listing.chain)
        .where(
            Listing.vetting_state == VettingState.VETTED,
            or_(Listing.last_evaluated_at.is_(None), Listing.last_evaluated_at < stale_before),
        )
        .order_by(Listing.last_evaluated_at.asc().nulls_first(), Listing.id)
        .limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]


async def expire_stale_submissions(
    session: AsyncSession,
    *,
    staleness_sec: int,
    now: datetime,
) -> int:
    """Expire in-flight submissions past the staleness window.

    Frees the in-flight slot and moves the listing from pending_vetting to
    vetting_failed so the sweep re-dispatches it. Returns the number expired.
    """
    cutoff = now - timedelta(seconds=staleness_sec)
    result = await session.execute(
        select(VettingSubmission.id, VettingSubmission.listing_id).where(
            VettingSubmission.state == SubmissionState.IN_FLIGHT,
            VettingSubmission.submitted_at < cutoff,
        )
    )
    rows = result.all()
    if not rows:
        return 0

    submission_ids = [r[0] for r in rows]
    listing_ids = [r[1] for r in rows]
    await session.execute(
        update(VettingSubmission)
        .where(
            VettingSubmission.id.in_(submission_ids),
            VettingSubmission.state == SubmissionState.IN_FLIGHT,
        )
        .values(state=SubmissionState.EXPIRED, completed_at=now)
    )
    await session.execute(
        update(Listing)
        .where(
            Listing.id.in_(listing_ids),
            Listing.vetting_state == VettingState.PENDING_VETTING,
        )
        .values(
            vetting_state=VettingState.VETTING_FAILED,
            risk_score=None,
            risk_tier=None,
            listing_tier=None,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    await session.flush()
    logger.info(f"[SWEEP] Expired {len(rows)} stale vetting submissions")
    return len(rows)
