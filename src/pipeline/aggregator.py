"""Merge per-provider partial snapshots into one canonical TokenSnapshot.

Merge rules:
  - fields are filled by provider priority (metadata > market > rpc);
  - a present value never yields to an absent one, whatever its priority;
  - creation timestamp: metadata provider, else pair creation time, and it
    never regresses below what the catalog already holds.

Returns None (inconclusive) when no provider contributed anything.
"""

from datetime import datetime

from src.models.listing import Listing
from src.pipeline.snapshot import (
    MERGED_FIELDS,
    PartialSnapshot,
    TokenSnapshot,
    compute_age_days,
)


def aggregate(
    address: str,
    chain: str,
    partials: list[PartialSnapshot],
    previous: Listing | None,
    now: datetime,
) -> TokenSnapshot | None:
    usable = sorted((p for p in partials if p and not p.is_empty()), key=lambda p: p.source)
    if not usable:
        return None

    snapshot = TokenSnapshot(
        contract_address=address,
        chain=chain,
        sources=tuple(p.source for p in usable),
    )
    for field_name in MERGED_FIELDS:
        setattr(snapshot, field_name, _first_present(usable, field_name))

    fetched_ts = _first_present(usable, "creation_timestamp") or _first_present(
        usable, "pair_created_at"
    )
    known_ts = previous.creation_timestamp if previous is not None else None
    snapshot.creation_timestamp = _retain_timestamp(known_ts, fetched_ts)
    snapshot.age_days = compute_age_days(snapshot.creation_timestamp, now)
    return snapshot


def _first_present(partials: list[PartialSnapshot], field_name: str) -> object | None:
    for partial in partials:
        value = getattr(partial, field_name)
        if value is not None:
            return value
    return None


def _retain_timestamp(known: datetime | None, fetched: datetime | None) -> datetime | None:
    if known is None:
        return fetched
    if fetched is None:
        return known
    return max(known, fetched)
