"""Eligibility gate: may this snapshot be sent for vetting right now?

Pure function, shared by the discovery and sweep cycles. The in-flight check
here is advisory; the dispatcher's insert-if-absent claim is what actually
serialises concurrent cycles.
"""

from enum import StrEnum

from src.pipeline.snapshot import TokenSnapshot

DEFAULT_MIN_AGE_DAYS = 14


class GateDecision(StrEnum):
    ELIGIBLE = "eligible"
    SKIP_TOO_YOUNG = "skip_too_young"
    SKIP_IN_FLIGHT = "skip_in_flight"


def decide(
    snapshot: TokenSnapshot,
    has_in_flight: bool,
    min_age_days: int = DEFAULT_MIN_AGE_DAYS,
) -> GateDecision:
    if has_in_flight:
        return GateDecision.SKIP_IN_FLIGHT
    # Unknown age cannot prove the threshold is met
    if snapshot.age_days is None or snapshot.age_days < min_age_days:
        return GateDecision.SKIP_TOO_YOUNG
    return GateDecision.ELIGIBLE
