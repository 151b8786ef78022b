"""Score → risk tier mapping, and the catalog's listing tier.

Scores are 0..100 where higher is safer. The risk tier map is configuration:
an ordered list of (lower_bound, label). It must be total over the valid
range, so the lowest bound has to reach SCORE_MIN.
"""

from decimal import Decimal

SCORE_MIN = Decimal(0)
SCORE_MAX = Decimal(100)


class RiskTierMap:
    def __init__(self, thresholds: list[tuple[float, str]]) -> None:
        if not thresholds:
            raise ValueError("risk tier thresholds are empty")
        ordered = sorted(
            ((Decimal(str(bound)), label) for bound, label in thresholds),
            key=lambda t: t[0],
            reverse=True,
        )
        bounds = [b for b, _ in ordered]
        if len(set(bounds)) != len(bounds):
            raise ValueError(f"duplicate risk tier bounds: {thresholds}")
        if ordered[-1][0] > SCORE_MIN:
            raise ValueError(
                f"risk tiers leave scores below {ordered[-1][0]} unmapped"
            )
        self._ordered = ordered

    @property
    def labels(self) -> list[str]:
        return [label for _, label in self._ordered]

    def tier_for(self, score: Decimal) -> str:
        if not is_valid_score(score):
            raise ValueError(f"score out of range: {score}")
        for bound, label in self._ordered:
            if score >= bound:
                return label
        # unreachable: the lowest bound is <= SCORE_MIN
        raise ValueError(f"no tier for score {score}")


def is_valid_score(score: Decimal | None) -> bool:
    return score is not None and score.is_finite() and SCORE_MIN <= score <= SCORE_MAX


# (tier, min age days, min liquidity usd, min lp burn %, min score), best first
LISTING_TIERS: tuple[tuple[str, int, Decimal, Decimal, Decimal], ...] = (
    ("stellar", 60, Decimal(100_000), Decimal(99), Decimal(70)),
    ("bloom", 30, Decimal(50_000), Decimal(90), Decimal(65)),
    ("sprout", 21, Decimal(20_000), Decimal(90), Decimal(60)),
    ("seed", 14, Decimal(10_000), Decimal(80), Decimal(50)),
)


def listing_tier_for(
    score: Decimal,
    *,
    age_days: int | None,
    liquidity_usd: Decimal | None,
    lp_burn_pct: Decimal | None,
) -> str:
    """Catalog placement tier; missing metrics count as zero."""
    age = age_days or 0
    liquidity = liquidity_usd or Decimal(0)
    lp = lp_burn_pct or Decimal(0)
    for tier, min_age, min_liq, min_lp, min_score in LISTING_TIERS:
        if age >= min_age and liquidity >= min_liq and lp >= min_lp and score >= min_score:
            return tier
    return "none"
