"""
Loyalty Tiers — ordered tier ladder and the wager-to-tier mapping.

Tier is a pure function of cumulative wager. Thresholds are exclusive and
checked from the top down; the first match wins.

  wager > 100,000  → diamond
  wager >  50,000  → platinum
  wager >  10,000  → gold
  otherwise        → silver
"""

from decimal import Decimal
from enum import Enum


class Tier(str, Enum):
    """Player loyalty rank, lowest to highest."""

    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


_TIER_ORDER = (Tier.SILVER, Tier.GOLD, Tier.PLATINUM, Tier.DIAMOND)

# Descending; strictly increasing thresholds when read bottom-up.
# Lower bounds are exclusive: exactly 100000 is platinum, exactly 50000 is gold.
TIER_THRESHOLDS: tuple[tuple[Decimal, Tier], ...] = (
    (Decimal("100000"), Tier.DIAMOND),
    (Decimal("50000"), Tier.PLATINUM),
    (Decimal("10000"), Tier.GOLD),
)
BASE_TIER = Tier.SILVER


def tier_for_wager(total_wager: int | float | Decimal | None) -> Tier:
    """Map cumulative wager to a tier."""
    if total_wager is None:
        return BASE_TIER
    wager = total_wager if isinstance(total_wager, Decimal) else Decimal(str(total_wager))
    for threshold, tier in TIER_THRESHOLDS:
        if wager > threshold:
            return tier
    return BASE_TIER


def parse_tier(value: str | Tier) -> Tier:
    """Coerce a stored tier string (any case) into a Tier."""
    if isinstance(value, Tier):
        return value
    return Tier(str(value).strip().lower())


def is_promotion(old: Tier, new: Tier) -> bool:
    return new > old
