"""
Loyalty tiers, premium status and discount stacking.

Points are earned one per whole currency unit spent (pre-discount). A tier's
discount stacks on top of the premium discount: it applies to what remains
after the premium discount, not to the original amount.
"""
from typing import Dict, NamedTuple, Tuple

from database import as_utc, now_utc

PREMIUM_DISCOUNT = 0.10


class LoyaltyLevel(NamedTuple):
    name: str
    min_points: int
    discount: float
    color: str


# Ordered by min_points; each level runs up to the next one's threshold.
LOYALTY_LEVELS = (
    LoyaltyLevel("Bronze", 0, 0.0, "#A0826D"),
    LoyaltyLevel("Silver", 500, 0.02, "#C0C0C0"),
    LoyaltyLevel("Gold", 1500, 0.05, "#FFD700"),
    LoyaltyLevel("Platinum", 5000, 0.10, "#E5E4E2"),
)


def loyalty_level(points: int) -> LoyaltyLevel:
    points = max(int(points or 0), 0)
    current = LOYALTY_LEVELS[0]
    for level in LOYALTY_LEVELS:
        if points >= level.min_points:
            current = level
    return current


def loyalty_tier(points: int) -> Tuple[str, float]:
    level = loyalty_level(points)
    return level.name, level.discount


def loyalty_badge(level_name: str, points: int) -> str:
    return f"{level_name} ({points} points)"


def stacked_discount(premium_discount: float, loyalty_discount: float) -> float:
    return premium_discount + loyalty_discount * (1 - premium_discount)


def is_premium_active(user: Dict) -> bool:
    if not user.get("is_premium"):
        return False
    until = as_utc(user.get("premium_until"))
    return until is None or until > now_utc()
