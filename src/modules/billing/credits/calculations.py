"""Credit arithmetic for plan changes. No database access."""

from dataclasses import dataclass
from enum import Enum


class UpgradeCreditReason(str, Enum):
    TIER_DIFFERENCE = "tier_difference"
    CAPPED_BY_ROLLOVER = "capped_by_rollover"


@dataclass(frozen=True)
class UpgradeCredits:
    credits_to_add: int
    tier_difference: int
    reason: UpgradeCreditReason


def calculate_upgrade_credits(
    current_balance: int,
    previous_tier_credits: int,
    new_tier_credits: int,
    max_rollover: int | None = None,
) -> UpgradeCredits:
    """Credits granted on an immediate upgrade.

    The tier difference is added, capped so the combined balance never goes
    past the new plan's rollover limit. Repeated upgrade/downgrade cycles
    therefore cannot accumulate credits.
    """
    if current_balance < 0 or previous_tier_credits < 0 or new_tier_credits < 0:
        raise ValueError("Credit amounts cannot be negative")
    if new_tier_credits <= previous_tier_credits:
        raise ValueError("Upgrade target must carry more credits than the current plan")

    tier_difference = new_tier_credits - previous_tier_credits
    if max_rollover is not None and current_balance + tier_difference > max_rollover:
        return UpgradeCredits(
            credits_to_add=max(0, max_rollover - current_balance),
            tier_difference=tier_difference,
            reason=UpgradeCreditReason.CAPPED_BY_ROLLOVER,
        )
    return UpgradeCredits(
        credits_to_add=tier_difference,
        tier_difference=tier_difference,
        reason=UpgradeCreditReason.TIER_DIFFERENCE,
    )
