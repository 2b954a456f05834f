"""Stripe pricing constants and plan configurations."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from src.utils.settings.stripe import StripeSettings

_stripe_settings = StripeSettings()

# Dispute holds convert the disputed amount at this rate
CENTS_PER_CREDIT = 10

# Subscription pools may hold at most this many months of allowance
ROLLOVER_MULTIPLIER = 6


class SubscriptionPlan(str, Enum):
    """Available subscription plans, ordered by allowance."""

    STARTER = "starter"
    HOBBY = "hobby"
    PRO = "pro"
    BUSINESS = "business"


class CreditPack(str, Enum):
    """One-time credit packs."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class StripeProductType(str, Enum):
    SUBSCRIPTION = "subscription"
    CREDIT_PACK = "credit_pack"


PRICE_STARTER_MONTHLY = _stripe_settings.STRIPE_PRICE_STARTER_MONTHLY
PRICE_HOBBY_MONTHLY = _stripe_settings.STRIPE_PRICE_HOBBY_MONTHLY
PRICE_PRO_MONTHLY = _stripe_settings.STRIPE_PRICE_PRO_MONTHLY
PRICE_BUSINESS_MONTHLY = _stripe_settings.STRIPE_PRICE_BUSINESS_MONTHLY
PRICE_CREDITS_SMALL = _stripe_settings.STRIPE_PRICE_CREDITS_SMALL
PRICE_CREDITS_MEDIUM = _stripe_settings.STRIPE_PRICE_CREDITS_MEDIUM
PRICE_CREDITS_LARGE = _stripe_settings.STRIPE_PRICE_CREDITS_LARGE


@dataclass(frozen=True)
class TrialConfig:
    """Free-trial settings attached to a plan."""

    enabled: bool
    trial_days: int
    trial_credits: int | None = None


@dataclass(frozen=True)
class SubscriptionPlanConfig:
    """Configuration for a subscription plan."""

    key: SubscriptionPlan
    price_id: str
    name: str
    credits_per_month: int
    price_monthly: Decimal
    trial: TrialConfig | None = None

    @property
    def max_rollover(self) -> int:
        return self.credits_per_month * ROLLOVER_MULTIPLIER


@dataclass(frozen=True)
class CreditPackConfig:
    """Configuration for a one-time credit pack."""

    key: CreditPack
    price_id: str
    credits: int
    price: Decimal
    name: str


@dataclass(frozen=True)
class ResolvedPrice:
    """A Stripe price id resolved against the catalog."""

    product_type: StripeProductType
    plan: SubscriptionPlanConfig | None = None
    pack: CreditPackConfig | None = None

    @property
    def credits(self) -> int:
        if self.plan:
            return self.plan.credits_per_month
        return self.pack.credits if self.pack else 0


SUBSCRIPTION_PLANS: dict[SubscriptionPlan, SubscriptionPlanConfig] = {
    SubscriptionPlan.STARTER: SubscriptionPlanConfig(
        key=SubscriptionPlan.STARTER,
        price_id=PRICE_STARTER_MONTHLY,
        name="Starter",
        credits_per_month=100,
        price_monthly=Decimal("9.00"),
    ),
    SubscriptionPlan.HOBBY: SubscriptionPlanConfig(
        key=SubscriptionPlan.HOBBY,
        price_id=PRICE_HOBBY_MONTHLY,
        name="Hobby",
        credits_per_month=200,
        price_monthly=Decimal("19.00"),
    ),
    SubscriptionPlan.PRO: SubscriptionPlanConfig(
        key=SubscriptionPlan.PRO,
        price_id=PRICE_PRO_MONTHLY,
        name="Professional",
        credits_per_month=1000,
        price_monthly=Decimal("49.00"),
        trial=TrialConfig(enabled=True, trial_days=7, trial_credits=100),
    ),
    SubscriptionPlan.BUSINESS: SubscriptionPlanConfig(
        key=SubscriptionPlan.BUSINESS,
        price_id=PRICE_BUSINESS_MONTHLY,
        name="Business",
        credits_per_month=5000,
        price_monthly=Decimal("149.00"),
    ),
}

CREDIT_PACKS: dict[CreditPack, CreditPackConfig] = {
    CreditPack.SMALL: CreditPackConfig(
        key=CreditPack.SMALL,
        price_id=PRICE_CREDITS_SMALL,
        credits=50,
        price=Decimal("5.00"),
        name="Small Pack",
    ),
    CreditPack.MEDIUM: CreditPackConfig(
        key=CreditPack.MEDIUM,
        price_id=PRICE_CREDITS_MEDIUM,
        credits=200,
        price=Decimal("15.00"),
        name="Medium Pack",
    ),
    CreditPack.LARGE: CreditPackConfig(
        key=CreditPack.LARGE,
        price_id=PRICE_CREDITS_LARGE,
        credits=600,
        price=Decimal("39.00"),
        name="Large Pack",
    ),
}

PRICE_TO_PLAN: dict[str, SubscriptionPlanConfig] = {
    config.price_id: config for config in SUBSCRIPTION_PLANS.values()
}
PRICE_TO_PACK: dict[str, CreditPackConfig] = {
    config.price_id: config for config in CREDIT_PACKS.values()
}


def get_plan_for_price_id(price_id: str | None) -> SubscriptionPlanConfig | None:
    if not price_id:
        return None
    return PRICE_TO_PLAN.get(price_id)


def get_plan_by_key(key: str | None) -> SubscriptionPlanConfig | None:
    if not key:
        return None
    try:
        return SUBSCRIPTION_PLANS[SubscriptionPlan(key)]
    except ValueError:
        return None


def resolve_price_id(price_id: str) -> ResolvedPrice:
    """Resolve a price id to a plan or pack, raising ValueError when unknown."""
    if price_id in PRICE_TO_PLAN:
        return ResolvedPrice(
            product_type=StripeProductType.SUBSCRIPTION, plan=PRICE_TO_PLAN[price_id]
        )
    if price_id in PRICE_TO_PACK:
        return ResolvedPrice(
            product_type=StripeProductType.CREDIT_PACK, pack=PRICE_TO_PACK[price_id]
        )
    raise ValueError(f"Unknown price id: {price_id}")
