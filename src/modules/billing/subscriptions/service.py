"""Plan changes against Stripe: immediate upgrades, scheduled downgrades."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import stripe  # type: ignore
from fastapi import status
from sqlalchemy import select
from stripe import StripeError  # type: ignore

from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.core.base import BaseService
from src.database.models import Account, CreditPool, Subscription, SubscriptionStatus
from src.modules.billing.constants import (
    StripeProductType,
    SubscriptionPlanConfig,
    get_plan_for_price_id,
    resolve_price_id,
)
from src.modules.billing.credits.calculations import calculate_upgrade_credits
from src.modules.billing.credits.ledger import CreditLedgerService
from src.modules.billing.stripe.payloads import (
    as_utc,
    derive_period_end,
    object_id,
    period_bounds,
    subscription_item_id,
    subscription_price_id,
)
from src.utils.settings.stripe import StripeSettings

# Subscriptions a plan change or cancellation can act on
CURRENT_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)


class PlanChangeKind(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


@dataclass
class PlanChangeResult:
    kind: PlanChangeKind
    subscription_id: str
    current_price_id: str
    new_price_id: str
    credits_added: int = 0
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    schedule_id: str | None = None
    effective_date: datetime | None = None

    @property
    def effective_immediately(self) -> bool:
        return self.kind == PlanChangeKind.IMMEDIATE


class SubscriptionChangeService(BaseService):
    def __init__(self, db, ledger: CreditLedgerService | None = None):
        super().__init__(db)
        stripe.api_key = StripeSettings().STRIPE_SECRET_KEY.get_secret_value()
        self.ledger = ledger or CreditLedgerService(db)

    async def get_current_subscription(self, account: Account) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.account_id == account.id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def change_plan(self, account: Account, target_price_id: str) -> PlanChangeResult:
        target_plan = self._resolve_target_plan(target_price_id)

        if not account.stripe_customer_id:
            raise UpscalerException(
                MessageCode.STRIPE_CUSTOMER_NOT_FOUND, status.HTTP_400_BAD_REQUEST
            )
        record = await self.get_current_subscription(account)
        if not record:
            raise UpscalerException(
                MessageCode.NO_ACTIVE_SUBSCRIPTION, status.HTTP_400_BAD_REQUEST
            )
        if record.price_id == target_price_id:
            raise UpscalerException(MessageCode.SAME_PLAN, status.HTTP_400_BAD_REQUEST)

        snapshot = self._retrieve_subscription(record.stripe_subscription_id)
        snapshot_price_id = subscription_price_id(snapshot)
        if snapshot_price_id != record.price_id:
            self.logger.warning(
                "Subscription changed in Stripe since last sync",
                subscription_id=record.stripe_subscription_id,
                local_price_id=record.price_id,
                stripe_price_id=snapshot_price_id,
            )
            raise UpscalerException(
                MessageCode.SUBSCRIPTION_MODIFIED,
                status.HTTP_409_CONFLICT,
                details={"current_price_id": snapshot_price_id},
            )

        current_plan = get_plan_for_price_id(record.price_id)
        current_credits = current_plan.credits_per_month if current_plan else 0
        if target_plan.credits_per_month > current_credits:
            return await self._upgrade(account, record, snapshot, target_plan, current_credits)
        return await self._schedule_downgrade(record, snapshot, target_plan)

    async def cancel_scheduled_change(self, account: Account) -> Subscription:
        record = await self.get_current_subscription(account)
        if not record or not (record.scheduled_price_id or record.stripe_schedule_id):
            raise UpscalerException(
                MessageCode.NO_SCHEDULED_CHANGE, status.HTTP_400_BAD_REQUEST
            )

        if record.stripe_schedule_id:
            try:
                stripe.SubscriptionSchedule.release(record.stripe_schedule_id)
            except StripeError as e:
                raise self._stripe_failure("release schedule", e)

        scheduled_price_id = record.scheduled_price_id
        record.clear_scheduled_change()
        await self.commit()
        self.logger.info(
            "Scheduled plan change canceled",
            account_id=str(account.id),
            subscription_id=record.stripe_subscription_id,
            scheduled_price_id=scheduled_price_id,
        )
        return record

    async def cancel_subscription(
        self, account: Account, reason: str | None = None
    ) -> Subscription:
        """Cancel at the end of the current period; credits stay usable until then."""
        record = await self.get_current_subscription(account)
        if not record:
            raise UpscalerException(
                MessageCode.NO_ACTIVE_SUBSCRIPTION, status.HTTP_400_BAD_REQUEST
            )

        params: dict = {"cancel_at_period_end": True}
        if reason:
            params["cancellation_details"] = {"comment": reason[:500]}
        try:
            stripe.Subscription.modify(record.stripe_subscription_id, **params)
        except StripeError as e:
            raise self._stripe_failure("cancel subscription", e)

        record.cancel_at_period_end = True
        await self.commit()
        self.logger.info(
            "Subscription set to cancel at period end",
            account_id=str(account.id),
            subscription_id=record.stripe_subscription_id,
            reason=reason,
        )
        return record

    async def _upgrade(
        self,
        account: Account,
        record: Subscription,
        snapshot,
        target_plan: SubscriptionPlanConfig,
        current_credits: int,
    ) -> PlanChangeResult:
        previous_price_id = record.price_id
        try:
            # A pending downgrade would otherwise revert the upgrade at period end
            schedule_id = object_id(snapshot.get("schedule"))
            if schedule_id:
                stripe.SubscriptionSchedule.release(schedule_id)
            updated = stripe.Subscription.modify(
                record.stripe_subscription_id,
                items=[{"id": subscription_item_id(snapshot), "price": target_plan.price_id}],
                proration_behavior="create_prorations",
                payment_behavior="error_if_incomplete",
            )
        except StripeError as e:
            raise self._stripe_failure("upgrade subscription", e)

        period_start, period_end = period_bounds(updated)
        record.price_id = target_plan.price_id
        if period_start and period_end:
            record.current_period_start = period_start
            record.current_period_end = period_end
        record.clear_scheduled_change()
        account.subscription_tier = target_plan.key.value
        await self.commit()

        balance = await self.ledger.get_balance(account.id)
        calculation = calculate_upgrade_credits(
            current_balance=balance.total,
            previous_tier_credits=current_credits,
            new_tier_credits=target_plan.credits_per_month,
            max_rollover=target_plan.max_rollover,
        )
        credits_added = 0
        if calculation.credits_to_add > 0:
            grant = await self.ledger.grant_to_pool(
                account.id,
                calculation.credits_to_add,
                CreditPool.SUBSCRIPTION,
                reference_id=_upgrade_reference(record, target_plan),
                description=f"Upgrade to {target_plan.name}",
                idempotent=True,
            )
            credits_added = grant.applied

        self.logger.info(
            "Subscription upgraded",
            account_id=str(account.id),
            subscription_id=record.stripe_subscription_id,
            from_price_id=previous_price_id,
            to_price_id=target_plan.price_id,
            credits_added=credits_added,
            tier_difference=calculation.tier_difference,
            reason=calculation.reason.value,
        )
        return PlanChangeResult(
            kind=PlanChangeKind.IMMEDIATE,
            subscription_id=record.stripe_subscription_id,
            current_price_id=previous_price_id,
            new_price_id=target_plan.price_id,
            credits_added=credits_added,
            current_period_start=as_utc(record.current_period_start),
            current_period_end=as_utc(record.current_period_end),
        )

    async def _schedule_downgrade(
        self, record: Subscription, snapshot, target_plan: SubscriptionPlanConfig
    ) -> PlanChangeResult:
        period_start, period_end = period_bounds(snapshot)
        if not period_end:
            period_end = derive_period_end(snapshot)
        if not period_end:
            raise UpscalerException(
                MessageCode.INVALID_SUBSCRIPTION_STATE,
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                details={"description": "Could not determine billing period end"},
            )
        period_end_ts = int(period_end.timestamp())

        try:
            schedule_id = object_id(snapshot.get("schedule"))
            if schedule_id:
                schedule = stripe.SubscriptionSchedule.retrieve(schedule_id)
            else:
                schedule = stripe.SubscriptionSchedule.create(
                    from_subscription=record.stripe_subscription_id
                )
            phases = schedule.get("phases") or []
            phase_start = phases[0].get("start_date") if phases else None
            if not phase_start:
                phase_start = int(
                    (period_start or datetime.now(timezone.utc)).timestamp()
                )

            stripe.SubscriptionSchedule.modify(
                schedule["id"],
                end_behavior="release",
                phases=[
                    {
                        "items": [{"price": record.price_id, "quantity": 1}],
                        "start_date": phase_start,
                        "end_date": period_end_ts,
                        "proration_behavior": "none",
                    },
                    {
                        "items": [{"price": target_plan.price_id, "quantity": 1}],
                        "start_date": period_end_ts,
                        "proration_behavior": "none",
                    },
                ],
            )
        except StripeError as e:
            raise self._stripe_failure("schedule downgrade", e)

        record.scheduled_price_id = target_plan.price_id
        record.scheduled_change_date = period_end
        record.stripe_schedule_id = schedule["id"]
        await self.commit()

        self.logger.info(
            "Downgrade scheduled",
            account_id=str(record.account_id),
            subscription_id=record.stripe_subscription_id,
            schedule_id=schedule["id"],
            from_price_id=record.price_id,
            to_price_id=target_plan.price_id,
            effective_date=period_end.isoformat(),
        )
        return PlanChangeResult(
            kind=PlanChangeKind.SCHEDULED,
            subscription_id=record.stripe_subscription_id,
            current_price_id=record.price_id,
            new_price_id=target_plan.price_id,
            schedule_id=schedule["id"],
            effective_date=period_end,
        )

    def _resolve_target_plan(self, target_price_id: str) -> SubscriptionPlanConfig:
        try:
            resolved = resolve_price_id(target_price_id)
        except ValueError:
            resolved = None
        if not resolved or resolved.product_type != StripeProductType.SUBSCRIPTION:
            raise UpscalerException(
                MessageCode.INVALID_PRICE_ID,
                status.HTTP_400_BAD_REQUEST,
                details={"price_id": target_price_id},
            )
        return resolved.plan

    def _retrieve_subscription(self, stripe_subscription_id: str):
        try:
            return stripe.Subscription.retrieve(stripe_subscription_id)
        except StripeError as e:
            raise self._stripe_failure("retrieve subscription", e)

    def _stripe_failure(self, action: str, error: StripeError) -> UpscalerException:
        self.logger.error("Stripe call failed", action=action, error=str(error))
        return UpscalerException(
            MessageCode.STRIPE_ERROR,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"action": action},
        )


def _upgrade_reference(record: Subscription, target_plan: SubscriptionPlanConfig) -> str:
    """One upgrade grant per subscription, target plan and billing period."""
    period_start = as_utc(record.current_period_start)
    period = int(period_start.timestamp()) if period_start else "current"
    return f"upgrade_{record.stripe_subscription_id}_{target_plan.key.value}_{period}"
