"""Subscription and subscription schedule lifecycle events."""

from datetime import datetime, timezone

from sqlalchemy import select

from src.database.models import (
    Account,
    AccountSubscriptionStatus,
    CreditPool,
    Subscription,
    SubscriptionStatus,
    TransactionType,
)
from src.modules.billing.constants import SubscriptionPlanConfig, get_plan_for_price_id
from src.modules.billing.stripe.payloads import (
    as_utc,
    invoice_reference,
    metadata_of,
    object_id,
    period_bounds,
    subscription_price_id,
    to_datetime,
    trial_reference,
)

from .base import StripeEventHandler

# Stripe subscription status -> account-level status; others leave it unchanged
ACCOUNT_STATUS_BY_STRIPE_STATUS = {
    SubscriptionStatus.ACTIVE: AccountSubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING: AccountSubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE: AccountSubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID: AccountSubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED: AccountSubscriptionStatus.CANCELED,
    SubscriptionStatus.INCOMPLETE_EXPIRED: AccountSubscriptionStatus.CANCELED,
}

ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)

# Previous record states from which a trialing snapshot starts a trial
TRIAL_START_STATUSES = (None, SubscriptionStatus.INCOMPLETE.value)

# States a subscription only reaches after its trial is over
POST_TRIAL_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.UNPAID.value,
    SubscriptionStatus.CANCELED.value,
)


class SubscriptionEventHandler(StripeEventHandler):
    async def handle_subscription_upserted(
        self, data: dict, event_created: int | None = None
    ) -> None:
        """customer.subscription.created / customer.subscription.updated.

        ``event_created`` is the Stripe event timestamp; snapshots older than
        the last one applied to the record are dropped.
        """
        stripe_subscription_id = data["id"]
        customer_id = object_id(data.get("customer"))
        status = data.get("status")
        event_at = to_datetime(event_created)

        record = await self.find_subscription(stripe_subscription_id)
        if record and _is_stale_snapshot(record, status, event_at):
            self.logger.info(
                "Ignoring stale subscription snapshot",
                subscription_id=stripe_subscription_id,
                status=status,
                current_status=record.status,
                event_created=event_created,
            )
            return

        account = None
        if record:
            account = await self.db.get(Account, record.account_id)
        if not account:
            account = await self.find_account_by_customer(customer_id)
        if not account:
            account = await self.get_account(metadata_of(data).get("user_id"))
        if not account:
            self.logger.warning(
                "No account for subscription event",
                subscription_id=stripe_subscription_id,
                customer_id=customer_id,
            )
            return

        if customer_id and not account.stripe_customer_id:
            account.stripe_customer_id = customer_id

        price_id = subscription_price_id(data)
        plan = get_plan_for_price_id(price_id)
        if price_id and not plan:
            self.logger.warning(
                "Subscription on a price outside the plan catalog",
                subscription_id=stripe_subscription_id,
                price_id=price_id,
            )

        previous_status = record.status if record else None
        if record is None:
            if not price_id:
                self.logger.error(
                    "Subscription event without a price",
                    subscription_id=stripe_subscription_id,
                )
                return
            record = Subscription(
                account_id=account.id,
                stripe_subscription_id=stripe_subscription_id,
                status=status,
                price_id=price_id,
            )
            self.db.add(record)

        self._apply_snapshot(record, data, customer_id, price_id)
        if event_at:
            record.last_event_at = event_at

        account_status = ACCOUNT_STATUS_BY_STRIPE_STATUS.get(status)
        if account_status:
            account.subscription_status = account_status.value
        if status in ENTITLED_STATUSES and plan:
            account.subscription_tier = plan.key.value

        await self.commit()
        self.logger.info(
            "Subscription record synced",
            account_id=str(account.id),
            subscription_id=stripe_subscription_id,
            status=status,
            previous_status=previous_status,
            price_id=price_id,
        )

        if not plan:
            return
        if status == SubscriptionStatus.TRIALING and previous_status in TRIAL_START_STATUSES:
            await self._grant_trial_credits(account, plan, stripe_subscription_id)
        elif previous_status == SubscriptionStatus.TRIALING and status == SubscriptionStatus.ACTIVE:
            await self._top_up_after_trial(account, record, plan, data)

    async def handle_subscription_deleted(self, data: dict) -> None:
        stripe_subscription_id = data["id"]
        record = await self.find_subscription(stripe_subscription_id)

        account = None
        if record:
            account = await self.db.get(Account, record.account_id)
        if not account:
            account = await self.find_account_by_customer(object_id(data.get("customer")))
        if not account:
            self.logger.warning(
                "No account for deleted subscription",
                subscription_id=stripe_subscription_id,
            )
            return

        if record:
            record.status = SubscriptionStatus.CANCELED.value
            record.canceled_at = to_datetime(data.get("canceled_at")) or datetime.now(
                timezone.utc
            )
            record.cancel_at_period_end = False
            record.clear_scheduled_change()

        # A late delete for an old subscription must not strip a live one
        if not await self._has_other_entitled_subscription(account, stripe_subscription_id):
            account.subscription_status = AccountSubscriptionStatus.CANCELED.value
            account.subscription_tier = None

        await self.commit()
        self.logger.info(
            "Subscription canceled",
            account_id=str(account.id),
            subscription_id=stripe_subscription_id,
        )

    async def handle_schedule_completed(self, schedule: dict) -> None:
        """A scheduled plan change took effect. Only the tier moves here.

        Credits for the new plan arrive with the next renewal invoice.
        """
        record = await self._find_schedule_subscription(schedule)
        if not record:
            return

        price_id = record.scheduled_price_id or _last_phase_price(schedule)
        plan = get_plan_for_price_id(price_id)
        account = await self.db.get(Account, record.account_id)
        if account and plan:
            account.subscription_tier = plan.key.value

        record.clear_scheduled_change()
        await self.commit()
        self.logger.info(
            "Scheduled plan change completed",
            subscription_id=record.stripe_subscription_id,
            tier=plan.key.value if plan else None,
        )

    async def handle_schedule_released(self, schedule: dict) -> None:
        record = await self._find_schedule_subscription(schedule)
        if not record:
            return

        if record.stripe_schedule_id and record.stripe_schedule_id != schedule.get("id"):
            self.logger.info(
                "Ignoring release of a superseded schedule",
                schedule_id=schedule.get("id"),
                current_schedule_id=record.stripe_schedule_id,
            )
            return

        change_date = as_utc(record.scheduled_change_date)
        if change_date and change_date <= datetime.now(timezone.utc):
            await self.handle_schedule_completed(schedule)
            return

        record.clear_scheduled_change()
        await self.commit()
        self.logger.info(
            "Scheduled plan change released",
            subscription_id=record.stripe_subscription_id,
        )

    def _apply_snapshot(
        self,
        record: Subscription,
        data: dict,
        customer_id: str | None,
        price_id: str | None,
    ) -> None:
        record.status = data.get("status")
        if price_id:
            record.price_id = price_id
        if customer_id:
            record.stripe_customer_id = customer_id

        period_start, period_end = period_bounds(data)
        if period_start and period_end:
            record.current_period_start = period_start
            record.current_period_end = period_end

        record.cancel_at_period_end = bool(data.get("cancel_at_period_end"))
        record.canceled_at = to_datetime(data.get("canceled_at"))

        if record.scheduled_price_id and price_id == record.scheduled_price_id:
            record.clear_scheduled_change()

    async def _grant_trial_credits(
        self, account: Account, plan: SubscriptionPlanConfig, stripe_subscription_id: str
    ) -> None:
        trial = plan.trial
        if not trial or not trial.enabled or not trial.trial_credits:
            return

        result = await self.ledger.grant_to_pool(
            account.id,
            trial.trial_credits,
            CreditPool.SUBSCRIPTION,
            reference_id=trial_reference(stripe_subscription_id),
            description=f"{plan.name} trial credits",
            transaction_type=TransactionType.TRIAL,
            idempotent=True,
        )
        self.logger.info(
            "Trial credits granted",
            account_id=str(account.id),
            credits=result.applied,
            duplicate=result.duplicate,
        )

    async def _top_up_after_trial(
        self,
        account: Account,
        record: Subscription,
        plan: SubscriptionPlanConfig,
        data: dict,
    ) -> None:
        """Bring the subscription pool up to the plan allotment, never above it.

        The conversion is keyed on the first paid invoice, which the invoice
        handler claims the same way, so delivery order does not matter.
        """
        latest_invoice = object_id(data.get("latest_invoice"))
        if not latest_invoice:
            self.logger.info(
                "Trial conversion waits for its invoice",
                account_id=str(account.id),
                subscription_id=record.stripe_subscription_id,
            )
            return
        if record.trial_converted_invoice_id:
            self.logger.info(
                "Trial already converted",
                subscription_id=record.stripe_subscription_id,
                invoice_id=record.trial_converted_invoice_id,
            )
            return

        record.trial_converted_invoice_id = latest_invoice
        await self.commit()

        result = await self.ledger.top_up_pool(
            account.id,
            plan.credits_per_month,
            CreditPool.SUBSCRIPTION,
            reference_id=invoice_reference(latest_invoice),
            description=f"{plan.name} trial conversion top-up",
        )
        self.logger.info(
            "Trial converted",
            account_id=str(account.id),
            credits=result.applied,
            duplicate=result.duplicate,
        )

    async def _has_other_entitled_subscription(
        self, account: Account, stripe_subscription_id: str
    ) -> bool:
        result = await self.db.execute(
            select(Subscription.id)
            .where(
                Subscription.account_id == account.id,
                Subscription.stripe_subscription_id != stripe_subscription_id,
                Subscription.status.in_(ENTITLED_STATUSES),
            )
            .limit(1)
        )
        return result.first() is not None

    async def _find_schedule_subscription(self, schedule: dict) -> Subscription | None:
        subscription_id = object_id(schedule.get("subscription")) or object_id(
            schedule.get("released_subscription")
        )
        record = await self.find_subscription(subscription_id)
        if not record:
            self.logger.warning(
                "Schedule event for unknown subscription",
                schedule_id=schedule.get("id"),
                subscription_id=subscription_id,
            )
        return record


def _last_phase_price(schedule: dict) -> str | None:
    phases = schedule.get("phases") or []
    if not phases:
        return None
    items = phases[-1].get("items") or []
    return object_id(items[0].get("price")) if items else None


def _is_stale_snapshot(
    record: Subscription, status: str | None, event_at: datetime | None
) -> bool:
    last_applied = as_utc(record.last_event_at)
    if event_at and last_applied and event_at != last_applied:
        return event_at < last_applied
    # Same second or no timestamps: a paid subscription never returns to its trial
    return status == SubscriptionStatus.TRIALING and (
        record.status in POST_TRIAL_STATUSES or bool(record.trial_converted_invoice_id)
    )
