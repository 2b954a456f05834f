"""Plan changes: immediate upgrades and scheduled downgrades."""

import time
from unittest.mock import patch

import pytest
import stripe

from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.database.models import AccountSubscriptionStatus, SubscriptionStatus
from src.modules.billing.constants import (
    PRICE_BUSINESS_MONTHLY,
    PRICE_CREDITS_SMALL,
    PRICE_HOBBY_MONTHLY,
    PRICE_PRO_MONTHLY,
    PRICE_STARTER_MONTHLY,
)
from src.modules.billing.credits.ledger import CreditLedgerService
from src.modules.billing.subscriptions.service import (
    PlanChangeKind,
    SubscriptionChangeService,
)
from tests.utils.assertions import assert_upscaler_exception
from tests.utils.stripe_events import DAY, subscription_object


@pytest.fixture
def ledger(db_session):
    return CreditLedgerService(db_session)


@pytest.fixture
def service(db_session, ledger):
    return SubscriptionChangeService(db_session, ledger)


@pytest.fixture
def subscribed(db_session, account_factory, subscription_factory):
    """An account on Hobby with 150 subscription credits left."""

    async def build(price_id=PRICE_HOBBY_MONTHLY, **account_fields):
        fields = {
            "subscription_status": AccountSubscriptionStatus.ACTIVE.value,
            "subscription_credits_balance": 150,
            **account_fields,
        }
        account = await account_factory.create_async(db_session, **fields)
        record = await subscription_factory.create_async(
            db_session,
            account_id=account.id,
            stripe_customer_id=account.stripe_customer_id,
            price_id=price_id,
        )
        return account, record

    return build


def _snapshot(record, price_id=None, **extra):
    return subscription_object(
        record.stripe_subscription_id,
        record.stripe_customer_id,
        price_id or record.price_id,
        **extra,
    )


class TestUpgrade:
    @pytest.mark.asyncio
    async def test_upgrade_swaps_price_and_grants_tier_difference(
        self, service, ledger, subscribed
    ):
        account, record = await subscribed()
        snapshot = _snapshot(record)
        updated = _snapshot(record, PRICE_PRO_MONTHLY)

        with (
            patch("stripe.Subscription.retrieve", return_value=snapshot),
            patch("stripe.Subscription.modify", return_value=updated) as modify,
            patch("stripe.SubscriptionSchedule.release") as release,
        ):
            result = await service.change_plan(account, PRICE_PRO_MONTHLY)

        modify.assert_called_once_with(
            record.stripe_subscription_id,
            items=[{"id": f"si_{record.stripe_subscription_id}", "price": PRICE_PRO_MONTHLY}],
            proration_behavior="create_prorations",
            payment_behavior="error_if_incomplete",
        )
        release.assert_not_called()

        assert result.kind == PlanChangeKind.IMMEDIATE
        assert result.effective_immediately
        assert result.current_price_id == PRICE_HOBBY_MONTHLY
        assert result.new_price_id == PRICE_PRO_MONTHLY
        assert result.credits_added == 800
        assert record.price_id == PRICE_PRO_MONTHLY
        assert account.subscription_tier == "pro"
        assert (await ledger.get_balance(account.id)).subscription == 950

    @pytest.mark.asyncio
    async def test_upgrade_credit_is_capped_by_new_rollover(
        self, service, ledger, subscribed
    ):
        account, record = await subscribed(subscription_credits_balance=5800)

        with (
            patch("stripe.Subscription.retrieve", return_value=_snapshot(record)),
            patch(
                "stripe.Subscription.modify",
                return_value=_snapshot(record, PRICE_PRO_MONTHLY),
            ),
        ):
            result = await service.change_plan(account, PRICE_PRO_MONTHLY)

        assert result.credits_added == 200
        assert (await ledger.get_balance(account.id)).subscription == 6000

    @pytest.mark.asyncio
    async def test_repeated_upgrade_in_one_period_grants_once(
        self, service, ledger, db_session, subscribed
    ):
        account, record = await subscribed()
        snapshot = _snapshot(record)
        updated = _snapshot(record, PRICE_PRO_MONTHLY)

        with (
            patch("stripe.Subscription.retrieve", return_value=snapshot),
            patch("stripe.Subscription.modify", return_value=updated),
        ):
            await service.change_plan(account, PRICE_PRO_MONTHLY)
            # The retried request sees the plan it started from
            record.price_id = PRICE_HOBBY_MONTHLY
            await db_session.commit()
            retried = await service.change_plan(account, PRICE_PRO_MONTHLY)

        assert retried.credits_added == 0
        assert (await ledger.get_balance(account.id)).subscription == 950

    @pytest.mark.asyncio
    async def test_upgrade_releases_pending_downgrade(self, service, db_session, subscribed):
        account, record = await subscribed(PRICE_PRO_MONTHLY)
        record.scheduled_price_id = PRICE_STARTER_MONTHLY
        record.stripe_schedule_id = "sub_sched_pending"
        await db_session.commit()

        with (
            patch(
                "stripe.Subscription.retrieve",
                return_value=_snapshot(record, schedule="sub_sched_pending"),
            ),
            patch(
                "stripe.Subscription.modify",
                return_value=_snapshot(record, PRICE_BUSINESS_MONTHLY),
            ),
            patch("stripe.SubscriptionSchedule.release") as release,
        ):
            await service.change_plan(account, PRICE_BUSINESS_MONTHLY)

        release.assert_called_once_with("sub_sched_pending")
        assert record.scheduled_price_id is None
        assert record.stripe_schedule_id is None
        assert record.price_id == PRICE_BUSINESS_MONTHLY

    @pytest.mark.asyncio
    async def test_declined_upgrade_changes_nothing(self, service, ledger, subscribed):
        account, record = await subscribed()

        with (
            patch("stripe.Subscription.retrieve", return_value=_snapshot(record)),
            patch(
                "stripe.Subscription.modify",
                side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
            ),
        ):
            with pytest.raises(UpscalerException) as exc_info:
                await service.change_plan(account, PRICE_PRO_MONTHLY)

        assert_upscaler_exception(exc_info.value, MessageCode.STRIPE_ERROR, 500)
        assert record.price_id == PRICE_HOBBY_MONTHLY
        assert (await ledger.get_balance(account.id)).subscription == 150


class TestDowngrade:
    @pytest.mark.asyncio
    async def test_downgrade_is_scheduled_for_period_end(self, service, ledger, subscribed):
        account, record = await subscribed(PRICE_PRO_MONTHLY, subscription_tier="pro")
        period_start = int(time.time()) - 5 * DAY
        period_end = period_start + 30 * DAY
        snapshot = _snapshot(record, period_start=period_start, period_end=period_end)

        with (
            patch("stripe.Subscription.retrieve", return_value=snapshot),
            patch(
                "stripe.SubscriptionSchedule.create",
                return_value={"id": "sub_sched_new", "phases": [{"start_date": period_start}]},
            ) as create,
            patch("stripe.SubscriptionSchedule.modify") as modify,
            patch("stripe.Subscription.modify") as subscription_modify,
        ):
            result = await service.change_plan(account, PRICE_HOBBY_MONTHLY)

        create.assert_called_once_with(from_subscription=record.stripe_subscription_id)
        subscription_modify.assert_not_called()
        modify.assert_called_once_with(
            "sub_sched_new",
            end_behavior="release",
            phases=[
                {
                    "items": [{"price": PRICE_PRO_MONTHLY, "quantity": 1}],
                    "start_date": period_start,
                    "end_date": period_end,
                    "proration_behavior": "none",
                },
                {
                    "items": [{"price": PRICE_HOBBY_MONTHLY, "quantity": 1}],
                    "start_date": period_end,
                    "proration_behavior": "none",
                },
            ],
        )

        assert result.kind == PlanChangeKind.SCHEDULED
        assert not result.effective_immediately
        assert result.schedule_id == "sub_sched_new"
        assert int(result.effective_date.timestamp()) == period_end
        assert result.credits_added == 0

        # Nothing changes until the period ends
        assert record.price_id == PRICE_PRO_MONTHLY
        assert record.scheduled_price_id == PRICE_HOBBY_MONTHLY
        assert record.stripe_schedule_id == "sub_sched_new"
        assert account.subscription_tier == "pro"
        assert (await ledger.get_balance(account.id)).subscription == 150

    @pytest.mark.asyncio
    async def test_existing_schedule_is_reused(self, service, subscribed):
        account, record = await subscribed(PRICE_BUSINESS_MONTHLY)
        snapshot = _snapshot(record, schedule="sub_sched_old")

        with (
            patch("stripe.Subscription.retrieve", return_value=snapshot),
            patch(
                "stripe.SubscriptionSchedule.retrieve",
                return_value={"id": "sub_sched_old", "phases": []},
            ) as retrieve,
            patch("stripe.SubscriptionSchedule.create") as create,
            patch("stripe.SubscriptionSchedule.modify") as modify,
        ):
            result = await service.change_plan(account, PRICE_STARTER_MONTHLY)

        retrieve.assert_called_once_with("sub_sched_old")
        create.assert_not_called()
        assert modify.call_args.args == ("sub_sched_old",)
        assert record.scheduled_price_id == PRICE_STARTER_MONTHLY
        assert result.schedule_id == "sub_sched_old"

    @pytest.mark.asyncio
    async def test_period_end_derived_from_billing_anchor(self, service, subscribed):
        account, record = await subscribed(PRICE_PRO_MONTHLY)
        snapshot = _snapshot(record)
        del snapshot["current_period_start"]
        del snapshot["current_period_end"]

        with (
            patch("stripe.Subscription.retrieve", return_value=snapshot),
            patch(
                "stripe.SubscriptionSchedule.create",
                return_value={"id": "sub_sched_derived", "phases": []},
            ),
            patch("stripe.SubscriptionSchedule.modify"),
        ):
            result = await service.change_plan(account, PRICE_HOBBY_MONTHLY)

        assert result.effective_date.timestamp() > time.time()


class TestChangePlanValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("price_id", ["price_unknown", PRICE_CREDITS_SMALL])
    async def test_target_must_be_a_subscription_plan(self, service, subscribed, price_id):
        account, _ = await subscribed()

        with pytest.raises(UpscalerException) as exc_info:
            await service.change_plan(account, price_id)

        assert_upscaler_exception(exc_info.value, MessageCode.INVALID_PRICE_ID, 400)

    @pytest.mark.asyncio
    async def test_same_plan_is_rejected(self, service, subscribed):
        account, _ = await subscribed()

        with pytest.raises(UpscalerException) as exc_info:
            await service.change_plan(account, PRICE_HOBBY_MONTHLY)

        assert_upscaler_exception(exc_info.value, MessageCode.SAME_PLAN, 400)

    @pytest.mark.asyncio
    async def test_account_without_customer_is_rejected(
        self, service, db_session, account_factory
    ):
        account = await account_factory.create_async(db_session, stripe_customer_id=None)

        with pytest.raises(UpscalerException) as exc_info:
            await service.change_plan(account, PRICE_PRO_MONTHLY)

        assert_upscaler_exception(exc_info.value, MessageCode.STRIPE_CUSTOMER_NOT_FOUND, 400)

    @pytest.mark.asyncio
    async def test_canceled_subscription_is_not_current(
        self, service, db_session, account_factory, subscription_factory
    ):
        account = await account_factory.create_async(db_session)
        await subscription_factory.create_async(
            db_session, account_id=account.id, status=SubscriptionStatus.CANCELED.value
        )

        with pytest.raises(UpscalerException) as exc_info:
            await service.change_plan(account, PRICE_PRO_MONTHLY)

        assert_upscaler_exception(exc_info.value, MessageCode.NO_ACTIVE_SUBSCRIPTION, 400)

    @pytest.mark.asyncio
    async def test_stale_local_price_is_a_conflict(self, service, subscribed):
        account, record = await subscribed()

        with patch(
            "stripe.Subscription.retrieve",
            return_value=_snapshot(record, PRICE_STARTER_MONTHLY),
        ):
            with pytest.raises(UpscalerException) as exc_info:
                await service.change_plan(account, PRICE_PRO_MONTHLY)

        assert_upscaler_exception(exc_info.value, MessageCode.SUBSCRIPTION_MODIFIED, 409)

    @pytest.mark.asyncio
    async def test_stripe_outage_is_reported(self, service, subscribed):
        account, _ = await subscribed()

        with patch(
            "stripe.Subscription.retrieve",
            side_effect=stripe.APIConnectionError("Network unreachable"),
        ):
            with pytest.raises(UpscalerException) as exc_info:
                await service.change_plan(account, PRICE_PRO_MONTHLY)

        assert_upscaler_exception(exc_info.value, MessageCode.STRIPE_ERROR, 500)
        assert exc_info.value.details == {"action": "retrieve subscription"}


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_scheduled_change_releases_schedule(
        self, service, db_session, subscribed
    ):
        account, record = await subscribed(PRICE_PRO_MONTHLY)
        record.scheduled_price_id = PRICE_HOBBY_MONTHLY
        record.stripe_schedule_id = "sub_sched_cancel"
        await db_session.commit()

        with patch("stripe.SubscriptionSchedule.release") as release:
            updated = await service.cancel_scheduled_change(account)

        release.assert_called_once_with("sub_sched_cancel")
        assert updated.scheduled_price_id is None
        assert updated.stripe_schedule_id is None
        assert updated.price_id == PRICE_PRO_MONTHLY

    @pytest.mark.asyncio
    async def test_cancel_scheduled_change_without_one(self, service, subscribed):
        account, _ = await subscribed()

        with pytest.raises(UpscalerException) as exc_info:
            await service.cancel_scheduled_change(account)

        assert_upscaler_exception(exc_info.value, MessageCode.NO_SCHEDULED_CHANGE, 400)

    @pytest.mark.asyncio
    async def test_cancel_subscription_at_period_end(self, service, ledger, subscribed):
        account, record = await subscribed()

        with patch("stripe.Subscription.modify") as modify:
            updated = await service.cancel_subscription(account, reason="Too expensive")

        modify.assert_called_once_with(
            record.stripe_subscription_id,
            cancel_at_period_end=True,
            cancellation_details={"comment": "Too expensive"},
        )
        assert updated.cancel_at_period_end is True
        assert updated.status == SubscriptionStatus.ACTIVE
        assert (await ledger.get_balance(account.id)).subscription == 150

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, service, db_session, account_factory):
        account = await account_factory.create_async(db_session)

        with pytest.raises(UpscalerException) as exc_info:
            await service.cancel_subscription(account)

        assert_upscaler_exception(exc_info.value, MessageCode.NO_ACTIVE_SUBSCRIPTION, 400)
