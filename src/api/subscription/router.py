"""Subscription domain router."""

from fastapi import APIRouter

from src.api.core.dependencies import CurrentAccountDep, SubscriptionChangeServiceDep
from src.api.core.messages import APIResponse, MessageCode
from src.database.models import Subscription
from src.modules.billing.constants import get_plan_for_price_id
from src.modules.billing.stripe.payloads import as_utc
from src.modules.billing.subscriptions.service import PlanChangeKind
from .schemas import (
    AccountSubscriptionModel,
    AccountSubscriptionResponse,
    CancelSubscriptionRequest,
    ChangePlanRequest,
    PlanChangeModel,
    PlanChangeResponse,
    SubscriptionModel,
    SubscriptionResponse,
)

router = APIRouter(
    prefix="/subscription",
    tags=["subscription"],
)


def _subscription_model(record: Subscription) -> SubscriptionModel:
    plan = get_plan_for_price_id(record.price_id)
    scheduled_plan = get_plan_for_price_id(record.scheduled_price_id)
    return SubscriptionModel(
        stripe_subscription_id=record.stripe_subscription_id,
        status=record.status,
        price_id=record.price_id,
        plan=plan.key.value if plan else None,
        plan_name=plan.name if plan else None,
        credits_per_month=plan.credits_per_month if plan else None,
        current_period_start=as_utc(record.current_period_start),
        current_period_end=as_utc(record.current_period_end),
        cancel_at_period_end=bool(record.cancel_at_period_end),
        scheduled_price_id=record.scheduled_price_id,
        scheduled_plan=scheduled_plan.key.value if scheduled_plan else None,
        scheduled_change_date=as_utc(record.scheduled_change_date),
    )


@router.get("", response_model=AccountSubscriptionResponse)
async def get_subscription(
    current_account: CurrentAccountDep,
    subscription_service: SubscriptionChangeServiceDep,
) -> AccountSubscriptionResponse:
    account = current_account.account
    record = await subscription_service.get_current_subscription(account)
    return APIResponse.success(
        data=AccountSubscriptionModel(
            subscription_status=account.subscription_status,
            subscription_tier=account.subscription_tier,
            subscription=_subscription_model(record) if record else None,
        )
    )


@router.post("/change", response_model=PlanChangeResponse)
async def change_plan(
    body: ChangePlanRequest,
    current_account: CurrentAccountDep,
    subscription_service: SubscriptionChangeServiceDep,
) -> PlanChangeResponse:
    """Upgrade immediately with proration, or schedule a downgrade for period end."""
    result = await subscription_service.change_plan(
        current_account.account, body.target_price_id
    )
    message_code = (
        MessageCode.PLAN_CHANGED
        if result.kind == PlanChangeKind.IMMEDIATE
        else MessageCode.PLAN_CHANGE_SCHEDULED
    )
    return APIResponse.success(
        message_code=message_code,
        data=PlanChangeModel(
            subscription_id=result.subscription_id,
            status=result.kind.value,
            effective_immediately=result.effective_immediately,
            current_price_id=result.current_price_id,
            new_price_id=result.new_price_id,
            credits_added=result.credits_added,
            current_period_start=result.current_period_start,
            current_period_end=result.current_period_end,
            schedule_id=result.schedule_id,
            effective_date=result.effective_date,
        ),
    )


@router.post("/cancel-scheduled", response_model=SubscriptionResponse)
async def cancel_scheduled_change(
    current_account: CurrentAccountDep,
    subscription_service: SubscriptionChangeServiceDep,
) -> SubscriptionResponse:
    record = await subscription_service.cancel_scheduled_change(current_account.account)
    return APIResponse.success(
        message_code=MessageCode.SCHEDULED_CHANGE_CANCELED,
        data=_subscription_model(record),
    )


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    current_account: CurrentAccountDep,
    subscription_service: SubscriptionChangeServiceDep,
    body: CancelSubscriptionRequest | None = None,
) -> SubscriptionResponse:
    record = await subscription_service.cancel_subscription(
        current_account.account, reason=body.reason if body else None
    )
    return APIResponse.success(
        message_code=MessageCode.SUBSCRIPTION_CANCELED,
        data=_subscription_model(record),
    )
