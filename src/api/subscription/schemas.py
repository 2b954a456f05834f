"""Subscription API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from src.api.core.messages import APIResponse


class ChangePlanRequest(BaseModel):
    target_price_id: str = Field(..., min_length=1, max_length=255)


class CancelSubscriptionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class SubscriptionModel(BaseModel):
    stripe_subscription_id: str
    status: str
    price_id: str
    plan: str | None = None
    plan_name: str | None = None
    credits_per_month: int | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    scheduled_price_id: str | None = None
    scheduled_plan: str | None = None
    scheduled_change_date: datetime | None = None


class AccountSubscriptionModel(BaseModel):
    subscription_status: str
    subscription_tier: str | None
    subscription: SubscriptionModel | None = None


class PlanChangeModel(BaseModel):
    subscription_id: str
    status: str
    effective_immediately: bool
    current_price_id: str
    new_price_id: str
    credits_added: int = 0
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    schedule_id: str | None = None
    effective_date: datetime | None = None


AccountSubscriptionResponse = APIResponse[AccountSubscriptionModel]
SubscriptionResponse = APIResponse[SubscriptionModel]
PlanChangeResponse = APIResponse[PlanChangeModel]
