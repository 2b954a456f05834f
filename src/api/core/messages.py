"""Centralized message codes and default messages for API responses."""

from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel


class MessageCode(str, Enum):
    """Centralized message codes for API responses."""

    # Success codes
    SUCCESS = "SUCCESS"

    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Credit ledger
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    NO_CREDITS_FOUND = "NO_CREDITS_FOUND"
    INVALID_CREDIT_AMOUNT = "INVALID_CREDIT_AMOUNT"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"

    # Subscription changes
    INVALID_PRICE_ID = "INVALID_PRICE_ID"
    SAME_PLAN = "SAME_PLAN"
    NO_ACTIVE_SUBSCRIPTION = "NO_ACTIVE_SUBSCRIPTION"
    STRIPE_CUSTOMER_NOT_FOUND = "STRIPE_CUSTOMER_NOT_FOUND"
    SUBSCRIPTION_MODIFIED = "SUBSCRIPTION_MODIFIED"
    NO_SCHEDULED_CHANGE = "NO_SCHEDULED_CHANGE"
    INVALID_SUBSCRIPTION_STATE = "INVALID_SUBSCRIPTION_STATE"
    PLAN_CHANGED = "PLAN_CHANGED"
    PLAN_CHANGE_SCHEDULED = "PLAN_CHANGE_SCHEDULED"
    SCHEDULED_CHANGE_CANCELED = "SCHEDULED_CHANGE_CANCELED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"

    # Stripe
    STRIPE_ERROR = "STRIPE_ERROR"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    BAD_REQUEST = "BAD_REQUEST"


# Default messages for each message code
DEFAULT_MESSAGES = {
    # Success messages
    MessageCode.SUCCESS: "Operation completed successfully",
    # Authentication & Authorization
    MessageCode.UNAUTHORIZED: "Authentication required",
    MessageCode.INVALID_TOKEN: "Invalid authentication token",
    # Credit ledger
    MessageCode.INSUFFICIENT_CREDITS: "Insufficient credits",
    MessageCode.NO_CREDITS_FOUND: "No credits found for the given reference",
    MessageCode.INVALID_CREDIT_AMOUNT: "Credit amount must be a positive integer",
    MessageCode.ACCOUNT_NOT_FOUND: "Account not found",
    # Subscription changes
    MessageCode.INVALID_PRICE_ID: "Invalid price ID",
    MessageCode.SAME_PLAN: "You are already subscribed to this plan",
    MessageCode.NO_ACTIVE_SUBSCRIPTION: "No active subscription found",
    MessageCode.STRIPE_CUSTOMER_NOT_FOUND: "No Stripe customer found for this account",
    MessageCode.SUBSCRIPTION_MODIFIED: "Subscription was modified elsewhere, please refresh and try again",
    MessageCode.NO_SCHEDULED_CHANGE: "No scheduled plan change to cancel",
    MessageCode.INVALID_SUBSCRIPTION_STATE: "Subscription is in an unexpected state",
    MessageCode.PLAN_CHANGED: "Plan changed successfully",
    MessageCode.PLAN_CHANGE_SCHEDULED: "Plan change scheduled for the end of the billing period",
    MessageCode.SCHEDULED_CHANGE_CANCELED: "Scheduled plan change canceled",
    MessageCode.SUBSCRIPTION_CANCELED: "Subscription will be canceled at the end of the billing period",
    # Stripe
    MessageCode.STRIPE_ERROR: "Payment provider error",
    MessageCode.WEBHOOK_SIGNATURE_INVALID: "Invalid webhook signature",
    # Validation errors
    MessageCode.VALIDATION_ERROR: "Validation failed",
    MessageCode.INVALID_INPUT: "Invalid input provided",
    # Generic errors
    MessageCode.INTERNAL_ERROR: "Internal server error",
    MessageCode.BAD_REQUEST: "Bad request",
}

T = TypeVar("T")


class PaginationInfo(BaseModel):
    """Common pagination information."""

    total: int
    limit: int
    offset: int
    has_more: bool


class Paginated(BaseModel, Generic[T]):
    """Generic paginated response wrapper."""

    items: list[T]
    pagination: PaginationInfo


class APIResponse(BaseModel, Generic[T]):
    """Base API response model with consistent structure and proper typing."""

    message_code: MessageCode
    message: str
    data: T | None = None

    @classmethod
    def success(
        cls,
        message_code: MessageCode = MessageCode.SUCCESS,
        message: str | None = None,
        data: T | None = None,
    ) -> "APIResponse[T]":
        """Create a success response."""
        return cls(
            message_code=message_code,
            message=message or DEFAULT_MESSAGES.get(message_code, "Success"),
            data=data,
        )


def get_default_message(message_code: MessageCode) -> str:
    """Get default message for a message code."""
    return DEFAULT_MESSAGES.get(message_code, "Operation completed")
