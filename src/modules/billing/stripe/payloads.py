"""Helpers for reading Stripe objects across API versions.

Webhook payloads arrive as plain dicts while SDK responses are StripeObjects;
both support ``.get`` so the helpers accept either.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

# Interval lengths used when Stripe omits the period end
_INTERVAL_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}


def to_datetime(timestamp: int | float | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, timezone.utc)


def object_id(value: Any) -> str | None:
    """Id of an expandable field, whether expanded or not."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def subscription_items(subscription: Any) -> list:
    items = subscription.get("items") or {}
    return list(items.get("data") or [])


def subscription_price_id(subscription: Any) -> str | None:
    items = subscription_items(subscription)
    if not items:
        return None
    return object_id(items[0].get("price"))


def subscription_item_id(subscription: Any) -> str | None:
    items = subscription_items(subscription)
    return items[0].get("id") if items else None


def period_bounds(subscription: Any) -> tuple[datetime | None, datetime | None]:
    """Current period bounds from the subscription root or its first item.

    Newer API versions only carry the period on subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if not start or not end:
        items = subscription_items(subscription)
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return to_datetime(start), to_datetime(end)


def derive_period_end(subscription: Any, now: datetime | None = None) -> datetime | None:
    """Estimate the current period end from the billing anchor and interval."""
    anchor = to_datetime(subscription.get("billing_cycle_anchor"))
    items = subscription_items(subscription)
    if not anchor or not items:
        return None

    price = items[0].get("price") or {}
    recurring = price.get("recurring") if not isinstance(price, str) else None
    if not recurring:
        return None

    days = _INTERVAL_DAYS.get(recurring.get("interval"))
    if not days:
        return None
    step = timedelta(days=days * (recurring.get("interval_count") or 1))

    now = now or datetime.now(timezone.utc)
    period_end = anchor + step
    while period_end <= now:
        period_end += step
    return period_end


def invoice_subscription_id(invoice: Any) -> str | None:
    subscription = invoice.get("subscription")
    if subscription:
        return object_id(subscription)
    # Basil API versions moved the reference under parent
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def _is_proration(line: Any) -> bool:
    if line.get("proration"):
        return True
    # Basil API versions report it on the line's parent
    parent = line.get("parent") or {}
    for key in ("subscription_item_details", "invoice_item_details"):
        if (parent.get(key) or {}).get("proration"):
            return True
    return False


def _line_price_id(line: Any) -> str | None:
    price = line.get("price")
    if price:
        return object_id(price)
    pricing = line.get("pricing") or {}
    price_details = pricing.get("price_details") or {}
    if price_details.get("price"):
        return object_id(price_details.get("price"))
    plan = line.get("plan")
    return object_id(plan) if plan else None


def invoice_price_id(invoice: Any) -> str | None:
    """Price the invoice bills for, ignoring proration lines.

    Renewals after a mid-period plan change carry proration lines for the
    previous price ahead of the line for the current one.
    """
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        if _is_proration(line):
            continue
        price_id = _line_price_id(line)
        if price_id:
            return price_id
    return None


def metadata_of(obj: Any) -> dict:
    return dict(obj.get("metadata") or {})


def invoice_reference(invoice_id: str) -> str:
    return f"invoice_{invoice_id}"


def purchase_reference(payment_intent_id: str | None, session_id: str | None = None) -> str:
    if payment_intent_id:
        return f"pi_{payment_intent_id}"
    return f"session_{session_id}"


def dispute_reference(dispute_id: str) -> str:
    return f"dispute_{dispute_id}"


def trial_reference(subscription_id: str) -> str:
    return f"trial_{subscription_id}"


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes read back from the database as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
