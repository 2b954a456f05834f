"""Per-object Stripe webhook handlers."""

from .base import StripeEventHandler
from .checkout import CheckoutEventHandler
from .invoices import InvoiceEventHandler
from .refunds import RefundEventHandler
from .subscriptions import SubscriptionEventHandler

__all__ = [
    "StripeEventHandler",
    "CheckoutEventHandler",
    "InvoiceEventHandler",
    "RefundEventHandler",
    "SubscriptionEventHandler",
]
