"""Stripe webhook verification and event dispatch."""

import json
from enum import Enum
from typing import Awaitable, Callable

import stripe  # type: ignore
import structlog

from src.core.base import BaseService
from src.modules.billing.credits.ledger import CreditLedgerService
from src.modules.billing.disputes.service import DisputeService
from src.utils.settings.stripe import StripeSettings

from .handlers import (
    CheckoutEventHandler,
    InvoiceEventHandler,
    RefundEventHandler,
    SubscriptionEventHandler,
)
from .idempotency import EventIdempotencyGate


class WebhookSignatureError(Exception):
    """The payload does not carry a valid Stripe signature."""


class WebhookPayloadError(Exception):
    """The payload is not a Stripe event."""


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED = "failed"


EventHandler = Callable[..., Awaitable[object]]

# Snapshot events whose handlers drop deliveries older than what they applied
ORDERED_EVENT_TYPES = frozenset(
    {"customer.subscription.created", "customer.subscription.updated"}
)


class StripeWebhookService(BaseService):
    def __init__(self, db, gate: EventIdempotencyGate | None = None):
        super().__init__(db)
        stripe.api_key = StripeSettings().STRIPE_SECRET_KEY.get_secret_value()
        self.gate = gate or EventIdempotencyGate(db)

        ledger = CreditLedgerService(db)
        checkout = CheckoutEventHandler(db, ledger)
        subscriptions = SubscriptionEventHandler(db, ledger)
        invoices = InvoiceEventHandler(db, ledger)
        refunds = RefundEventHandler(db, ledger)
        disputes = DisputeService(db, ledger)

        self.webhook_handlers: dict[str, EventHandler] = {
            "checkout.session.completed": checkout.handle_checkout_completed,
            "customer.subscription.created": subscriptions.handle_subscription_upserted,
            "customer.subscription.updated": subscriptions.handle_subscription_upserted,
            "customer.subscription.deleted": subscriptions.handle_subscription_deleted,
            "invoice.payment_succeeded": invoices.handle_payment_succeeded,
            "invoice.payment_failed": invoices.handle_payment_failed,
            "subscription_schedule.completed": subscriptions.handle_schedule_completed,
            "subscription_schedule.released": subscriptions.handle_schedule_released,
            "charge.refunded": refunds.handle_charge_refunded,
            "invoice.payment_refunded": refunds.handle_invoice_refunded,
            "charge.dispute.created": disputes.handle_dispute_created,
            "charge.dispute.updated": disputes.handle_dispute_updated,
            "charge.dispute.closed": disputes.handle_dispute_closed,
        }

    def construct_event(self, payload: bytes, signature: str) -> dict:
        """Verify the signature and decode the event into plain dicts."""
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookPayloadError(str(e)) from e

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, StripeSettings().STRIPE_WEBHOOK_SECRET
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(str(e)) from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise WebhookPayloadError(str(e)) from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookPayloadError("Event is missing id or type")
        if not isinstance((event.get("data") or {}).get("object"), dict):
            raise WebhookPayloadError("Event has no data object")
        return event

    async def handle_event(self, event: dict) -> WebhookOutcome:
        """Process one event at most once. Handler errors never propagate."""
        event_id = event["id"]
        event_type = event["type"]

        handler = self.webhook_handlers.get(event_type)
        if not handler:
            self.logger.debug("Unhandled webhook event type", event_type=event_type)
            return WebhookOutcome.IGNORED

        claim = await self.gate.claim(event_id, event_type)
        if claim.already_processed:
            return WebhookOutcome.DUPLICATE

        with structlog.contextvars.bound_contextvars(
            stripe_event_id=event_id, stripe_event_type=event_type
        ):
            try:
                obj = event["data"]["object"]
                if event_type in ORDERED_EVENT_TYPES:
                    await handler(obj, event_created=event.get("created"))
                else:
                    await handler(obj)
            except Exception as e:
                await self.db.rollback()
                self.logger.exception(
                    "Error handling webhook", event_type=event_type, error=str(e)
                )
                await self.gate.mark_failed(event_id, f"{type(e).__name__}: {e}")
                return WebhookOutcome.FAILED

            await self.gate.mark_completed(event_id)
            self.logger.info("Webhook event processed", event_type=event_type)
            return WebhookOutcome.PROCESSED
