"""checkout.session.completed handling."""

from src.database.models import CreditPool, TransactionType
from src.modules.billing.stripe.payloads import (
    metadata_of,
    object_id,
    purchase_reference,
)

from .base import StripeEventHandler


def _credits_from_metadata(metadata: dict) -> int:
    raw = metadata.get("credits") or metadata.get("credits_amount")
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


class CheckoutEventHandler(StripeEventHandler):
    async def handle_checkout_completed(self, session: dict) -> None:
        mode = session.get("mode")
        metadata = metadata_of(session)

        account = await self.get_account(metadata.get("user_id"))
        if not account:
            # Nothing to retry against: the session will never carry a user id
            self.logger.warning(
                "Checkout session without a known user",
                session_id=session.get("id"),
                user_id=metadata.get("user_id"),
            )
            return

        customer_id = object_id(session.get("customer"))
        if customer_id and not account.stripe_customer_id:
            account.stripe_customer_id = customer_id
            await self.commit()

        if mode == "subscription":
            # Subscription credits arrive with the first paid invoice
            self.logger.info(
                "Subscription checkout completed",
                account_id=str(account.id),
                subscription_id=object_id(session.get("subscription")),
            )
            return

        if mode != "payment":
            self.logger.info("Ignoring checkout session mode", mode=mode)
            return

        credits = _credits_from_metadata(metadata)
        if credits <= 0:
            self.logger.warning(
                "Credit pack checkout without a credit amount",
                session_id=session.get("id"),
                metadata=metadata,
            )
            return

        reference_id = purchase_reference(
            object_id(session.get("payment_intent")), session.get("id")
        )

        result = await self.ledger.grant_to_pool(
            account.id,
            credits,
            CreditPool.PURCHASED,
            reference_id=reference_id,
            description=f"Purchased {credits} credits",
            transaction_type=TransactionType.PURCHASE,
            idempotent=True,
        )
        self.logger.info(
            "Credit pack granted",
            account_id=str(account.id),
            credits=result.applied,
            reference_id=reference_id,
            duplicate=result.duplicate,
        )
