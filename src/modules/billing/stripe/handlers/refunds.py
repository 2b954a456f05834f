"""Refund events: take back the credits the refunded payment granted."""

from src.modules.billing.credits.ledger import NoCreditsFoundError
from src.modules.billing.stripe.payloads import (
    invoice_reference,
    object_id,
    purchase_reference,
)

from .base import StripeEventHandler


class RefundEventHandler(StripeEventHandler):
    async def handle_charge_refunded(self, charge: dict) -> None:
        if not charge.get("amount_refunded"):
            self.logger.info("Charge refunded nothing", charge_id=charge.get("id"))
            return

        customer_id = object_id(charge.get("customer"))
        account = await self.find_account_by_customer(customer_id)
        if not account:
            self.logger.warning(
                "No account for refunded charge",
                charge_id=charge.get("id"),
                customer_id=customer_id,
            )
            return

        invoice_id = object_id(charge.get("invoice"))
        payment_intent_id = object_id(charge.get("payment_intent"))
        if invoice_id:
            reference_id = invoice_reference(invoice_id)
        elif payment_intent_id:
            reference_id = purchase_reference(payment_intent_id)
        else:
            self.logger.warning("Refunded charge has no reference", charge_id=charge.get("id"))
            return

        await self._clawback(account, reference_id, reason=f"Refund: {charge.get('id')}")

    async def handle_invoice_refunded(self, invoice: dict) -> None:
        """invoice.payment_refunded: the invoice's subscription grant is reversed."""
        customer_id = object_id(invoice.get("customer"))
        account = await self.find_account_by_customer(customer_id)
        if not account:
            self.logger.warning(
                "No account for refunded invoice",
                invoice_id=invoice.get("id"),
                customer_id=customer_id,
            )
            return

        await self._clawback(
            account,
            invoice_reference(invoice["id"]),
            reason=f"Invoice refund: {invoice['id']}",
        )

    async def _clawback(self, account, reference_id: str, reason: str) -> None:
        try:
            result = await self.ledger.clawback_by_reference(
                account.id, reference_id, reason=reason
            )
        except NoCreditsFoundError:
            self.logger.warning(
                "Refund without a matching grant",
                account_id=str(account.id),
                reference_id=reference_id,
            )
            return

        self.logger.info(
            "Refund clawback applied",
            account_id=str(account.id),
            reference_id=reference_id,
            clawed=result.total_clawed,
            shortfall=result.shortfall,
        )
