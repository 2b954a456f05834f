"""Invoice payment events: the only path that grants recurring credits."""

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
    invoice_price_id,
    invoice_reference,
    invoice_subscription_id,
    object_id,
)

from .base import StripeEventHandler

# Proration invoices from immediate upgrades; the upgrade itself grants credits
NON_GRANTING_BILLING_REASONS = ("subscription_update",)


class InvoiceEventHandler(StripeEventHandler):
    async def _resolve_account(self, invoice: dict, record) -> Account | None:
        account = await self.find_account_by_customer(object_id(invoice.get("customer")))
        if not account and record:
            account = await self.db.get(Account, record.account_id)
        return account

    async def handle_payment_succeeded(self, invoice: dict) -> None:
        invoice_id = invoice["id"]
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            self.logger.info("Invoice is not for a subscription", invoice_id=invoice_id)
            return

        record = await self.find_subscription(subscription_id)
        account = await self._resolve_account(invoice, record)
        if not account:
            self.logger.error(
                "No account for paid invoice",
                invoice_id=invoice_id,
                customer_id=object_id(invoice.get("customer")),
            )
            return

        price_id = invoice_price_id(invoice) or (record.price_id if record else None)
        plan = get_plan_for_price_id(price_id)
        if not plan:
            self.logger.warning(
                "Paid invoice for a price outside the plan catalog",
                invoice_id=invoice_id,
                price_id=price_id,
            )
            return

        account.subscription_status = AccountSubscriptionStatus.ACTIVE.value
        account.subscription_tier = plan.key.value
        if record and record.status == SubscriptionStatus.PAST_DUE:
            record.status = SubscriptionStatus.ACTIVE.value
        await self.commit()

        billing_reason = invoice.get("billing_reason")
        if billing_reason in NON_GRANTING_BILLING_REASONS:
            self.logger.info(
                "Skipping credits for proration invoice",
                invoice_id=invoice_id,
                billing_reason=billing_reason,
            )
            return
        if not invoice.get("amount_paid"):
            self.logger.info("Skipping credits for zero-amount invoice", invoice_id=invoice_id)
            return

        if record and _converts_trial(record, invoice_id):
            await self._convert_trial(account, record, plan, invoice_id)
            return

        result = await self.ledger.grant_to_pool(
            account.id,
            plan.credits_per_month,
            CreditPool.SUBSCRIPTION,
            reference_id=invoice_reference(invoice_id),
            description=f"{plan.name} monthly credits",
            max_rollover=plan.max_rollover,
            transaction_type=TransactionType.SUBSCRIPTION,
            idempotent=True,
        )
        self.logger.info(
            "Subscription credits granted",
            account_id=str(account.id),
            invoice_id=invoice_id,
            requested=plan.credits_per_month,
            applied=result.applied,
            balance=result.new_balance,
            max_rollover=plan.max_rollover,
            duplicate=result.duplicate,
        )

    async def _convert_trial(
        self,
        account: Account,
        record: Subscription,
        plan: SubscriptionPlanConfig,
        invoice_id: str,
    ) -> None:
        """First paid invoice after a trial: top up to the allotment only."""
        record.trial_converted_invoice_id = invoice_id
        await self.commit()

        result = await self.ledger.top_up_pool(
            account.id,
            plan.credits_per_month,
            CreditPool.SUBSCRIPTION,
            reference_id=invoice_reference(invoice_id),
            description=f"{plan.name} trial conversion top-up",
        )
        self.logger.info(
            "Trial converted on first paid invoice",
            account_id=str(account.id),
            invoice_id=invoice_id,
            credits=result.applied,
            duplicate=result.duplicate,
        )

    async def handle_payment_failed(self, invoice: dict) -> None:
        subscription_id = invoice_subscription_id(invoice)
        record = await self.find_subscription(subscription_id)
        account = await self._resolve_account(invoice, record)
        if not account:
            self.logger.error(
                "No account for failed invoice",
                invoice_id=invoice.get("id"),
                customer_id=object_id(invoice.get("customer")),
            )
            return

        account.subscription_status = AccountSubscriptionStatus.PAST_DUE.value
        if record:
            record.status = SubscriptionStatus.PAST_DUE.value
        await self.commit()
        self.logger.warning(
            "Invoice payment failed",
            account_id=str(account.id),
            invoice_id=invoice.get("id"),
            attempt_count=invoice.get("attempt_count"),
        )


def _converts_trial(record: Subscription, invoice_id: str) -> bool:
    """Whether this invoice is the one that ends the record's trial.

    The subscription update for the same conversion may arrive before or after
    the invoice; both claim the same invoice and top up instead of granting.
    """
    if record.trial_converted_invoice_id:
        return record.trial_converted_invoice_id == invoice_id
    return record.status == SubscriptionStatus.TRIALING
