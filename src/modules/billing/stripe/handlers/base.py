"""Shared lookups for Stripe event handlers."""

from uuid import UUID

from sqlalchemy import select

from src.core.base import BaseService
from src.database.models import Account, Subscription
from src.modules.billing.credits.ledger import CreditLedgerService


class StripeEventHandler(BaseService):
    """Base class for handlers that map Stripe objects onto local records."""

    def __init__(self, db, ledger: CreditLedgerService | None = None):
        super().__init__(db)
        self.ledger = ledger or CreditLedgerService(db)

    async def get_account(self, account_id: UUID | str | None) -> Account | None:
        if not account_id:
            return None
        try:
            account_uuid = account_id if isinstance(account_id, UUID) else UUID(account_id)
        except (ValueError, TypeError):
            self.logger.error("Invalid account id in Stripe metadata", account_id=account_id)
            return None
        return await self.db.get(Account, account_uuid)

    async def find_account_by_customer(self, customer_id: str | None) -> Account | None:
        """Account owning a Stripe customer, falling back to subscription records."""
        if not customer_id:
            return None

        result = await self.db.execute(
            select(Account).where(Account.stripe_customer_id == customer_id)
        )
        account = result.scalar_one_or_none()
        if account:
            return account

        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.stripe_customer_id == customer_id)
            .limit(1)
        )
        subscription = result.scalar_one_or_none()
        if not subscription:
            return None

        account = await self.db.get(Account, subscription.account_id)
        if account and not account.stripe_customer_id:
            account.stripe_customer_id = customer_id
            await self.commit()
            self.logger.info(
                "Linked Stripe customer to account",
                account_id=str(account.id),
                customer_id=customer_id,
            )
        return account

    async def find_subscription(self, stripe_subscription_id: str | None) -> Subscription | None:
        if not stripe_subscription_id:
            return None
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        )
        return result.scalar_one_or_none()
