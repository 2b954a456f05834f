"""Chargeback handling: hold credits while a dispute is open."""

import math

import stripe  # type: ignore
from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.database.models import Account, Dispute, DisputeRecordStatus, DisputeStatus
from src.modules.billing.constants import CENTS_PER_CREDIT
from src.modules.billing.credits.ledger import AUTO_POOL, ClawbackResult
from src.modules.billing.stripe.handlers.base import StripeEventHandler
from src.modules.billing.stripe.payloads import dispute_reference, object_id
from src.utils.settings.stripe import StripeSettings


def credits_for_amount(amount_cents: int) -> int:
    """Credits equivalent to a disputed amount, rounded up."""
    return math.ceil(amount_cents / CENTS_PER_CREDIT)


class DisputeService(StripeEventHandler):
    def __init__(self, db, ledger=None):
        super().__init__(db, ledger)
        stripe.api_key = StripeSettings().STRIPE_SECRET_KEY.get_secret_value()

    async def handle_dispute_created(self, dispute: dict) -> ClawbackResult | None:
        dispute_id = dispute["id"]
        if await self.get_dispute(dispute_id):
            self.logger.info("Dispute already recorded", dispute_id=dispute_id)
            return None

        charge_id = object_id(dispute.get("charge"))
        account = await self._account_for_charge(charge_id)
        if not account:
            # Raising marks the event failed so it can be investigated
            raise UpscalerException(
                MessageCode.ACCOUNT_NOT_FOUND,
                status.HTTP_404_NOT_FOUND,
                details={"dispute_id": dispute_id, "charge_id": charge_id},
            )

        amount_cents = int(dispute.get("amount") or 0)
        credits_held = credits_for_amount(amount_cents)

        account.dispute_status = DisputeStatus.PENDING.value
        self.db.add(
            Dispute(
                dispute_id=dispute_id,
                account_id=account.id,
                charge_id=charge_id,
                amount_cents=amount_cents,
                credits_held=credits_held,
                status=DisputeRecordStatus.CREATED.value,
                stripe_status=dispute.get("status"),
                reason=dispute.get("reason"),
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            self.logger.info("Dispute recorded concurrently", dispute_id=dispute_id)
            return None

        result = None
        if credits_held > 0:
            result = await self.ledger.clawback(
                account.id,
                credits_held,
                AUTO_POOL,
                reference_id=dispute_reference(dispute_id),
                reason=f"Dispute hold: {dispute_id}",
            )

        self.logger.warning(
            "Dispute opened",
            account_id=str(account.id),
            dispute_id=dispute_id,
            amount_cents=amount_cents,
            credits_held=credits_held,
            clawed=result.total_clawed if result else 0,
            reason=dispute.get("reason"),
        )
        return result

    async def handle_dispute_updated(self, dispute: dict) -> None:
        record = await self._require_dispute(dispute)
        if not record:
            return

        stripe_status = dispute.get("status")
        record.stripe_status = stripe_status
        if stripe_status == "won":
            await self._resolve(record, DisputeRecordStatus.WON)

        await self.commit()
        self.logger.info(
            "Dispute updated", dispute_id=record.dispute_id, stripe_status=stripe_status
        )

    async def handle_dispute_closed(self, dispute: dict) -> None:
        """Final outcome. Held credits stay clawed back either way."""
        record = await self._require_dispute(dispute)
        if not record:
            return

        stripe_status = dispute.get("status")
        record.stripe_status = stripe_status
        if stripe_status == "won":
            await self._resolve(record, DisputeRecordStatus.WON)
        elif stripe_status == "lost":
            await self._resolve(record, DisputeRecordStatus.LOST)
        else:
            self.logger.warning(
                "Dispute closed with unexpected status",
                dispute_id=record.dispute_id,
                stripe_status=stripe_status,
            )

        await self.commit()
        self.logger.info(
            "Dispute closed",
            account_id=str(record.account_id),
            dispute_id=record.dispute_id,
            outcome=record.status,
            credits_held=record.credits_held,
        )

    async def get_dispute(self, dispute_id: str) -> Dispute | None:
        result = await self.db.execute(
            select(Dispute).where(Dispute.dispute_id == dispute_id)
        )
        return result.scalar_one_or_none()

    async def _require_dispute(self, dispute: dict) -> Dispute | None:
        record = await self.get_dispute(dispute["id"])
        if not record:
            self.logger.warning("Update for unknown dispute", dispute_id=dispute["id"])
        return record

    async def _resolve(self, record: Dispute, outcome: DisputeRecordStatus) -> None:
        record.status = outcome.value
        account = await self.db.get(Account, record.account_id)
        if account:
            account.dispute_status = DisputeStatus.RESOLVED.value

    async def _account_for_charge(self, charge_id: str | None) -> Account | None:
        if not charge_id:
            return None
        charge = stripe.Charge.retrieve(charge_id)
        return await self.find_account_by_customer(object_id(charge.get("customer")))
