"""Append-only credit ledger rows."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    CLAWBACK = "clawback"
    TRIAL = "trial"


class CreditPool(str, Enum):
    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"
    MIXED = "mixed"


GRANT_TRANSACTION_TYPES = (
    TransactionType.SUBSCRIPTION,
    TransactionType.PURCHASE,
    TransactionType.TRIAL,
)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_account_reference", "account_id", "reference_id"),
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(String, nullable=False)
    credit_pool: Mapped[CreditPool] = mapped_column(String, nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    account = relationship("Account", back_populates="credit_transactions")
