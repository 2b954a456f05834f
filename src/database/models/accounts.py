"""Account model and related enums."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Uuid, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import Base

LEDGER_MANAGED_COLUMNS = ("subscription_credits_balance", "purchased_credits_balance")


class AccountSubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class DisputeStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    RESOLVED = "resolved"


class LedgerManagedFieldError(AttributeError):
    """Raised when code outside the credit ledger writes a balance column."""


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint(
            "subscription_credits_balance >= 0",
            name="ck_accounts_subscription_credits_non_negative",
        ),
        CheckConstraint(
            "purchased_credits_balance >= 0",
            name="ck_accounts_purchased_credits_non_negative",
        ),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid, primary_key=True, comment="Supabase Auth User ID"
    )
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_credits_balance: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    purchased_credits_balance: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    subscription_status: Mapped[AccountSubscriptionStatus] = mapped_column(
        String, nullable=False, default=AccountSubscriptionStatus.NONE
    )
    subscription_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    dispute_status: Mapped[DisputeStatus] = mapped_column(
        String, nullable=False, default=DisputeStatus.NONE
    )
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String, unique=True, nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    credit_transactions = relationship(
        "CreditTransaction", back_populates="account", lazy="noload"
    )
    subscriptions = relationship("Subscription", back_populates="account", lazy="noload")
    disputes = relationship("Dispute", back_populates="account", lazy="noload")

    @validates(*LEDGER_MANAGED_COLUMNS)
    def _guard_ledger_columns(self, key: str, value: int) -> int:
        # Initial values are allowed; persisted rows only change via the ledger.
        state = inspect(self)
        if state.persistent or state.detached:
            raise LedgerManagedFieldError(
                f"{key} is managed by CreditLedgerService and cannot be assigned"
            )
        return value

    @property
    def total_credits(self) -> int:
        return (self.subscription_credits_balance or 0) + (
            self.purchased_credits_balance or 0
        )
