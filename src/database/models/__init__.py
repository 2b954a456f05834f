"""Database models for the MyImageUpscaler billing service."""

from .accounts import (
    Account,
    AccountSubscriptionStatus,
    DisputeStatus,
    LedgerManagedFieldError,
)
from .base import Base
from .credit_transactions import (
    GRANT_TRANSACTION_TYPES,
    CreditPool,
    CreditTransaction,
    TransactionType,
)
from .disputes import Dispute, DisputeRecordStatus
from .processed_events import ProcessedEvent, ProcessedEventStatus
from .subscriptions import Subscription, SubscriptionStatus

__all__ = [
    # Base
    "Base",
    # Enums
    "AccountSubscriptionStatus",
    "DisputeStatus",
    "TransactionType",
    "CreditPool",
    "SubscriptionStatus",
    "ProcessedEventStatus",
    "DisputeRecordStatus",
    "GRANT_TRANSACTION_TYPES",
    # Models
    "Account",
    "CreditTransaction",
    "Subscription",
    "ProcessedEvent",
    "Dispute",
    # Errors
    "LedgerManagedFieldError",
]
