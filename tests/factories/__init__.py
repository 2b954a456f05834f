"""Test factories for billing models."""

from .base import AsyncSQLAlchemyModelFactory
from .accounts import AccountFactory
from .credit_transactions import CreditTransactionFactory
from .events import DisputeFactory, ProcessedEventFactory
from .subscriptions import SubscriptionFactory

__all__ = [
    "AsyncSQLAlchemyModelFactory",
    "AccountFactory",
    "CreditTransactionFactory",
    "DisputeFactory",
    "ProcessedEventFactory",
    "SubscriptionFactory",
]
