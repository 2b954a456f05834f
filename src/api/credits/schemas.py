"""Credits API schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from src.api.core.messages import APIResponse, Paginated


class CreditBalanceModel(BaseModel):
    subscription_credits: int
    purchased_credits: int
    total_credits: int


class CreditTransactionModel(BaseModel):
    id: UUID
    amount: int
    transaction_type: str
    credit_pool: str
    reference_id: str | None
    description: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


CreditBalanceResponse = APIResponse[CreditBalanceModel]
CreditHistoryResponse = APIResponse[Paginated[CreditTransactionModel]]
