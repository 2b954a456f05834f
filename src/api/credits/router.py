"""Credits domain router."""

from fastapi import APIRouter, Query

from src.api.core.constants import (
    CREDIT_HISTORY_DEFAULT_LIMIT,
    CREDIT_HISTORY_MAX_LIMIT,
)
from src.api.core.dependencies import CreditLedgerServiceDep, CurrentAccountDep
from src.api.core.messages import APIResponse, MessageCode, Paginated, PaginationInfo
from .schemas import (
    CreditBalanceModel,
    CreditBalanceResponse,
    CreditHistoryResponse,
    CreditTransactionModel,
)

router = APIRouter(
    prefix="/credits",
    tags=["credits"],
)


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_credit_balance(
    current_account: CurrentAccountDep,
    ledger: CreditLedgerServiceDep,
) -> CreditBalanceResponse:
    """Current balance of both credit pools."""
    balance = await ledger.get_balance(current_account.account_id)
    return APIResponse.success(
        message_code=MessageCode.SUCCESS,
        data=CreditBalanceModel(
            subscription_credits=balance.subscription,
            purchased_credits=balance.purchased,
            total_credits=balance.total,
        ),
    )


@router.get("/history", response_model=CreditHistoryResponse)
async def get_credit_history(
    current_account: CurrentAccountDep,
    ledger: CreditLedgerServiceDep,
    limit: int = CREDIT_HISTORY_DEFAULT_LIMIT,
    offset: int = Query(default=0, ge=0),
) -> CreditHistoryResponse:
    """Ledger rows for the account, newest first."""
    limit = max(1, min(limit, CREDIT_HISTORY_MAX_LIMIT))
    rows, total = await ledger.get_transactions(
        current_account.account_id, limit=limit, offset=offset
    )
    items = [CreditTransactionModel.model_validate(row) for row in rows]
    return APIResponse.success(
        message_code=MessageCode.SUCCESS,
        data=Paginated[CreditTransactionModel](
            items=items,
            pagination=PaginationInfo(
                total=total,
                limit=limit,
                offset=offset,
                has_more=offset + len(items) < total,
            ),
        ),
    )
