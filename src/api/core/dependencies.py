from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.core.context import AuthenticatedAccountContext
from src.modules.accounts.auth import handle_jwt_auth
from src.modules.billing.credits.ledger import CreditLedgerService
from src.modules.billing.stripe.service import StripeWebhookService
from src.modules.billing.subscriptions.service import SubscriptionChangeService


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session from app state."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_credit_ledger_service(
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> CreditLedgerService:
    return CreditLedgerService(db)


async def get_subscription_change_service(
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> SubscriptionChangeService:
    return SubscriptionChangeService(db)


async def get_stripe_webhook_service(
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> StripeWebhookService:
    return StripeWebhookService(db)


async def get_current_account(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db_session)],
) -> AuthenticatedAccountContext:
    """Resolve the calling account from the ``Authorization: Bearer`` header."""
    authorization = request.headers.get("Authorization", "")
    if not authorization:
        raise UpscalerException(MessageCode.UNAUTHORIZED, status.HTTP_401_UNAUTHORIZED)

    auth_parts = authorization.split(" ")
    if len(auth_parts) != 2 or auth_parts[0].lower() != "bearer":
        raise UpscalerException(
            MessageCode.INVALID_TOKEN,
            status.HTTP_401_UNAUTHORIZED,
            {"description": "Authorization header must be 'Bearer <token>'"},
        )

    return await handle_jwt_auth(db, auth_parts[1])


AsyncSessionDep = Annotated[AsyncSession, Depends(get_db_session)]
CurrentAccountDep = Annotated[AuthenticatedAccountContext, Depends(get_current_account)]
CreditLedgerServiceDep = Annotated[CreditLedgerService, Depends(get_credit_ledger_service)]
SubscriptionChangeServiceDep = Annotated[
    SubscriptionChangeService, Depends(get_subscription_change_service)
]
StripeWebhookServiceDep = Annotated[StripeWebhookService, Depends(get_stripe_webhook_service)]
