"""Bearer token authentication for account-scoped endpoints."""

from uuid import UUID

from fastapi import status
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.core.constants import JWT_ALGORITHM
from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.core.context import AuthenticatedAccountContext
from src.database.models import Account
from src.utils.settings.auth import AuthSettings
from src.utils.logger import get_logger

logger = get_logger(__name__)


def decode_token(token: str) -> dict:
    auth_settings = AuthSettings()
    try:
        return jwt.decode(
            token,
            auth_settings.SUPABASE_JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=auth_settings.JWT_AUDIENCE,
        )
    except JWTError as e:
        logger.warning("JWT decoding failed", error=str(e))
        raise UpscalerException(
            MessageCode.INVALID_TOKEN,
            status.HTTP_401_UNAUTHORIZED,
            {"description": "Invalid or expired authentication token"},
        )


async def handle_jwt_auth(db: AsyncSession, token: str) -> AuthenticatedAccountContext:
    payload = decode_token(token)

    try:
        account_id = UUID(payload.get("sub") or "")
    except ValueError:
        raise UpscalerException(
            MessageCode.INVALID_TOKEN,
            status.HTTP_401_UNAUTHORIZED,
            {"description": "Token subject is not an account id"},
        )

    account = await db.get(Account, account_id)
    if not account:
        logger.warning("Token for unknown account", account_id=str(account_id))
        raise UpscalerException(MessageCode.UNAUTHORIZED, status.HTTP_401_UNAUTHORIZED)

    return AuthenticatedAccountContext(account=account, claims=payload)
