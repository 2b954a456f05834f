"""Health check endpoints for monitoring."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from src.api.core.dependencies import AsyncSessionDep
from src.database.connection import ping_database
from src.utils.settings.app import AppSettings
from src.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "myimageupscaler-billing"


@router.get("")
async def health_check(db: AsyncSessionDep):
    """Readiness check including a database round trip."""
    try:
        database_ok = await ping_database(db)
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database health check failed", error=str(e))
        database_ok = False

    body = {
        "status": "healthy" if database_ok else "unhealthy",
        "service": SERVICE_NAME,
        "version": AppSettings().API_VERSION,
        "checks": {"database": "ok" if database_ok else "error"},
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )


@router.get("/liveness")
async def liveness_check():
    """Simple liveness check - indicates if service is running."""
    return {"status": "alive", "service": SERVICE_NAME}
