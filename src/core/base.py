from sqlalchemy.ext.asyncio import AsyncSession

from src.utils.logger import get_logger


class BaseService:
    """Base service class with database dependency injection."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = get_logger(self.__class__.__name__)

    async def commit(self) -> None:
        """Commit pending work, rolling the session back if the commit fails."""
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
