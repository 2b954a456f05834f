"""Base factory for async SQLAlchemy models."""

from typing import Any, TypeVar, Generic
from uuid import uuid4

import factory
from sqlalchemy.ext.asyncio import AsyncSession


T = TypeVar("T")


class AsyncSQLAlchemyModelFactory(factory.Factory, Generic[T]):
    """Base factory for async SQLAlchemy models.

    ``create_async`` evaluates the factory declarations, adds the instance to
    the session and commits, so the row is visible to other sessions.
    """

    class Meta:
        abstract = True

    @classmethod
    async def create_async(cls, session: AsyncSession, **kwargs: Any) -> T:
        """Create and persist model instance to database."""
        instance = cls.build(**kwargs)
        session.add(instance)
        await session.commit()
        return instance

    @classmethod
    async def create_batch_async(
        cls, session: AsyncSession, size: int, **kwargs: Any
    ) -> list[T]:
        """Create and persist multiple model instances to database."""
        instances = cls.build_batch(size, **kwargs)
        session.add_all(instances)
        await session.commit()
        return instances


class UUIDFactory(factory.LazyFunction):
    """Factory for generating UUIDs."""

    def __init__(self) -> None:
        super().__init__(uuid4)
