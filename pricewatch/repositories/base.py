"""
PriceWatch — Repository Base

Generic find / add / save over one SQLAlchemy model bound to one session.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.models.base import Base

ModelT = TypeVar("ModelT", bound=Base)


class SqlAlchemyRepository(Generic[ModelT]):
    """
    Unit-of-work scoped repository.

    Usage:
        async with session_factory() as session:
            repo = MappingRepository(session)
            mapping = await repo.find(mapping_id)
            ...
            await repo.save()
    """

    model: type[ModelT]

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find(self, entity_id: Any) -> ModelT | None:
        return await self.session.get(self.model, entity_id)

    def add(self, entity: ModelT) -> ModelT:
        self.session.add(entity)
        return entity

    async def save(self) -> None:
        await self.session.commit()
