"""PriceWatch — Product lookups (read-only catalog)."""

from __future__ import annotations

import uuid

from sqlalchemy import select

from pricewatch.models.product import Product
from pricewatch.repositories.base import SqlAlchemyRepository


class ProductRepository(SqlAlchemyRepository[Product]):
    model = Product

    async def exists(self, product_id: uuid.UUID) -> bool:
        result = await self.session.execute(select(Product.id).where(Product.id == product_id))
        return result.scalar_one_or_none() is not None
