"""PriceWatch — Price History Repository (append-only)."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select

from pricewatch.models.price_history import PriceHistory
from pricewatch.repositories.base import SqlAlchemyRepository


class PriceHistoryRepository(SqlAlchemyRepository[PriceHistory]):
    model = PriceHistory

    async def find_duplicate(
        self,
        mapping_id: uuid.UUID,
        price: Decimal,
        stock_status: str,
        captured_at: datetime,
        window: timedelta,
    ) -> PriceHistory | None:
        """Return an existing row for the same mapping/price/stock within +/- window."""
        stmt = (
            select(PriceHistory)
            .where(
                PriceHistory.mapping_id == mapping_id,
                PriceHistory.price == price,
                PriceHistory.stock_status == stock_status,
                PriceHistory.captured_at >= captured_at - window,
                PriceHistory.captured_at <= captured_at + window,
            )
            .limit(1)
        )
        result = await self.session.scalars(stmt)
        return result.first()
