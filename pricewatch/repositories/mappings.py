"""
PriceWatch — Mapping Repository

Due-mapping query for the scheduler plus site-configuration lookup by id.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import or_, select

from pricewatch.models.mapping import ProductSellerMapping
from pricewatch.models.site_configuration import SiteConfiguration
from pricewatch.repositories.base import SqlAlchemyRepository


class MappingRepository(SqlAlchemyRepository[ProductSellerMapping]):
    model = ProductSellerMapping

    async def find_due(self, now: datetime, limit: int) -> list[ProductSellerMapping]:
        """
        Active mappings whose next scrape time has elapsed or was never set.

        Never-scheduled mappings come first, then the most overdue.

        Args:
            now: Reference time (UTC).
            limit: Maximum rows returned per tick.

        Returns:
            Due mappings, oldest deadline first.
        """
        stmt = (
            select(ProductSellerMapping)
            .where(
                ProductSellerMapping.is_active.is_(True),
                or_(
                    ProductSellerMapping.next_scrape_at.is_(None),
                    ProductSellerMapping.next_scrape_at <= now,
                ),
            )
            .order_by(
                ProductSellerMapping.next_scrape_at.is_not(None),
                ProductSellerMapping.next_scrape_at,
                ProductSellerMapping.created_at,
            )
            .limit(limit)
        )
        result = await self.session.scalars(stmt)
        return list(result.all())

    async def find_site_configuration(
        self, site_configuration_id: uuid.UUID | None
    ) -> SiteConfiguration | None:
        if site_configuration_id is None:
            return None
        return await self.session.get(SiteConfiguration, site_configuration_id)
