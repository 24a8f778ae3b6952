"""
PriceWatch — Product-Seller Mapping Model

One (product, seller) scraping target. The catalog collaborator owns the
row; the scheduler only updates its scheduling timestamps and failure
tracking in place.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricewatch.models.base import Base, UTCDateTime, utcnow


class ProductSellerMapping(Base):
    """
    Scraping target for one product at one seller.

    next_scrape_at is NULL until the first dispatch; afterwards the
    scheduler keeps it in the future. Index (is_active, next_scrape_at)
    backs the due-mapping query on every tick.
    """

    __tablename__ = "product_seller_mappings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    canonical_product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("products.id"),
        nullable=False,
        comment="Canonical product this listing sells",
    )
    seller_name: Mapped[str] = mapped_column(String(200), nullable=False)
    exact_product_url: Mapped[str] = mapped_column(
        String(2000),
        nullable=False,
        comment="Seller page that is fetched and parsed",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    scraping_frequency_override: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="ISO-8601 duration, e.g. 'PT30M'; NULL uses the default cadence",
    )
    site_configuration_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("site_configurations.id"),
        nullable=True,
    )

    # --- Scheduling state ---
    last_scraped_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_scrape_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_scrape_status: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="SUCCESS or FAILED for the most recent result",
    )
    last_scrape_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    consecutive_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("canonical_product_id", "seller_name", name="uq_mapping_product_seller"),
        Index("ix_mappings_active_next_scrape", "is_active", "next_scrape_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProductSellerMapping id={self.id} seller={self.seller_name!r} "
            f"active={self.is_active} next={self.next_scrape_at}>"
        )
