"""
PriceWatch — Price History Model

Append-only log of accepted price points per mapping. Never updated:
every accepted raw-price event inserts one row.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import NUMERIC, CheckConstraint, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricewatch.models.base import Base, UTCDateTime, utcnow


class PriceHistory(Base):
    """
    One validated (price, stock, timestamp) observation.

    Index (mapping_id, captured_at) supports the duplicate-window lookup
    the processor runs before every insert.
    """

    __tablename__ = "price_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mapping_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    canonical_product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    seller_name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(
        NUMERIC(12, 2),
        nullable=False,
        comment="Normalized price, always > 0",
    )
    stock_status: Mapped[str] = mapped_column(String(100), nullable=False)
    source_url: Mapped[str] = mapped_column(String(2000), nullable=False)
    scraped_product_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        comment="When the page was scraped",
    )
    recorded_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        comment="When this row was written",
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_price_history_price_positive"),
        Index("ix_price_history_mapping_captured", "mapping_id", "captured_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PriceHistory mapping_id={self.mapping_id} seller={self.seller_name!r} "
            f"price={self.price} stock={self.stock_status!r} at={self.captured_at}>"
        )
