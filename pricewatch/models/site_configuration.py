"""
PriceWatch — Site Configuration Model

Per-domain CSS selector set. Owned externally, consumed read-only by the
scheduler when it snapshots selectors into a ScrapeCommand.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricewatch.models.base import Base, UTCDateTime, utcnow


class SiteConfiguration(Base):
    """Selector set and request profile for one seller domain."""

    __tablename__ = "site_configurations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    domain: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Seller domain, e.g. 'shop.example.com'",
    )
    product_name_selector: Mapped[str] = mapped_column(String(500), nullable=False)
    price_selector: Mapped[str] = mapped_column(String(500), nullable=False)
    stock_selector: Mapped[str] = mapped_column(String(500), nullable=False)
    seller_name_selector: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
        comment="Optional; absence of a match never fails a scrape",
    )
    user_agent: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
        comment="Overrides DEFAULT_USER_AGENT for this domain",
    )
    additional_headers: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Extra request headers sent with every fetch",
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SiteConfiguration domain={self.domain!r} price={self.price_selector!r}>"
