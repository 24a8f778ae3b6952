"""
PriceWatch — Canonical Product Model

Catalog entry owned by the catalog collaborator. The scraping core only
reads it to confirm a canonical product exists before recording a price.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricewatch.models.base import Base, UTCDateTime, utcnow


class Product(Base):
    """Canonical product that seller mappings point at."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Canonical product identifier",
    )
    name: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Canonical product display name",
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r}>"
