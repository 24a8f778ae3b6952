"""
PriceWatch — Pipeline Messages

Payloads carried on the four logical channels. All messages are frozen
pydantic models: created once, serialized to JSON for the broker, and
validated back on the consuming side.

| Channel            | Payload                  |
|--------------------|--------------------------|
| scrape.commands    | ScrapeCommand            |
| scraping.results   | ScrapingResultEvent      |
| pricedata.raw      | RawPriceDataEvent        |
| pricedata.recorded | PricePointRecordedEvent  |
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from pricewatch.config import ErrorCategory


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Command snapshot parts
# ---------------------------------------------------------------------------

class ScrapingSelectors(_Message):
    """CSS selectors snapshotted from the site configuration at dispatch."""
    product_name: str
    price: str
    stock: str
    seller_name: str | None = None


class ScrapingProfile(_Message):
    """Request identity used for every fetch of one command."""
    user_agent: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Channel payloads
# ---------------------------------------------------------------------------

class ScrapeCommand(_Message):
    """Instruction to scrape one mapping's page once."""
    mapping_id: uuid.UUID
    canonical_product_id: uuid.UUID
    seller_name: str
    exact_product_url: str
    selectors: ScrapingSelectors
    profile: ScrapingProfile = Field(default_factory=ScrapingProfile)
    parent_run_id: uuid.UUID | None = None
    issued_at: datetime = Field(default_factory=_utcnow)


class ScrapingResultEvent(_Message):
    """Outcome of one scrape attempt, consumed by the scheduler."""
    mapping_id: uuid.UUID
    run_id: uuid.UUID
    was_successful: bool
    timestamp: datetime = Field(default_factory=_utcnow)
    error_message: str | None = None
    error_code: str | None = None
    error_category: ErrorCategory | None = None
    http_status_code: int | None = None


class RawPriceDataEvent(_Message):
    """Unvalidated price/stock extracted by a successful scrape."""
    mapping_id: uuid.UUID
    canonical_product_id: uuid.UUID
    seller_name: str
    scraped_price: Decimal
    scraped_stock_status: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    source_url: str
    scraped_product_name: str | None = None
    seller_name_on_page: str | None = None
    run_id: uuid.UUID | None = None


class PricePointRecordedEvent(_Message):
    """A validated price point was appended to price history."""
    price_history_id: uuid.UUID
    mapping_id: uuid.UUID
    canonical_product_id: uuid.UUID
    seller_name: str
    price: Decimal
    stock_status: str
    source_url: str
    timestamp: datetime
