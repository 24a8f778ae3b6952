"""PriceWatch — Scraper Layer (fetch through the proxy pool, extract with selectors)"""

from __future__ import annotations

import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from pricewatch.config import ErrorCategory


class ScrapeTimings(BaseModel):
    """Millisecond timing breakdown of one attempt."""

    model_config = ConfigDict(frozen=True)

    total_ms: float = 0.0
    page_load_ms: float | None = None
    parse_ms: float | None = None


class ScrapingResult(BaseModel):
    """Outcome of fetch → extract for one command. Never mutated once built."""

    model_config = ConfigDict(frozen=True)

    success: bool
    product_name: str | None = None
    price: Decimal | None = None
    price_raw: str | None = None
    stock_status: str | None = None
    seller_name_on_page: str | None = None

    error_code: str | None = None
    error_message: str | None = None
    error_category: ErrorCategory | None = None
    http_status_code: int | None = None

    timings: ScrapeTimings = ScrapeTimings()
    proxy_used: str | None = None
    proxy_id: uuid.UUID | None = None
    raw_html_snippet: str | None = None
