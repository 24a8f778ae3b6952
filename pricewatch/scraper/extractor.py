"""
PriceWatch — Page Extractor

Applies a command's selector snapshot to fetched HTML:

    product_name  required
    price         required, parsed to Decimal (locale-aware)
    stock         required
    seller_name   optional, a missing match or bad selector never fails the attempt

A required selector with no match or empty text raises ExtractionError
(category EXTRACTION). Unparseable price text raises PriceParseError
(category PARSE). A page whose price is missing and whose body is little
more than script tags is reported as JAVASCRIPT_CONTENT_DETECTED, since
those sites render prices client-side.
"""

from __future__ import annotations

from decimal import Decimal

import structlog
from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict
from soupsieve import SelectorSyntaxError

from pricewatch.errors import ExtractionError
from pricewatch.pipeline.messages import ScrapingSelectors
from pricewatch.utils.price_parse import parse_price
from pricewatch.utils.text import clean_text

logger = structlog.get_logger(__name__)

# Visible-text length under which a page with scripts is treated as JS-rendered
_MINIMAL_TEXT_CHARS: int = 200
_MAX_FIELD_CHARS: int = 500


class ExtractedPage(BaseModel):
    """Values pulled from one product page."""

    model_config = ConfigDict(frozen=True)

    product_name: str
    price: Decimal
    price_raw: str
    stock_status: str
    seller_name_on_page: str | None = None


def _select_text(soup: BeautifulSoup, selector: str | None) -> str | None:
    """Stripped text of the first element matching a CSS selector, or None."""
    if not selector:
        return None
    try:
        element = soup.select_one(selector)
    except SelectorSyntaxError as e:
        raise ExtractionError(f"Invalid CSS selector {selector!r}: {e}", code="INVALID_SELECTOR") from e
    if element is None:
        return None
    # <meta content="..."> and similar attribute-only nodes carry no text
    text = element.get_text(" ", strip=True) or element.get("content") or ""
    if isinstance(text, list):
        text = " ".join(text)
    return clean_text(text, _MAX_FIELD_CHARS) or None


def _looks_javascript_rendered(soup: BeautifulSoup) -> bool:
    if soup.find("script") is None:
        return False
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return len(soup.get_text(" ", strip=True)) < _MINIMAL_TEXT_CHARS


class PageExtractor:
    """Selector-driven extraction of name / price / stock / seller name."""

    def extract(self, html: str, selectors: ScrapingSelectors) -> ExtractedPage:
        """
        Extract product fields from an HTML document.

        Args:
            html: Page body.
            selectors: Selector snapshot from the scrape command.

        Returns:
            ExtractedPage with a parsed Decimal price.

        Raises:
            ExtractionError: Empty document or a required selector missing.
            PriceParseError: Price text found but not numeric.
        """
        if not html or not html.strip():
            raise ExtractionError("Fetched document is empty", code="EMPTY_CONTENT")

        soup = BeautifulSoup(html, "html.parser")

        price_raw = _select_text(soup, selectors.price)
        if price_raw is None:
            if _looks_javascript_rendered(soup):
                raise ExtractionError(
                    f"Price selector {selectors.price!r} matched nothing; "
                    "page content appears to be rendered by JavaScript",
                    code="JAVASCRIPT_CONTENT_DETECTED",
                )
            raise ExtractionError(f"Price selector {selectors.price!r} matched nothing")

        product_name = _select_text(soup, selectors.product_name)
        if product_name is None:
            raise ExtractionError(f"Product name selector {selectors.product_name!r} matched nothing")

        stock_status = _select_text(soup, selectors.stock)
        if stock_status is None:
            raise ExtractionError(f"Stock selector {selectors.stock!r} matched nothing")

        price = parse_price(price_raw)
        try:
            seller_name = _select_text(soup, selectors.seller_name)
        except ExtractionError as e:
            logger.warning(
                "extraction_seller_selector_invalid",
                selector=selectors.seller_name,
                error=str(e),
                source="extractor",
            )
            seller_name = None

        logger.debug(
            "extraction_success",
            product_name=product_name,
            price=str(price),
            stock_status=stock_status,
            seller_name_on_page=seller_name,
            source="extractor",
        )
        return ExtractedPage(
            product_name=product_name,
            price=price,
            price_raw=price_raw,
            stock_status=stock_status,
            seller_name_on_page=seller_name,
        )
