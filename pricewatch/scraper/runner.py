"""
PriceWatch — Scraper Runner

Runs fetch → extract for one ScrapeCommand under a single deadline and
folds every outcome into a ScrapingResult:

    FetchError / PoolExhaustedError  -> failure, category from the error
    ExtractionError / PriceParseError -> failure, EXTRACTION / PARSE
    deadline exceeded                 -> failure, TIMEOUT / DEADLINE_EXCEEDED

asyncio.CancelledError is never converted: it propagates so the worker can
mark the run CANCELLED.
"""

from __future__ import annotations

import asyncio
import time

import structlog

from pricewatch.config import ErrorCategory
from pricewatch.errors import ScrapeError
from pricewatch.pipeline.messages import ScrapeCommand
from pricewatch.scraper import ScrapeTimings, ScrapingResult
from pricewatch.scraper.extractor import PageExtractor
from pricewatch.scraper.fetcher import FetchResponse, ProxyAwareFetcher
from pricewatch.utils.text import strip_control_chars

logger = structlog.get_logger(__name__)


class ScraperRunner:
    """
    Executes one scrape command end to end.

    Usage:
        runner = ScraperRunner(fetcher, PageExtractor())
        result = await runner.scrape(command, deadline_seconds=130)
    """

    def __init__(
        self,
        fetcher: ProxyAwareFetcher,
        extractor: PageExtractor | None = None,
        snippet_chars: int = 1000,
    ) -> None:
        self.fetcher = fetcher
        self.extractor = extractor or PageExtractor()
        self.snippet_chars = snippet_chars

    def default_deadline_seconds(self) -> float:
        """Proxy timeout × (retries + 1) plus the retry delays."""
        return self.fetcher.max_duration_seconds()

    async def scrape(self, command: ScrapeCommand, deadline_seconds: float | None = None) -> ScrapingResult:
        """
        Scrape the command's URL and extract its fields.

        Args:
            command: The dispatched scrape command.
            deadline_seconds: Wall-clock budget; defaults to default_deadline_seconds().

        Returns:
            ScrapingResult, success or failure. Never raises ScrapeError.
        """
        deadline = deadline_seconds or self.default_deadline_seconds()
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(self._scrape(command, start), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(
                "scraper_deadline_exceeded",
                mapping_id=str(command.mapping_id),
                url=command.exact_product_url,
                deadline_seconds=deadline,
                source="scraper_runner",
            )
            return ScrapingResult(
                success=False,
                error_code="DEADLINE_EXCEEDED",
                error_message=f"Scrape exceeded its {deadline:.0f}s deadline",
                error_category=ErrorCategory.TIMEOUT,
                timings=ScrapeTimings(total_ms=_elapsed_ms(start)),
            )

    async def _scrape(self, command: ScrapeCommand, start: float) -> ScrapingResult:
        response: FetchResponse | None = None
        try:
            response = await self.fetcher.fetch(command.exact_product_url, command.profile)
            page_load_ms = _elapsed_ms(start)

            parse_start = time.perf_counter()
            page = self.extractor.extract(response.content, command.selectors)
            parse_ms = _elapsed_ms(parse_start)
        except ScrapeError as e:
            logger.warning(
                "scraper_attempt_failed",
                mapping_id=str(command.mapping_id),
                url=command.exact_product_url,
                error_code=e.code,
                error_category=e.category.value,
                error=e.message,
                source="scraper_runner",
            )
            return ScrapingResult(
                success=False,
                error_code=e.code,
                error_message=e.message,
                error_category=e.category,
                http_status_code=e.http_status or (response.status_code if response else None),
                timings=ScrapeTimings(
                    total_ms=_elapsed_ms(start),
                    page_load_ms=response.response_time_ms if response else None,
                ),
                proxy_used=response.proxy_used if response else None,
                proxy_id=response.proxy_id if response else None,
                raw_html_snippet=self._snippet(response),
            )

        logger.info(
            "scraper_success",
            mapping_id=str(command.mapping_id),
            price=str(page.price),
            stock_status=page.stock_status,
            source="scraper_runner",
        )
        return ScrapingResult(
            success=True,
            product_name=page.product_name,
            price=page.price,
            price_raw=page.price_raw,
            stock_status=page.stock_status,
            seller_name_on_page=page.seller_name_on_page,
            http_status_code=response.status_code,
            timings=ScrapeTimings(
                total_ms=_elapsed_ms(start),
                page_load_ms=page_load_ms,
                parse_ms=parse_ms,
            ),
            proxy_used=response.proxy_used,
            proxy_id=response.proxy_id,
            raw_html_snippet=self._snippet(response),
        )

    def _snippet(self, response: FetchResponse | None) -> str | None:
        if response is None:
            return None
        return strip_control_chars(response.content, self.snippet_chars)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
