"""
PriceWatch — Price Data Processor

Turns a RawPriceData event into a durable price point:

1. Validate: price > 0, seller name non-blank, canonical product exists.
   Any violation drops the event (logged with mapping_id + reason); the
   event is not retried.
2. Normalize: stock text to the closed vocabulary, seller name trimmed,
   price rounded to cents.
3. Deduplicate: same mapping + price + stock captured within the dedupe
   window is a redelivery and is dropped.
4. Append one PriceHistory row, then publish PricePointRecorded.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import ErrorCategory
from pricewatch.models.price_history import PriceHistory
from pricewatch.pipeline.messages import PricePointRecordedEvent, RawPriceDataEvent
from pricewatch.pipeline.publisher import MessagePublisher
from pricewatch.repositories.price_history import PriceHistoryRepository
from pricewatch.repositories.products import ProductRepository
from pricewatch.utils.stock_status import normalize_stock_status
from pricewatch.utils.text import clean_text

logger = structlog.get_logger(__name__)

_CENTS = Decimal("0.01")


class PriceDataProcessor:
    """
    Validates, normalizes, deduplicates and records raw price events.

    Usage:
        processor = PriceDataProcessor(session_factory, publisher, "pricedata.recorded")
        row = await processor.process(event)   # None when dropped
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: MessagePublisher,
        recorded_channel: str,
        dedupe_window: timedelta = timedelta(minutes=10),
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.recorded_channel = recorded_channel
        self.dedupe_window = dedupe_window

    def _drop(self, event: RawPriceDataEvent, reason: str, **context: object) -> None:
        logger.warning(
            "price_data_rejected",
            mapping_id=str(event.mapping_id),
            canonical_product_id=str(event.canonical_product_id),
            reason=reason,
            error_category=ErrorCategory.VALIDATION.value,
            source="price_processor",
            **context,
        )

    async def process(self, event: RawPriceDataEvent) -> PriceHistory | None:
        """
        Record one raw price event.

        Args:
            event: Raw scrape output.

        Returns:
            The new PriceHistory row, or None if the event was dropped.
        """
        if event.scraped_price is None or event.scraped_price <= 0:
            self._drop(event, "price_not_positive", price=str(event.scraped_price))
            return None

        seller_name = clean_text(event.seller_name, 200)
        if not seller_name:
            self._drop(event, "seller_name_blank")
            return None

        price = event.scraped_price.quantize(_CENTS, rounding=ROUND_HALF_UP)
        if price <= 0:
            self._drop(event, "price_rounds_to_zero", price=str(event.scraped_price))
            return None
        stock_status = normalize_stock_status(event.scraped_stock_status)[:100]

        async with self.session_factory() as session:
            if not await ProductRepository(session).exists(event.canonical_product_id):
                self._drop(event, "product_not_found")
                return None

            history = PriceHistoryRepository(session)
            duplicate = await history.find_duplicate(
                event.mapping_id,
                price,
                stock_status,
                event.timestamp,
                self.dedupe_window,
            )
            if duplicate is not None:
                logger.info(
                    "price_data_duplicate",
                    mapping_id=str(event.mapping_id),
                    existing_id=str(duplicate.id),
                    price=str(price),
                    stock_status=stock_status,
                    source="price_processor",
                )
                return None

            row = history.add(
                PriceHistory(
                    mapping_id=event.mapping_id,
                    canonical_product_id=event.canonical_product_id,
                    seller_name=seller_name,
                    price=price,
                    stock_status=stock_status,
                    source_url=event.source_url,
                    scraped_product_name=clean_text(event.scraped_product_name, 500),
                    captured_at=event.timestamp,
                )
            )
            await history.save()

        logger.info(
            "price_point_recorded",
            price_history_id=str(row.id),
            mapping_id=str(event.mapping_id),
            seller_name=seller_name,
            price=str(price),
            stock_status=stock_status,
            source="price_processor",
        )

        await self.publisher.publish(
            self.recorded_channel,
            PricePointRecordedEvent(
                price_history_id=row.id,
                mapping_id=row.mapping_id,
                canonical_product_id=row.canonical_product_id,
                seller_name=row.seller_name,
                price=price,
                stock_status=stock_status,
                source_url=row.source_url,
                timestamp=event.timestamp,
            ),
        )
        return row
