"""
PriceWatch — Test Helpers

Seed functions, a controllable clock, a recording publisher and sample
HTML shared by the test modules.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from pricewatch.config import ProxyType
from pricewatch.models import (
    Product,
    ProductSellerMapping,
    ProxyConfiguration,
    SiteConfiguration,
)
from pricewatch.pipeline.messages import ScrapeCommand, ScrapingProfile, ScrapingSelectors

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

PRODUCT_HTML = """
<html>
  <head><title>Widget</title></head>
  <body>
    <h1 class="product-title">  Acme Widget Pro  </h1>
    <span class="price">$1,299.99</span>
    <div class="stock">In Stock</div>
    <div class="seller">Acme Store</div>
    <p>Ships in two business days.</p>
  </body>
</html>
"""


class FrozenClock:
    """Controllable UTC clock for services that accept clock=..."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingPublisher:
    """MessagePublisher that keeps every (channel, message) pair in memory."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.published: list[tuple[str, BaseModel]] = []
        self.fail_on = fail_on or set()

    async def publish(self, channel: str, message: BaseModel) -> None:
        if channel in self.fail_on:
            raise ConnectionError(f"broker unavailable for {channel}")
        self.published.append((channel, message))

    def on(self, channel: str) -> list[BaseModel]:
        return [message for ch, message in self.published if ch == channel]


async def seed_product(session_factory, name: str = "Acme Widget Pro") -> Product:
    async with session_factory() as session:
        product = Product(id=uuid.uuid4(), name=name)
        session.add(product)
        await session.commit()
    return product


async def seed_site(session_factory, **overrides) -> SiteConfiguration:
    values = {
        "id": uuid.uuid4(),
        "domain": f"shop-{uuid.uuid4().hex[:8]}.example",
        "product_name_selector": "h1.product-title",
        "price_selector": ".price",
        "stock_selector": ".stock",
        "seller_name_selector": ".seller",
        "user_agent": "PriceWatchTest/1.0",
        "additional_headers": {"X-Test": "1"},
    }
    values.update(overrides)
    async with session_factory() as session:
        site = SiteConfiguration(**values)
        session.add(site)
        await session.commit()
    return site


async def seed_mapping(session_factory, product: Product, **overrides) -> ProductSellerMapping:
    values = {
        "id": uuid.uuid4(),
        "canonical_product_id": product.id,
        "seller_name": f"Seller {uuid.uuid4().hex[:6]}",
        "exact_product_url": "https://shop.example/widget",
        "is_active": True,
    }
    values.update(overrides)
    async with session_factory() as session:
        mapping = ProductSellerMapping(**values)
        session.add(mapping)
        await session.commit()
    return mapping


async def seed_proxy(session_factory, host: str = "10.0.0.1", **overrides) -> ProxyConfiguration:
    values = {
        "id": uuid.uuid4(),
        "host": host,
        "port": 8080,
        "proxy_type": ProxyType.HTTP,
        "timeout_seconds": 5,
        "is_active": True,
    }
    values.update(overrides)
    async with session_factory() as session:
        proxy = ProxyConfiguration(**values)
        session.add(proxy)
        await session.commit()
    return proxy


async def load(session_factory, model, entity_id):
    """Fresh copy of one row from a new session."""
    async with session_factory() as session:
        return await session.get(model, entity_id)


def make_command(mapping_id: uuid.UUID | None = None, **overrides) -> ScrapeCommand:
    values = {
        "mapping_id": mapping_id or uuid.uuid4(),
        "canonical_product_id": uuid.uuid4(),
        "seller_name": "Acme Store",
        "exact_product_url": "https://shop.example/widget",
        "selectors": ScrapingSelectors(
            product_name="h1.product-title",
            price=".price",
            stock=".stock",
            seller_name=".seller",
        ),
        "profile": ScrapingProfile(user_agent="PriceWatchTest/1.0", headers={"X-Test": "1"}),
    }
    values.update(overrides)
    return ScrapeCommand(**values)
