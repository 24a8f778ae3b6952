"""
Models package — export all SQLAlchemy models.
"""

from pricewatch.models.base import Base
from pricewatch.models.mapping import ProductSellerMapping
from pricewatch.models.price_history import PriceHistory
from pricewatch.models.product import Product
from pricewatch.models.proxy_configuration import ProxyConfiguration
from pricewatch.models.scraper_run_log import ScraperRunLog
from pricewatch.models.site_configuration import SiteConfiguration

__all__ = [
    "Base",
    "PriceHistory",
    "Product",
    "ProductSellerMapping",
    "ProxyConfiguration",
    "ScraperRunLog",
    "SiteConfiguration",
]
