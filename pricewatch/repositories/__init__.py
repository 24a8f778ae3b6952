"""
Repositories package — persistence seam for the scraping core.

Services depend on these classes (find / add / save plus named queries),
never on ORM session behavior directly.
"""

from pricewatch.repositories.base import SqlAlchemyRepository
from pricewatch.repositories.mappings import MappingRepository
from pricewatch.repositories.price_history import PriceHistoryRepository
from pricewatch.repositories.products import ProductRepository
from pricewatch.repositories.proxies import ProxyRepository
from pricewatch.repositories.run_logs import RunLogRepository

__all__ = [
    "MappingRepository",
    "PriceHistoryRepository",
    "ProductRepository",
    "ProxyRepository",
    "RunLogRepository",
    "SqlAlchemyRepository",
]
