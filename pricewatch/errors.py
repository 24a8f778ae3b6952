"""
PriceWatch — Error Types

ScrapeError and its subclasses carry the taxonomy category, a stable error
code, and the HTTP status when there is one. They are raised inside the
fetch → extract chain and converted into RunLog failures at the worker
boundary; they never escape the worker loop.
"""

from __future__ import annotations

from pricewatch.config import ErrorCategory


class PriceWatchError(Exception):
    """Base class for all PriceWatch errors."""


# ---------------------------------------------------------------------------
# Scrape attempt failures
# ---------------------------------------------------------------------------

class ScrapeError(PriceWatchError):
    """A failed scrape attempt with category, code and optional HTTP status."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory,
        code: str,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.code = code
        self.http_status = http_status

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} category={self.category.value} "
            f"code={self.code!r} status={self.http_status} message={self.message!r}>"
        )


class FetchError(ScrapeError):
    """Network, timeout, or non-2xx failure from the fetcher."""


class PoolExhaustedError(ScrapeError):
    """No eligible proxy is left in the pool."""

    def __init__(self, message: str = "No eligible proxy available") -> None:
        super().__init__(
            message,
            category=ErrorCategory.POOL_EXHAUSTED,
            code="POOL_EXHAUSTED",
        )


class ExtractionError(ScrapeError):
    """A required selector was absent, empty, or the document was empty."""

    def __init__(self, message: str, *, code: str = "SELECTOR_NOT_FOUND") -> None:
        super().__init__(message, category=ErrorCategory.EXTRACTION, code=code)


class PriceParseError(ScrapeError):
    """Price text could not be parsed to a decimal."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.PARSE, code="PRICE_PARSE_FAILED")


# ---------------------------------------------------------------------------
# Run log / catalog lookups
# ---------------------------------------------------------------------------

class RunLogError(PriceWatchError):
    """Base for run log lifecycle errors."""


class RunLogNotFoundError(RunLogError):
    """No run log exists for the given run id."""


class RunLogStateError(RunLogError):
    """Transition attempted on a run log that is already terminal."""


class MappingNotFoundError(PriceWatchError):
    """No product-seller mapping exists for the given id."""
