"""
PriceWatch — Stock Status Normalization

Maps the free-text availability strings sellers print ("In Stock",
"Sold out", "Only 2 left", "Vorbestellung" ...) onto a small closed
vocabulary. Exact synonyms are checked first, then partial-match rules in
priority order. Unrecognized text passes through unchanged (trimmed) so no
information is lost; blank text becomes UNKNOWN.
"""

from __future__ import annotations

from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class StockStatus(str, Enum):
    """Closed stock vocabulary stored on price points."""
    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    LIMITED_STOCK = "LIMITED_STOCK"
    PRE_ORDER = "PRE_ORDER"
    DISCONTINUED = "DISCONTINUED"
    UNKNOWN = "UNKNOWN"


# ---------------------------------------------------------------------------
# Synonym tables
# ---------------------------------------------------------------------------

_EXACT_SYNONYMS: dict[str, StockStatus] = {
    "in stock": StockStatus.IN_STOCK,
    "in-stock": StockStatus.IN_STOCK,
    "instock": StockStatus.IN_STOCK,
    "available": StockStatus.IN_STOCK,
    "ready to ship": StockStatus.IN_STOCK,
    "ships today": StockStatus.IN_STOCK,
    "add to cart": StockStatus.IN_STOCK,
    "on hand": StockStatus.IN_STOCK,
    "yes": StockStatus.IN_STOCK,
    "out of stock": StockStatus.OUT_OF_STOCK,
    "out-of-stock": StockStatus.OUT_OF_STOCK,
    "outofstock": StockStatus.OUT_OF_STOCK,
    "sold out": StockStatus.OUT_OF_STOCK,
    "soldout": StockStatus.OUT_OF_STOCK,
    "unavailable": StockStatus.OUT_OF_STOCK,
    "not available": StockStatus.OUT_OF_STOCK,
    "currently unavailable": StockStatus.OUT_OF_STOCK,
    "no": StockStatus.OUT_OF_STOCK,
    "low stock": StockStatus.LIMITED_STOCK,
    "limited stock": StockStatus.LIMITED_STOCK,
    "limited": StockStatus.LIMITED_STOCK,
    "few left": StockStatus.LIMITED_STOCK,
    "preorder": StockStatus.PRE_ORDER,
    "pre-order": StockStatus.PRE_ORDER,
    "pre order": StockStatus.PRE_ORDER,
    "coming soon": StockStatus.PRE_ORDER,
    "backorder": StockStatus.PRE_ORDER,
    "back-order": StockStatus.PRE_ORDER,
    "backordered": StockStatus.PRE_ORDER,
    "discontinued": StockStatus.DISCONTINUED,
    "no longer available": StockStatus.DISCONTINUED,
    "end of life": StockStatus.DISCONTINUED,
    "unknown": StockStatus.UNKNOWN,
}

# Order matters: "not in stock" must hit OUT_OF_STOCK before "in stock" matches.
_PARTIAL_RULES: tuple[tuple[str, StockStatus], ...] = (
    ("discontinued", StockStatus.DISCONTINUED),
    ("no longer", StockStatus.DISCONTINUED),
    ("out of stock", StockStatus.OUT_OF_STOCK),
    ("not in stock", StockStatus.OUT_OF_STOCK),
    ("sold out", StockStatus.OUT_OF_STOCK),
    ("unavailable", StockStatus.OUT_OF_STOCK),
    ("not available", StockStatus.OUT_OF_STOCK),
    ("pre-order", StockStatus.PRE_ORDER),
    ("preorder", StockStatus.PRE_ORDER),
    ("pre order", StockStatus.PRE_ORDER),
    ("backorder", StockStatus.PRE_ORDER),
    ("coming soon", StockStatus.PRE_ORDER),
    (" left", StockStatus.LIMITED_STOCK),      # "only 3 left"
    ("left in stock", StockStatus.LIMITED_STOCK),
    ("low stock", StockStatus.LIMITED_STOCK),
    ("limited", StockStatus.LIMITED_STOCK),
    ("in stock", StockStatus.IN_STOCK),
    ("available", StockStatus.IN_STOCK),
    ("ships", StockStatus.IN_STOCK),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def normalize_stock_status(raw: str | None) -> str:
    """
    Normalize scraped stock text to the closed vocabulary.

    Args:
        raw: Text the stock selector produced, or None.

    Returns:
        A StockStatus value, or the trimmed input if nothing matched.
    """
    if raw is None or not raw.strip():
        return StockStatus.UNKNOWN.value

    trimmed = raw.strip()
    key = " ".join(trimmed.lower().split())

    if key in _EXACT_SYNONYMS:
        return _EXACT_SYNONYMS[key].value

    if key.upper() in StockStatus.__members__:
        return StockStatus[key.upper()].value

    for needle, status in _PARTIAL_RULES:
        if needle in key:
            return status.value

    logger.debug("stock_status_unrecognized", raw=trimmed, source="stock_status")
    return trimmed
