"""
PriceWatch — Locale-Aware Price Parsing

Turns scraped price text into a Decimal regardless of the seller's number
format:

    "$1,234.56"     -> 1234.56   (US)
    "1.234,56 €"    -> 1234.56   (DE / ES / IT)
    "1 234,56 zł"   -> 1234.56   (FR / PL, incl. NBSP / narrow NBSP)
    "CHF 1'234.50"  -> 1234.50   (CH)
    "12,99"         -> 12.99
    "1.299"         -> 1299      (single separator + 3 digits = thousands)

Only the first number in the text is used, so "€19.99 €24.99" (sale price
followed by list price) yields the sale price. A minus sign directly before
the number or its currency symbol ("-5.00", "-€5") is kept, so discount
badges come back negative instead of looking like prices.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from pricewatch.errors import PriceParseError

# Space or apostrophe grouping is only accepted in strict 3-digit groups, so
# "19.99 24.99" is read as two numbers rather than one.
_NUMBER_RE = re.compile(
    r"\d{1,3}(?:[ '\u00a0\u202f\u2009\u2019]\d{3})+(?:[.,]\d+)?"
    r"|\d(?:[\d.,]*\d)?"
)
_GROUPING_CHARS = ("'", "\u2019", " ", "\u00a0", "\u202f", "\u2009")

# Minus (ASCII or U+2212) touching the number, optionally through a currency symbol
_SIGN_RE = re.compile(r"[-\u2212](?:[^\w\s]{1,3}\s?)?$")


def _resolve_separators(token: str) -> str:
    """Return the token rewritten with '.' as decimal point and no grouping."""
    for ch in _GROUPING_CHARS:
        token = token.replace(ch, "")

    last_dot = token.rfind(".")
    last_comma = token.rfind(",")

    if last_dot != -1 and last_comma != -1:
        # Both present: whichever comes last is the decimal separator.
        decimal_sep = "." if last_dot > last_comma else ","
        group_sep = "," if decimal_sep == "." else "."
        return token.replace(group_sep, "").replace(decimal_sep, ".")

    sep = "." if last_dot != -1 else ("," if last_comma != -1 else None)
    if sep is None:
        return token

    if token.count(sep) > 1:
        return token.replace(sep, "")

    integer_part, fraction = token.split(sep)
    if len(fraction) == 3 and integer_part not in ("", "0"):
        return integer_part + fraction
    return f"{integer_part}.{fraction}"


def parse_price(text: str | None) -> Decimal:
    """
    Parse the first price in a block of text.

    Args:
        text: Raw text from the price selector.

    Returns:
        Decimal price; negative when the text carries a leading minus sign.

    Raises:
        PriceParseError: If no numeric value can be recovered.
    """
    if text is None or not text.strip():
        raise PriceParseError("Price text is empty")

    match = _NUMBER_RE.search(text)
    if match is None:
        raise PriceParseError(f"No numeric value in price text {text.strip()[:100]!r}")

    normalized = _resolve_separators(match.group(0))
    try:
        value = Decimal(normalized)
    except InvalidOperation as e:
        raise PriceParseError(f"Unparseable price text {text.strip()[:100]!r}") from e

    if not value.is_finite():
        raise PriceParseError(f"Unparseable price text {text.strip()[:100]!r}")
    if _SIGN_RE.search(text, 0, match.start()):
        value = -value
    return value
