"""PriceWatch — Shared utilities (normalization, parsing, sanitizing)."""
