"""PriceWatch — Message pipeline, run log, price processing and orchestration."""
