"""
PriceWatch — Scraper Run Log Model

Durable record of one scrape attempt. Created STARTED when a worker picks
up a command; transitioned exactly once to SUCCESS, FAILED, TIMEOUT or
CANCELLED. parent_run_id links retry attempts into a chain.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, NUMERIC, Enum, Float, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricewatch.config import RunStatus
from pricewatch.models.base import Base, UTCDateTime, utcnow


class ScraperRunLog(Base):
    """
    Lifecycle, request snapshot, extracted values and error detail of one run.

    Index (mapping_id, started_at) serves per-mapping history and
    statistics; (status, started_at) serves failed/in-progress queries.
    """

    __tablename__ = "scraper_run_logs"

    run_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mapping_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, native_enum=False, length=20),
        default=RunStatus.STARTED,
        nullable=False,
    )

    # --- Request snapshot ---
    target_url: Mapped[str] = mapped_column(String(2000), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    additional_headers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    selectors: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Selector snapshot the command carried",
    )

    # --- Timing ---
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
        comment="completed_at - started_at, set once at the terminal transition",
    )
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    page_load_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    parsing_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    http_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # --- Egress ---
    proxy_used: Mapped[str | None] = mapped_column(String(300), nullable=True)
    proxy_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # --- Extracted values ---
    extracted_product_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    extracted_price: Mapped[Decimal | None] = mapped_column(NUMERIC(12, 2), nullable=True)
    extracted_price_raw: Mapped[str | None] = mapped_column(String(100), nullable=True)
    extracted_stock_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    extracted_seller_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # --- Error detail ---
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Retry chain ---
    attempt_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    parent_run_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
        comment="Previous attempt for the same mapping",
    )

    # --- Debug ---
    raw_html_snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    debug_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_run_logs_mapping_started", "mapping_id", "started_at"),
        Index("ix_run_logs_status_started", "status", "started_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.STARTED

    def __repr__(self) -> str:
        return (
            f"<ScraperRunLog run_id={self.run_id} mapping_id={self.mapping_id} "
            f"status={self.status.value} attempt={self.attempt_number}>"
        )
