"""
PriceWatch — Proxy Configuration Model

Egress proxy definition plus its health stats. Health columns are mutated
by every fetch attempt and by the periodic health checker, always through
per-row SQL increments. Rows are never deleted, only deactivated.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from urllib.parse import quote

from sqlalchemy import Boolean, Enum, Float, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricewatch.config import ProxyType
from pricewatch.models.base import Base, UTCDateTime, utcnow


class ProxyConfiguration(Base):
    """One egress proxy and its running health counters."""

    __tablename__ = "proxy_configurations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    proxy_type: Mapped[ProxyType] = mapped_column(
        Enum(ProxyType, native_enum=False, length=10),
        default=ProxyType.HTTP,
        nullable=False,
    )
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # --- Health stats ---
    is_healthy: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Reset to 0 by any success; drives selection exclusion",
    )
    last_tested_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_latency_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_proxy_configurations_active", "is_active"),
    )

    @property
    def total_requests(self) -> int:
        return self.success_count + self.failure_count

    @property
    def display_name(self) -> str:
        return f"{self.proxy_type.value}://{self.host}:{self.port}"

    @property
    def proxy_url(self) -> str:
        return build_proxy_url(self.proxy_type, self.host, self.port, self.username, self.password)

    def __repr__(self) -> str:
        return (
            f"<ProxyConfiguration {self.display_name} active={self.is_active} "
            f"ok={self.success_count} fail={self.failure_count} "
            f"consecutive={self.consecutive_failures}>"
        )


def build_proxy_url(
    proxy_type: ProxyType,
    host: str,
    port: int,
    username: str | None = None,
    password: str | None = None,
) -> str:
    """
    Build a proxy URL with credentials embedded.

    Args:
        proxy_type: Egress protocol, lower-cased into the URL scheme.
        host: Proxy host.
        port: Proxy port.
        username: Optional user, percent-encoded.
        password: Optional password, percent-encoded.

    Returns:
        URL such as 'socks5://user:pw@10.0.0.1:1080'.
    """
    auth = ""
    if username:
        auth = quote(username, safe="")
        if password:
            auth += ":" + quote(password, safe="")
        auth += "@"
    return f"{proxy_type.value.lower()}://{auth}{host}:{port}"
