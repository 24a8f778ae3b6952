"""PriceWatch — Proxy Pool (selection, health stats, health monitoring)"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import NamedTuple

from pricewatch.config import ProxyType
from pricewatch.models.proxy_configuration import ProxyConfiguration, build_proxy_url


class ProxySnapshot(NamedTuple):
    """
    Read-only copy of one proxy row as seen by the selector.

    Pool snapshots are tuples of these; a counter update produces a new
    tuple with the one entry replaced, never an in-place edit.
    """
    id: uuid.UUID
    host: str
    port: int
    proxy_type: ProxyType
    username: str | None
    password: str | None
    timeout_seconds: int
    max_retries: int
    is_active: bool
    is_healthy: bool
    success_count: int
    failure_count: int
    consecutive_failures: int
    last_tested_at: datetime | None
    last_latency_ms: float | None

    @classmethod
    def from_row(cls, row: ProxyConfiguration) -> ProxySnapshot:
        return cls(
            id=row.id,
            host=row.host,
            port=row.port,
            proxy_type=row.proxy_type,
            username=row.username,
            password=row.password,
            timeout_seconds=row.timeout_seconds,
            max_retries=row.max_retries,
            is_active=row.is_active,
            is_healthy=row.is_healthy,
            success_count=row.success_count,
            failure_count=row.failure_count,
            consecutive_failures=row.consecutive_failures,
            last_tested_at=row.last_tested_at,
            last_latency_ms=row.last_latency_ms,
        )

    @property
    def total_requests(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float | None:
        """success / (success + failure), or None before the first attempt."""
        if self.total_requests == 0:
            return None
        return self.success_count / self.total_requests

    @property
    def display_name(self) -> str:
        return f"{self.proxy_type.value}://{self.host}:{self.port}"

    @property
    def proxy_url(self) -> str:
        return build_proxy_url(self.proxy_type, self.host, self.port, self.username, self.password)
