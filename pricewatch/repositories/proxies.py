"""
PriceWatch — Proxy Repository

Health-stat writes are single UPDATE statements that increment counters in
SQL and return the fresh row, so concurrent fetches and the health checker
never overwrite each other's counts.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import case, or_, select, update

from pricewatch.models.proxy_configuration import ProxyConfiguration
from pricewatch.repositories.base import SqlAlchemyRepository

_ERROR_MESSAGE_MAX = 1000
_ERROR_CODE_MAX = 50


class ProxyRepository(SqlAlchemyRepository[ProxyConfiguration]):
    model = ProxyConfiguration

    async def list_active(self) -> list[ProxyConfiguration]:
        stmt = (
            select(ProxyConfiguration)
            .where(ProxyConfiguration.is_active.is_(True))
            .order_by(ProxyConfiguration.created_at, ProxyConfiguration.id)
        )
        result = await self.session.scalars(stmt)
        return list(result.all())

    async def list_all(self) -> list[ProxyConfiguration]:
        stmt = select(ProxyConfiguration).order_by(
            ProxyConfiguration.created_at, ProxyConfiguration.id
        )
        result = await self.session.scalars(stmt)
        return list(result.all())

    async def list_needing_health_check(self, tested_before: datetime) -> list[ProxyConfiguration]:
        """Active proxies never tested, or last tested before the cutoff."""
        stmt = (
            select(ProxyConfiguration)
            .where(
                ProxyConfiguration.is_active.is_(True),
                or_(
                    ProxyConfiguration.last_tested_at.is_(None),
                    ProxyConfiguration.last_tested_at < tested_before,
                ),
            )
            .order_by(ProxyConfiguration.created_at, ProxyConfiguration.id)
        )
        result = await self.session.scalars(stmt)
        return list(result.all())

    # -----------------------------------------------------------------------
    # Atomic health-stat updates
    # -----------------------------------------------------------------------

    async def _update_returning(self, proxy_id: uuid.UUID, **values) -> ProxyConfiguration | None:
        stmt = (
            update(ProxyConfiguration)
            .where(ProxyConfiguration.id == proxy_id)
            .values(**values)
            .returning(ProxyConfiguration)
        )
        result = await self.session.scalars(
            stmt, execution_options={"populate_existing": True}
        )
        return result.one_or_none()

    async def increment_success(
        self,
        proxy_id: uuid.UUID,
        now: datetime,
        latency_ms: float | None = None,
    ) -> ProxyConfiguration | None:
        values = {
            "success_count": ProxyConfiguration.success_count + 1,
            "consecutive_failures": 0,
            "is_healthy": True,
            "last_used_at": now,
        }
        if latency_ms is not None:
            values["last_latency_ms"] = latency_ms
        return await self._update_returning(proxy_id, **values)

    async def increment_failure(
        self,
        proxy_id: uuid.UUID,
        now: datetime,
        error_message: str,
        error_code: str,
        unhealthy_threshold: int,
    ) -> ProxyConfiguration | None:
        return await self._update_returning(
            proxy_id,
            failure_count=ProxyConfiguration.failure_count + 1,
            consecutive_failures=ProxyConfiguration.consecutive_failures + 1,
            is_healthy=case(
                (ProxyConfiguration.consecutive_failures + 1 >= unhealthy_threshold, False),
                else_=ProxyConfiguration.is_healthy,
            ),
            last_used_at=now,
            last_error_message=error_message[:_ERROR_MESSAGE_MAX],
            last_error_code=error_code[:_ERROR_CODE_MAX],
        )

    async def record_health_success(
        self,
        proxy_id: uuid.UUID,
        now: datetime,
        latency_ms: float,
    ) -> ProxyConfiguration | None:
        return await self._update_returning(
            proxy_id,
            consecutive_failures=0,
            is_healthy=True,
            last_tested_at=now,
            last_latency_ms=latency_ms,
            last_error_message=None,
            last_error_code=None,
        )

    async def record_health_failure(
        self,
        proxy_id: uuid.UUID,
        now: datetime,
        error_message: str,
        error_code: str,
    ) -> ProxyConfiguration | None:
        return await self._update_returning(
            proxy_id,
            consecutive_failures=ProxyConfiguration.consecutive_failures + 1,
            is_healthy=False,
            last_tested_at=now,
            last_error_message=error_message[:_ERROR_MESSAGE_MAX],
            last_error_code=error_code[:_ERROR_CODE_MAX],
        )
