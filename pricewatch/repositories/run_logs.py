"""
PriceWatch — Run Log Repository

Lifecycle transitions are conditional UPDATEs guarded on status = STARTED,
so a run can reach a terminal state once no matter how many callers race.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.sql.elements import ColumnElement

from pricewatch.config import TERMINAL_FAILURE_STATUSES, RunStatus
from pricewatch.models.mapping import ProductSellerMapping
from pricewatch.models.scraper_run_log import ScraperRunLog
from pricewatch.repositories.base import SqlAlchemyRepository


def run_log_filters(
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    mapping_id: uuid.UUID | None = None,
    status: RunStatus | None = None,
) -> list[ColumnElement[bool]]:
    """Build WHERE clauses shared by listing and statistics queries."""
    clauses: list[ColumnElement[bool]] = []
    if date_from is not None:
        clauses.append(ScraperRunLog.started_at >= date_from)
    if date_to is not None:
        clauses.append(ScraperRunLog.started_at <= date_to)
    if mapping_id is not None:
        clauses.append(ScraperRunLog.mapping_id == mapping_id)
    if status is not None:
        clauses.append(ScraperRunLog.status == status)
    return clauses


class RunLogRepository(SqlAlchemyRepository[ScraperRunLog]):
    model = ScraperRunLog

    async def transition_from_started(self, run_id: uuid.UUID, values: dict[str, Any]) -> bool:
        """
        Apply a terminal transition only if the run is still STARTED.

        Returns:
            True if exactly one row moved out of STARTED.
        """
        stmt = (
            update(ScraperRunLog)
            .where(
                ScraperRunLog.run_id == run_id,
                ScraperRunLog.status == RunStatus.STARTED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def latest_for_mapping(self, mapping_id: uuid.UUID) -> ScraperRunLog | None:
        stmt = (
            select(ScraperRunLog)
            .where(ScraperRunLog.mapping_id == mapping_id)
            .order_by(ScraperRunLog.started_at.desc())
            .limit(1)
        )
        result = await self.session.scalars(stmt)
        return result.first()

    async def children_of(self, run_id: uuid.UUID) -> list[ScraperRunLog]:
        stmt = (
            select(ScraperRunLog)
            .where(ScraperRunLog.parent_run_id == run_id)
            .order_by(ScraperRunLog.started_at)
        )
        result = await self.session.scalars(stmt)
        return list(result.all())

    async def list_runs(
        self,
        clauses: list[ColumnElement[bool]],
        offset: int = 0,
        limit: int = 50,
        oldest_first: bool = False,
    ) -> list[ScraperRunLog]:
        order = ScraperRunLog.started_at if oldest_first else ScraperRunLog.started_at.desc()
        stmt = select(ScraperRunLog).where(*clauses).order_by(order).offset(offset).limit(limit)
        result = await self.session.scalars(stmt)
        return list(result.all())

    async def count(self, clauses: list[ColumnElement[bool]]) -> int:
        stmt = select(func.count()).select_from(ScraperRunLog).where(*clauses)
        return int((await self.session.execute(stmt)).scalar_one())

    # -----------------------------------------------------------------------
    # Aggregates
    # -----------------------------------------------------------------------

    async def status_counts(self, clauses: list[ColumnElement[bool]]) -> dict[RunStatus, int]:
        stmt = (
            select(ScraperRunLog.status, func.count())
            .where(*clauses)
            .group_by(ScraperRunLog.status)
        )
        rows = (await self.session.execute(stmt)).all()
        return {RunStatus(status): int(count) for status, count in rows}

    async def error_category_counts(self, clauses: list[ColumnElement[bool]]) -> dict[str | None, int]:
        stmt = (
            select(ScraperRunLog.error_category, func.count())
            .where(*clauses, ScraperRunLog.status.in_(TERMINAL_FAILURE_STATUSES))
            .group_by(ScraperRunLog.error_category)
        )
        rows = (await self.session.execute(stmt)).all()
        return {category: int(count) for category, count in rows}

    async def averages(self, clauses: list[ColumnElement[bool]]) -> tuple[float | None, float | None]:
        """Average (response_time_ms, duration_ms) over finished runs."""
        stmt = select(
            func.avg(ScraperRunLog.response_time_ms),
            func.avg(ScraperRunLog.duration_ms),
        ).where(*clauses, ScraperRunLog.status != RunStatus.STARTED)
        avg_response, avg_duration = (await self.session.execute(stmt)).one()
        return (
            float(avg_response) if avg_response is not None else None,
            float(avg_duration) if avg_duration is not None else None,
        )

    async def seller_performance(self, since: datetime) -> list[tuple[str, int, int, float | None]]:
        """Per-seller (seller_name, total, successes, avg response ms) since a cutoff."""
        successes = func.sum(case((ScraperRunLog.status == RunStatus.SUCCESS, 1), else_=0))
        stmt = (
            select(
                ProductSellerMapping.seller_name,
                func.count(ScraperRunLog.run_id),
                successes,
                func.avg(ScraperRunLog.response_time_ms),
            )
            .join(ProductSellerMapping, ProductSellerMapping.id == ScraperRunLog.mapping_id)
            .where(
                ScraperRunLog.started_at >= since,
                ScraperRunLog.status != RunStatus.STARTED,
            )
            .group_by(ProductSellerMapping.seller_name)
            .order_by(ProductSellerMapping.seller_name)
        )
        rows = (await self.session.execute(stmt)).all()
        return [
            (seller, int(total), int(ok or 0), float(avg) if avg is not None else None)
            for seller, total, ok, avg in rows
        ]

    async def delete_started_before(self, cutoff: datetime) -> int:
        stmt = delete(ScraperRunLog).where(
            ScraperRunLog.started_at < cutoff,
            ScraperRunLog.status != RunStatus.STARTED,
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)
