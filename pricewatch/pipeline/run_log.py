"""
PriceWatch — Run Log Service

Lifecycle of one scrape attempt:

    STARTED ──► SUCCESS | FAILED | TIMEOUT | CANCELLED   (terminal)

create() is called when a worker picks up a command, before any network
I/O. complete(), fail() and cancel() each move the run out of STARTED
exactly once; a second terminal call raises RunLogStateError. Duration is
computed at that transition and never recomputed.

Runs for the same mapping can be linked through parent_run_id into a retry
chain; get_retry_chain() returns the whole chain, oldest first.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import TERMINAL_FAILURE_STATUSES, ErrorCategory, RunStatus
from pricewatch.errors import RunLogNotFoundError, RunLogStateError
from pricewatch.models.scraper_run_log import ScraperRunLog
from pricewatch.pipeline.messages import ScrapeCommand
from pricewatch.repositories.run_logs import RunLogRepository, run_log_filters
from pricewatch.scraper import ScrapingResult
from pricewatch.utils.text import clean_text, strip_control_chars

logger = structlog.get_logger(__name__)

_UNCATEGORIZED = "UNCATEGORIZED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

class RunStatistics(BaseModel):
    """Aggregate view over a filtered set of runs."""

    model_config = ConfigDict(frozen=True)

    total_runs: int
    success_runs: int
    failed_runs: int
    in_progress_runs: int
    success_rate: float
    average_response_time_ms: float | None
    average_duration_ms: float | None
    error_category_counts: dict[str, int]
    status_counts: dict[str, int]


class SellerPerformance(BaseModel):
    """Per-seller scrape reliability over a time window."""

    model_config = ConfigDict(frozen=True)

    seller_name: str
    total_runs: int
    success_runs: int
    success_rate: float
    average_response_time_ms: float | None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class RunLogService:
    """
    Durable attempt history and the STARTED → terminal state machine.

    Usage:
        run = await run_logs.create(command)
        ...
        await run_logs.complete(run.run_id, result)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session_factory = session_factory
        self._clock = clock

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def create(
        self,
        command: ScrapeCommand,
        parent_run_id: uuid.UUID | None = None,
    ) -> ScraperRunLog:
        """
        Record a new STARTED run for a command.

        Args:
            command: The command being executed.
            parent_run_id: Previous attempt for the same mapping, if this is
                a retry. attempt_number is the parent's plus one.

        Returns:
            The persisted run log.
        """
        async with self.session_factory() as session:
            repo = RunLogRepository(session)

            attempt_number = 1
            if parent_run_id is not None:
                parent = await repo.find(parent_run_id)
                if parent is None:
                    logger.warning(
                        "run_log_parent_missing",
                        parent_run_id=str(parent_run_id),
                        mapping_id=str(command.mapping_id),
                        source="run_log",
                    )
                    parent_run_id = None
                else:
                    attempt_number = parent.attempt_number + 1

            run = repo.add(
                ScraperRunLog(
                    run_id=uuid.uuid4(),
                    mapping_id=command.mapping_id,
                    status=RunStatus.STARTED,
                    target_url=command.exact_product_url,
                    user_agent=command.profile.user_agent,
                    additional_headers=dict(command.profile.headers) or None,
                    selectors=command.selectors.model_dump(),
                    started_at=self._clock(),
                    attempt_number=attempt_number,
                    parent_run_id=parent_run_id,
                )
            )
            await repo.save()

        logger.info(
            "run_log_started",
            run_id=str(run.run_id),
            mapping_id=str(run.mapping_id),
            attempt_number=attempt_number,
            parent_run_id=str(parent_run_id) if parent_run_id else None,
            source="run_log",
        )
        return run

    async def complete(self, run_id: uuid.UUID, result: ScrapingResult) -> ScraperRunLog:
        """Transition STARTED → SUCCESS with extracted fields and timings."""
        values = _result_values(result)
        return await self._transition(run_id, RunStatus.SUCCESS, values)

    async def fail(
        self,
        run_id: uuid.UUID,
        *,
        error_message: str,
        error_code: str,
        error_category: ErrorCategory,
        status: RunStatus = RunStatus.FAILED,
        http_status_code: int | None = None,
        stack_trace: str | None = None,
        result: ScrapingResult | None = None,
    ) -> ScraperRunLog:
        """
        Transition STARTED → FAILED or TIMEOUT with error detail.

        Args:
            run_id: Run to fail.
            error_message: Human-readable cause.
            error_code: Stable code, e.g. HTTP_ERROR, SELECTOR_NOT_FOUND.
            error_category: Taxonomy bucket.
            status: FAILED (default) or TIMEOUT.
            http_status_code: Upstream HTTP status, if any.
            stack_trace: Formatted traceback for unexpected exceptions.
            result: Partial scrape result (timings, proxy, snippet), if any.

        Raises:
            ValueError: If status is not a failure status.
            RunLogNotFoundError: Unknown run id.
            RunLogStateError: Run already terminal.
        """
        if status not in (RunStatus.FAILED, RunStatus.TIMEOUT):
            raise ValueError(f"fail() cannot set status {status.value}")

        values: dict[str, Any] = _result_values(result) if result is not None else {}
        values.update(
            error_message=strip_control_chars(error_message, 2000),
            error_code=error_code[:50],
            error_category=error_category.value,
            http_status_code=(
                http_status_code if http_status_code is not None else values.get("http_status_code")
            ),
            error_stack_trace=strip_control_chars(stack_trace),
        )
        return await self._transition(run_id, status, values)

    async def cancel(self, run_id: uuid.UUID, reason: str = "Scrape cancelled") -> ScraperRunLog:
        """Transition STARTED → CANCELLED (worker shutdown, job timeout)."""
        return await self._transition(
            run_id,
            RunStatus.CANCELLED,
            {
                "error_message": reason[:2000],
                "error_code": "CANCELLED",
                "error_category": ErrorCategory.CANCELLED.value,
            },
        )

    async def _transition(
        self,
        run_id: uuid.UUID,
        status: RunStatus,
        values: dict[str, Any],
    ) -> ScraperRunLog:
        async with self.session_factory() as session:
            repo = RunLogRepository(session)
            run = await repo.find(run_id)
            if run is None:
                raise RunLogNotFoundError(f"Run log {run_id} not found")
            if run.is_terminal:
                raise RunLogStateError(
                    f"Run log {run_id} is already {run.status.value}; cannot move to {status.value}"
                )

            completed_at = self._clock()
            duration_ms = max(0.0, (completed_at - run.started_at).total_seconds() * 1000)
            moved = await repo.transition_from_started(
                run_id,
                {
                    **values,
                    "status": status,
                    "completed_at": completed_at,
                    "duration_ms": duration_ms,
                },
            )
            if not moved:
                await session.rollback()
                raise RunLogStateError(
                    f"Run log {run_id} left STARTED concurrently; cannot move to {status.value}"
                )
            await repo.save()
            await session.refresh(run)

        log = logger.info if status == RunStatus.SUCCESS else logger.warning
        log(
            "run_log_terminal",
            run_id=str(run_id),
            mapping_id=str(run.mapping_id),
            status=status.value,
            duration_ms=round(duration_ms, 1),
            error_code=run.error_code,
            error_category=run.error_category,
            source="run_log",
        )
        return run

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def get_run(self, run_id: uuid.UUID) -> ScraperRunLog | None:
        async with self.session_factory() as session:
            return await RunLogRepository(session).find(run_id)

    async def get_latest_run_for_mapping(self, mapping_id: uuid.UUID) -> ScraperRunLog | None:
        async with self.session_factory() as session:
            return await RunLogRepository(session).latest_for_mapping(mapping_id)

    async def get_logs(
        self,
        page: int = 1,
        page_size: int = 50,
        *,
        status: RunStatus | None = None,
        mapping_id: uuid.UUID | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> tuple[list[ScraperRunLog], int]:
        """
        Paged run history, newest first.

        Returns:
            (runs on this page, total matching runs)
        """
        page = max(1, page)
        clauses = run_log_filters(date_from, date_to, mapping_id, status)
        async with self.session_factory() as session:
            repo = RunLogRepository(session)
            runs = await repo.list_runs(clauses, offset=(page - 1) * page_size, limit=page_size)
            total = await repo.count(clauses)
        return runs, total

    async def get_logs_by_mapping(self, mapping_id: uuid.UUID, limit: int = 50) -> list[ScraperRunLog]:
        async with self.session_factory() as session:
            return await RunLogRepository(session).list_runs(
                run_log_filters(mapping_id=mapping_id), limit=limit
            )

    async def get_recent_failed_runs(self, hours: float = 24, limit: int = 100) -> list[ScraperRunLog]:
        since = self._clock() - timedelta(hours=hours)
        clauses = run_log_filters(date_from=since)
        clauses.append(ScraperRunLog.status.in_(TERMINAL_FAILURE_STATUSES))
        async with self.session_factory() as session:
            return await RunLogRepository(session).list_runs(clauses, limit=limit)

    async def get_in_progress_runs(self, older_than_minutes: float | None = None) -> list[ScraperRunLog]:
        """STARTED runs, optionally only those started before a cutoff (stuck runs)."""
        date_to = None
        if older_than_minutes is not None:
            date_to = self._clock() - timedelta(minutes=older_than_minutes)
        async with self.session_factory() as session:
            return await RunLogRepository(session).list_runs(
                run_log_filters(date_to=date_to, status=RunStatus.STARTED),
                limit=1000,
                oldest_first=True,
            )

    async def get_retry_chain(self, run_id: uuid.UUID) -> list[ScraperRunLog]:
        """
        Every run linked to run_id through parent_run_id, oldest first.

        Walks parent links back to the root, then child links forward from
        run_id. Returns an empty list for an unknown run id.
        """
        async with self.session_factory() as session:
            repo = RunLogRepository(session)
            run = await repo.find(run_id)
            if run is None:
                return []

            ancestors: list[ScraperRunLog] = []
            seen = {run.run_id}
            current = run
            while current.parent_run_id is not None and current.parent_run_id not in seen:
                parent = await repo.find(current.parent_run_id)
                if parent is None:
                    break
                ancestors.append(parent)
                seen.add(parent.run_id)
                current = parent

            descendants: list[ScraperRunLog] = []
            current = run
            while True:
                children = [c for c in await repo.children_of(current.run_id) if c.run_id not in seen]
                if not children:
                    break
                current = children[0]
                descendants.append(current)
                seen.add(current.run_id)

        return [*reversed(ancestors), run, *descendants]

    async def get_statistics(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        mapping_id: uuid.UUID | None = None,
    ) -> RunStatistics:
        """
        Counts, success rate and failure breakdown over an optional window.

        success_rate = 100 × success / (success + failed), where failed covers
        FAILED, TIMEOUT and CANCELLED. In-progress runs are counted in
        total_runs but not in the rate. error_category_counts sums to
        failed_runs.
        """
        clauses = run_log_filters(date_from, date_to, mapping_id)
        async with self.session_factory() as session:
            repo = RunLogRepository(session)
            by_status = await repo.status_counts(clauses)
            by_category = await repo.error_category_counts(clauses)
            avg_response, avg_duration = await repo.averages(clauses)

        success = by_status.get(RunStatus.SUCCESS, 0)
        failed = sum(by_status.get(s, 0) for s in TERMINAL_FAILURE_STATUSES)
        finished = success + failed

        category_counts: dict[str, int] = {}
        for category, count in by_category.items():
            key = category or _UNCATEGORIZED
            category_counts[key] = category_counts.get(key, 0) + count

        return RunStatistics(
            total_runs=sum(by_status.values()),
            success_runs=success,
            failed_runs=failed,
            in_progress_runs=by_status.get(RunStatus.STARTED, 0),
            success_rate=(success / finished * 100) if finished else 0.0,
            average_response_time_ms=avg_response,
            average_duration_ms=avg_duration,
            error_category_counts=category_counts,
            status_counts={status.value: count for status, count in by_status.items()},
        )

    async def get_seller_performance(self, days: float = 7) -> list[SellerPerformance]:
        since = self._clock() - timedelta(days=days)
        async with self.session_factory() as session:
            rows = await RunLogRepository(session).seller_performance(since)
        return [
            SellerPerformance(
                seller_name=seller,
                total_runs=total,
                success_runs=ok,
                success_rate=(ok / total * 100) if total else 0.0,
                average_response_time_ms=avg,
            )
            for seller, total, ok, avg in rows
        ]

    async def cleanup_old_logs(self, days_to_keep: int = 90) -> int:
        """Delete finished runs started more than days_to_keep days ago."""
        cutoff = self._clock() - timedelta(days=days_to_keep)
        async with self.session_factory() as session:
            repo = RunLogRepository(session)
            deleted = await repo.delete_started_before(cutoff)
            await repo.save()
        logger.info(
            "run_log_cleanup_complete",
            deleted=deleted,
            days_to_keep=days_to_keep,
            source="run_log",
        )
        return deleted


def _result_values(result: ScrapingResult) -> dict[str, Any]:
    """Columns copied from a ScrapingResult onto the run log."""
    return {
        "extracted_product_name": clean_text(result.product_name, 500),
        "extracted_price": result.price,
        "extracted_price_raw": clean_text(result.price_raw, 100),
        "extracted_stock_status": clean_text(result.stock_status, 100),
        "extracted_seller_name": clean_text(result.seller_name_on_page, 200),
        "http_status_code": result.http_status_code,
        "response_time_ms": result.timings.total_ms,
        "page_load_time_ms": result.timings.page_load_ms,
        "parsing_time_ms": result.timings.parse_ms,
        "proxy_used": result.proxy_used,
        "proxy_id": result.proxy_id,
        "raw_html_snippet": strip_control_chars(result.raw_html_snippet),
    }
