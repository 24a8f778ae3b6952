"""
PriceWatch — Pipeline Worker (arq)

Consumes the three inbound channels:

    scrape.commands   -> ScrapeCommandHandler   (fetch + extract + run log)
    pricedata.raw     -> PriceDataProcessor
    scraping.results  -> OrchestrationScheduler.process_scraping_result

Bounded concurrency per worker is arq's max_jobs. A single command can fail
in any way without taking the worker down: every outcome ends with the run
log in a terminal state, and events are published only after that.

Usage:
    arq pricewatch.pipeline.worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import traceback
from datetime import timedelta
from typing import Any

import structlog
from arq import cron
from arq.connections import RedisSettings
from arq.worker import func

from pricewatch.config import ErrorCategory, RunStatus, settings
from pricewatch.models.scraper_run_log import ScraperRunLog
from pricewatch.pipeline.messages import (
    RawPriceDataEvent,
    ScrapeCommand,
    ScrapingResultEvent,
)
from pricewatch.pipeline.price_processor import PriceDataProcessor
from pricewatch.pipeline.publisher import ArqMessagePublisher, MessagePublisher
from pricewatch.pipeline.run_log import RunLogService
from pricewatch.pipeline.scheduler import OrchestrationScheduler
from pricewatch.scraper import ScrapingResult
from pricewatch.scraper.runner import ScraperRunner

logger = structlog.get_logger(__name__)


class ScrapeCommandHandler:
    """
    Executes one ScrapeCommand and records it.

    Order of effects for every command:
        1. RunLog created (STARTED)
        2. fetch + extract under the command deadline
        3. RunLog moved to SUCCESS / FAILED / TIMEOUT / CANCELLED
        4. ScrapingResult event (+ RawPriceData on success) published
    """

    def __init__(
        self,
        run_logs: RunLogService,
        runner: ScraperRunner,
        publisher: MessagePublisher,
        *,
        results_channel: str,
        raw_channel: str,
        deadline_seconds: float | None = None,
    ) -> None:
        self.run_logs = run_logs
        self.runner = runner
        self.publisher = publisher
        self.results_channel = results_channel
        self.raw_channel = raw_channel
        self.deadline_seconds = deadline_seconds

    async def _resolve_parent(self, command: ScrapeCommand) -> Any:
        """Explicit parent from the command, else the mapping's last failed run."""
        if command.parent_run_id is not None:
            return command.parent_run_id
        latest = await self.run_logs.get_latest_run_for_mapping(command.mapping_id)
        if latest is not None and latest.is_terminal and latest.status != RunStatus.SUCCESS:
            return latest.run_id
        return None

    async def handle(self, command: ScrapeCommand) -> ScrapingResultEvent | None:
        """
        Run one command to a terminal run log and publish its events.

        Returns:
            The published result event, or None if the run log itself could
            not be created or the run was recorded but its events could not
            be published.
        """
        log = logger.bind(mapping_id=str(command.mapping_id), source="worker")

        try:
            parent_run_id = await self._resolve_parent(command)
            run = await self.run_logs.create(command, parent_run_id=parent_run_id)
        except Exception as e:
            log.error("worker_run_log_create_failed", error=str(e), error_type=type(e).__name__)
            return None

        log = log.bind(run_id=str(run.run_id))

        try:
            result = await self.runner.scrape(command, deadline_seconds=self.deadline_seconds)
            event = await self._finish(command, run, result)
        except asyncio.CancelledError:
            log.warning("worker_command_cancelled")
            await asyncio.shield(self._cancel(run))
            raise
        except Exception as e:
            log.error(
                "worker_handler_exception",
                error=str(e),
                error_type=type(e).__name__,
            )
            event = await self._fail_unexpected(command, run, e)

        return event

    async def _finish(
        self,
        command: ScrapeCommand,
        run: ScraperRunLog,
        result: ScrapingResult,
    ) -> ScrapingResultEvent:
        if result.success:
            await self.run_logs.complete(run.run_id, result)
            event = ScrapingResultEvent(
                mapping_id=command.mapping_id,
                run_id=run.run_id,
                was_successful=True,
                http_status_code=result.http_status_code,
            )
            await self.publisher.publish(self.results_channel, event)
            await self.publisher.publish(
                self.raw_channel,
                RawPriceDataEvent(
                    mapping_id=command.mapping_id,
                    canonical_product_id=command.canonical_product_id,
                    seller_name=command.seller_name,
                    scraped_price=result.price,
                    scraped_stock_status=result.stock_status,
                    source_url=command.exact_product_url,
                    scraped_product_name=result.product_name,
                    seller_name_on_page=result.seller_name_on_page,
                    run_id=run.run_id,
                ),
            )
            return event

        category = result.error_category or ErrorCategory.HANDLER_EXCEPTION
        status = RunStatus.TIMEOUT if category == ErrorCategory.TIMEOUT else RunStatus.FAILED
        await self.run_logs.fail(
            run.run_id,
            status=status,
            error_message=result.error_message or "Scrape failed",
            error_code=result.error_code or "UNKNOWN",
            error_category=category,
            http_status_code=result.http_status_code,
            result=result,
        )
        event = ScrapingResultEvent(
            mapping_id=command.mapping_id,
            run_id=run.run_id,
            was_successful=False,
            error_message=result.error_message,
            error_code=result.error_code,
            error_category=category,
            http_status_code=result.http_status_code,
        )
        await self.publisher.publish(self.results_channel, event)
        return event

    async def _fail_unexpected(
        self,
        command: ScrapeCommand,
        run: ScraperRunLog,
        error: Exception,
    ) -> ScrapingResultEvent | None:
        message = f"{type(error).__name__}: {error}"
        try:
            current = await self.run_logs.get_run(run.run_id)
            if current is not None and not current.is_terminal:
                await self.run_logs.fail(
                    run.run_id,
                    error_message=message,
                    error_code="HANDLER_EXCEPTION",
                    error_category=ErrorCategory.HANDLER_EXCEPTION,
                    stack_trace="".join(traceback.format_exception(error)),
                )
            elif current is not None:
                # Outcome already recorded; only the publishes failed.
                return None
            event = ScrapingResultEvent(
                mapping_id=command.mapping_id,
                run_id=run.run_id,
                was_successful=False,
                error_message=message,
                error_code="HANDLER_EXCEPTION",
                error_category=ErrorCategory.HANDLER_EXCEPTION,
            )
            await self.publisher.publish(self.results_channel, event)
            return event
        except Exception as e:
            logger.error(
                "worker_failure_recording_failed",
                run_id=str(run.run_id),
                mapping_id=str(command.mapping_id),
                error=str(e),
                error_type=type(e).__name__,
                source="worker",
            )
            return None

    async def _cancel(self, run: ScraperRunLog) -> None:
        try:
            await self.run_logs.cancel(run.run_id, "Scrape cancelled before completion")
        except Exception as e:
            logger.error(
                "worker_cancel_recording_failed",
                run_id=str(run.run_id),
                error=str(e),
                error_type=type(e).__name__,
                source="worker",
            )


# ---------------------------------------------------------------------------
# arq job functions
# ---------------------------------------------------------------------------


async def handle_scrape_command(ctx: dict, payload: dict) -> bool | None:
    """arq job: execute one ScrapeCommand."""
    command = ScrapeCommand.model_validate(payload)
    event = await ctx["scrape_handler"].handle(command)
    return event.was_successful if event is not None else None


async def handle_raw_price_data(ctx: dict, payload: dict) -> bool:
    """arq job: validate and record one RawPriceData event."""
    event = RawPriceDataEvent.model_validate(payload)
    try:
        row = await ctx["price_processor"].process(event)
    except Exception as e:
        logger.error(
            "worker_price_processing_failed",
            mapping_id=str(event.mapping_id),
            error=str(e),
            error_type=type(e).__name__,
            source="worker",
        )
        return False
    return row is not None


async def handle_scraping_result(ctx: dict, payload: dict) -> None:
    """arq job: advance the mapping's schedule after a scrape outcome."""
    event = ScrapingResultEvent.model_validate(payload)
    try:
        await ctx["scheduler"].process_scraping_result(event)
    except Exception as e:
        logger.error(
            "worker_result_processing_failed",
            mapping_id=str(event.mapping_id),
            run_id=str(event.run_id),
            error=str(e),
            error_type=type(e).__name__,
            source="worker",
        )


async def cleanup_run_logs(ctx: dict) -> int:
    """arq cron: delete terminal run logs past the retention window."""
    return await ctx["run_logs"].cleanup_old_logs(settings.RUN_LOG_RETENTION_DAYS)


async def startup(ctx: dict) -> None:
    """Called on worker startup: build engine, pool, services."""
    from pricewatch.main import _configure_logging, create_db_engine
    from pricewatch.proxy.pool import ProxyPoolManager
    from pricewatch.scraper.fetcher import ProxyAwareFetcher

    _configure_logging(settings.LOG_LEVEL)
    engine, session_factory = await create_db_engine()

    publisher = ArqMessagePublisher(
        ctx["redis"],
        default_queue=settings.WORKER_QUEUE_NAME,
        queue_overrides={settings.CHANNEL_PRICEDATA_RECORDED: settings.ALERTS_QUEUE_NAME},
    )
    pool = ProxyPoolManager(session_factory, settings.proxy_pool_config())
    runner = ScraperRunner(
        ProxyAwareFetcher(pool),
        snippet_chars=settings.RAW_HTML_SNIPPET_CHARS,
    )

    ctx["engine"] = engine
    ctx["proxy_pool"] = pool
    ctx["run_logs"] = run_logs = RunLogService(session_factory)
    ctx["scrape_handler"] = ScrapeCommandHandler(
        run_logs,
        runner,
        publisher,
        results_channel=settings.CHANNEL_SCRAPING_RESULTS,
        raw_channel=settings.CHANNEL_PRICEDATA_RAW,
    )
    ctx["price_processor"] = PriceDataProcessor(
        session_factory,
        publisher,
        settings.CHANNEL_PRICEDATA_RECORDED,
        dedupe_window=timedelta(minutes=settings.PRICE_DEDUPE_WINDOW_MINUTES),
    )
    ctx["scheduler"] = OrchestrationScheduler(
        session_factory,
        publisher,
        settings.orchestration_config(),
        settings.CHANNEL_SCRAPE_COMMANDS,
    )
    logger.info(
        "worker_started",
        concurrency=settings.WORKER_CONCURRENCY,
        queue=settings.WORKER_QUEUE_NAME,
        proxy_pool_enabled=settings.PROXY_POOL_ENABLED,
        strategy=settings.PROXY_SELECTION_STRATEGY.value,
        source="worker",
    )


async def shutdown(ctx: dict) -> None:
    """Called on worker shutdown."""
    engine = ctx.get("engine")
    if engine is not None:
        await engine.dispose()
    logger.info("worker_stopped", source="worker")


class WorkerSettings:
    """arq worker configuration."""

    functions = [
        func(handle_scrape_command, name=settings.CHANNEL_SCRAPE_COMMANDS),
        func(handle_raw_price_data, name=settings.CHANNEL_PRICEDATA_RAW),
        func(handle_scraping_result, name=settings.CHANNEL_SCRAPING_RESULTS),
    ]

    cron_jobs = [cron(cleanup_run_logs, hour={3}, minute={0}, run_at_startup=False)]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = settings.WORKER_QUEUE_NAME
    max_jobs = settings.WORKER_CONCURRENCY
    max_tries = 1
